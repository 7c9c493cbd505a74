import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cascade_categorizer.api.routes import batch, budget, catalog, feedback, learning, llm, patterns, rules, transactions
from cascade_categorizer.core import settings
from cascade_categorizer.core.settings import CascadeConfig
from cascade_categorizer.errors import NotFoundError, RuleValidationError, StorageUnavailableError
from cascade_categorizer.integration.openai_client import build_capabilities
from cascade_categorizer.logger import get_logger, setup_logging
from cascade_categorizer.services.categorization import CategorizationPipeline, build_pipeline
from cascade_categorizer.storage.memory import InMemoryStorage

logger = get_logger(__name__)


def _build_default_pipeline() -> CategorizationPipeline:
    config = CascadeConfig.from_env()
    storage = InMemoryStorage(
        os.path.join(settings.DATA_DIR, "cascade.json"),
        default_monthly_budget=config.default_monthly_budget,
        default_daily_budget=config.default_daily_budget,
    )
    embedder, completer = build_capabilities(config.embedding_model)
    return build_pipeline(storage, embedder, completer, config=config)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RuleValidationError)
    async def invalid_rule(request: Request, exc: RuleValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable(request: Request, exc: StorageUnavailableError) -> JSONResponse:
        logger.error("Storage unavailable while handling %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})


def create_app(pipeline: CategorizationPipeline | None = None) -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        service = pipeline or _build_default_pipeline()
        app.state.pipeline = service

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        service.shutdown()

    app = FastAPI(title="Cascade Categorizer", lifespan=lifespan)
    _register_error_handlers(app)

    app.include_router(catalog.router)
    app.include_router(transactions.router)
    app.include_router(batch.router)
    app.include_router(rules.router)
    app.include_router(patterns.router)
    app.include_router(feedback.router)
    app.include_router(learning.router)
    app.include_router(llm.router)
    app.include_router(budget.router)

    return app


app = create_app()
