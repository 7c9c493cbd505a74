from typing import Annotated

from fastapi import Header, HTTPException, Request

from cascade_categorizer.services.categorization import CategorizationPipeline
from cascade_categorizer.services.learning import LearningManager


def get_pipeline(request: Request) -> CategorizationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if not pipeline:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return pipeline


def get_learning_manager(request: Request) -> LearningManager:
    pipeline = get_pipeline(request)
    return pipeline.learning


def get_organization_id(
    organization_id: Annotated[str | None, Header(alias="X-Organization-ID")] = None,
) -> str:
    if not organization_id or not organization_id.strip():
        raise HTTPException(status_code=400, detail="X-Organization-ID header is required")
    return organization_id.strip()
