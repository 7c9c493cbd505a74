from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_pipeline
from cascade_categorizer.api.schemas import ModelsResponse
from cascade_categorizer.core.settings import LLM_STRATEGIES
from cascade_categorizer.models import LLMModel
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["models"])


@router.get("/models", response_model=ModelsResponse)
async def list_models(
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> ModelsResponse:
    return ModelsResponse(models=pipeline.llm.models, default=pipeline.llm.default_model().name)


@router.get("/models/best", response_model=LLMModel)
async def best_model(
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    strategy: str = "balanced",
) -> LLMModel:
    # Unknown strategies fall back to the default model.
    if strategy.lower() not in LLM_STRATEGIES:
        strategy = "default"
    return pipeline.llm.select_model_for_task(strategy)
