import asyncio
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query

from cascade_categorizer.api.dependencies import get_learning_manager, get_organization_id, get_pipeline
from cascade_categorizer.models import CategorizationStats
from cascade_categorizer.services.categorization import CategorizationPipeline
from cascade_categorizer.services.learning import LearningManager

router = APIRouter(prefix="/api/v1/categorization", tags=["learning"])


@router.post("/learning/reindex")
async def reindex(
    organization_id: Annotated[str, Depends(get_organization_id)],
    learning: Annotated[LearningManager, Depends(get_learning_manager)],
) -> dict[str, Any]:
    if learning.active:
        raise HTTPException(status_code=409, detail="Learning job in progress")
    return await asyncio.to_thread(learning.reindex, organization_id)


@router.post("/learning/mine-patterns")
async def mine_patterns(
    organization_id: Annotated[str, Depends(get_organization_id)],
    learning: Annotated[LearningManager, Depends(get_learning_manager)],
    since_days: Annotated[int, Query(ge=1, le=365)] = 30,
    min_confidence: Annotated[float | None, Query(ge=0.0, le=1.0)] = None,
) -> dict[str, Any]:
    if learning.active:
        raise HTTPException(status_code=409, detail="Learning job in progress")
    return await asyncio.to_thread(learning.mine_patterns, organization_id, min_confidence, since_days)


@router.get("/learning/status")
async def learning_status(
    organization_id: Annotated[str, Depends(get_organization_id)],
    learning: Annotated[LearningManager, Depends(get_learning_manager)],
) -> dict[str, Any]:
    status = learning.get_status()
    status["pending_feedback"] = learning.feedback.pending_feedback(organization_id)
    status["learning_due"] = learning.feedback.learning_due(organization_id)
    return status


@router.get("/stats", response_model=CategorizationStats)
async def stats(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CategorizationStats:
    return await asyncio.to_thread(pipeline.coordinator.stats, organization_id)
