import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.models import CategorizationFeedback, FeedbackAnalysis
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["feedback"])


@router.get("/feedback", response_model=list[CategorizationFeedback])
async def list_feedback(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[CategorizationFeedback]:
    return await asyncio.to_thread(pipeline.feedback.get_feedback, organization_id, limit, offset)


@router.get("/feedback/analysis", response_model=FeedbackAnalysis)
async def feedback_analysis(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> FeedbackAnalysis:
    return await pipeline.analyze_feedback(organization_id)
