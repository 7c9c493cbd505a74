import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.api.schemas import BudgetResponse, BudgetUpdate, CostSummary
from cascade_categorizer.models import CostTracker
from cascade_categorizer.services.budget import remaining_budget
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["budget"])


def _budget_response(tracker: CostTracker) -> BudgetResponse:
    remaining = remaining_budget(tracker)
    return BudgetResponse(
        tracker=tracker,
        remaining_daily=remaining["daily"],
        remaining_monthly=remaining["monthly"],
    )


@router.get("/budget", response_model=BudgetResponse)
async def get_budget(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> BudgetResponse:
    tracker = await asyncio.to_thread(pipeline.budget.get_cost_tracker, organization_id)
    return _budget_response(tracker)


@router.put("/budget", response_model=BudgetResponse)
async def update_budget(
    body: BudgetUpdate,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> BudgetResponse:
    tracker = await asyncio.to_thread(
        pipeline.budget.update_budget,
        organization_id,
        body.monthly_budget,
        body.daily_budget,
    )
    return _budget_response(tracker)


@router.get("/cost", response_model=CostSummary)
async def cost_summary(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CostSummary:
    tracker = await asyncio.to_thread(pipeline.budget.get_cost_tracker, organization_id)
    batches = await asyncio.to_thread(pipeline.storage.list_llm_batches, organization_id)
    return CostSummary(
        tracker=tracker,
        batches=len(batches),
        tokens_used=sum(batch.tokens_used for batch in batches),
        total_cost=sum(batch.total_cost for batch in batches),
        estimated_cost=sum(batch.estimated_cost for batch in batches),
    )
