import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.api.schemas import BatchEstimateRequest, TransactionSelection
from cascade_categorizer.logger import get_logger
from cascade_categorizer.models import BatchReport, CostEstimate
from cascade_categorizer.services.categorization import CategorizationPipeline

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/categorization", tags=["batch"])


@router.post("/batch/categorize", response_model=BatchReport)
async def categorize_batch(
    body: TransactionSelection,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> BatchReport:
    transactions = await asyncio.to_thread(
        pipeline.select_transactions,
        organization_id,
        body.transaction_ids,
        start=body.start_date,
        end=body.end_date,
        uncategorized_only=body.uncategorized_only,
    )
    logger.info("[BATCH] Org %s: categorizing %s transactions", organization_id, len(transactions))
    if not transactions:
        return BatchReport(organization_id=organization_id, requested=0)
    return await pipeline.categorize_batch(transactions)


@router.post("/batch/estimate", response_model=CostEstimate)
async def estimate_batch(
    body: BatchEstimateRequest,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CostEstimate:
    transactions = await asyncio.to_thread(
        pipeline.select_transactions,
        organization_id,
        body.transaction_ids,
        start=body.start_date,
        end=body.end_date,
        uncategorized_only=body.uncategorized_only,
    )
    return await pipeline.estimate_batch(transactions, body.strategy)
