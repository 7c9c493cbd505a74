from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.api.schemas import FeedbackRequest, FeedbackResponse, TransactionCreate
from cascade_categorizer.models import CategorizationFeedback, CategorizationResult, Transaction
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["transactions"])


@router.post("/categorize", response_model=CategorizationResult)
async def categorize_ad_hoc(
    req: TransactionCreate,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CategorizationResult:
    """Categorize a transaction that is not stored. No category is written anywhere."""
    fields = req.model_dump(exclude_none=True, exclude={"id"})
    transaction = Transaction(organization_id=organization_id, **fields)
    return await pipeline.categorize(transaction, persist=False)


@router.post("/transactions/{transaction_id}/categorize", response_model=CategorizationResult)
async def categorize_transaction(
    transaction_id: str,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CategorizationResult:
    return await pipeline.categorize_transaction(organization_id, transaction_id)


@router.post("/transactions/{transaction_id}/feedback", response_model=FeedbackResponse, status_code=201)
async def record_feedback(
    transaction_id: str,
    body: FeedbackRequest,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> FeedbackResponse:
    feedback = CategorizationFeedback(
        transaction_id=transaction_id,
        organization_id=organization_id,
        user_id=body.user_id,
        old_category_id=body.old_category_id,
        new_category_id=body.new_category_id,
        feedback_type=body.feedback_type,
    )
    outcome = await pipeline.record_feedback(feedback)
    return FeedbackResponse(
        feedback=outcome.feedback,
        pattern=outcome.pattern,
        learning_due=outcome.learning_due,
    )
