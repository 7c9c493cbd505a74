import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.api.schemas import CategoryCreate, TransactionCreate
from cascade_categorizer.models import Category, Transaction
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["catalog"])


@router.get("/categories", response_model=list[Category])
async def list_categories(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> list[Category]:
    return await asyncio.to_thread(pipeline.coordinator.categories, organization_id)


@router.post("/categories", response_model=Category, status_code=201)
async def add_category(
    body: CategoryCreate,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> Category:
    category = Category(organization_id=organization_id, **body.model_dump())
    return await asyncio.to_thread(pipeline.storage.add_category, category)


@router.get("/transactions", response_model=list[Transaction])
async def list_transactions(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    uncategorized_only: bool = False,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[Transaction]:
    transactions = await asyncio.to_thread(
        pipeline.select_transactions, organization_id, uncategorized_only=uncategorized_only
    )
    return transactions[:limit]


@router.post("/transactions", response_model=Transaction, status_code=201)
async def add_transaction(
    body: TransactionCreate,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> Transaction:
    transaction = Transaction(organization_id=organization_id, **body.model_dump(exclude_none=True))
    return await asyncio.to_thread(pipeline.storage.add_transaction, transaction)
