import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.api.schemas import RuleCreate, RuleTestRequest, RuleUpdate
from cascade_categorizer.models import CategoryRule, RuleTestResult
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["rules"])


@router.get("/rules", response_model=list[CategoryRule])
async def list_rules(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> list[CategoryRule]:
    return await asyncio.to_thread(pipeline.rules.get_rules, organization_id)


@router.post("/rules", response_model=CategoryRule, status_code=201)
async def create_rule(
    body: RuleCreate,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CategoryRule:
    rule = CategoryRule(organization_id=organization_id, **body.model_dump())
    return await asyncio.to_thread(pipeline.rules.add_rule, rule)


@router.put("/rules/{rule_id}", response_model=CategoryRule)
async def update_rule(
    rule_id: str,
    body: RuleUpdate,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> CategoryRule:
    existing = await asyncio.to_thread(pipeline.rules.get_rule, organization_id, rule_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    # model_copy skips validation; update_rule validates before writing.
    updated = existing.model_copy(update=changes)
    return await asyncio.to_thread(pipeline.rules.update_rule, updated)


@router.delete("/rules/{rule_id}")
async def delete_rule(
    rule_id: str,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> dict[str, str]:
    await asyncio.to_thread(pipeline.rules.delete_rule, organization_id, rule_id)
    return {"status": "deleted", "id": rule_id}


@router.post("/rules/{rule_id}/test", response_model=RuleTestResult)
async def test_rule(
    rule_id: str,
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    body: RuleTestRequest | None = None,
) -> RuleTestResult:
    rule = await asyncio.to_thread(pipeline.rules.get_rule, organization_id, rule_id)
    transactions = None
    if body is not None and body.transaction_ids:
        transactions = await asyncio.to_thread(
            pipeline.select_transactions,
            organization_id,
            body.transaction_ids,
            uncategorized_only=False,
        )
    return await asyncio.to_thread(pipeline.rules.test_rule, rule, transactions)
