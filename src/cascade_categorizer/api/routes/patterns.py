import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from cascade_categorizer.api.dependencies import get_organization_id, get_pipeline
from cascade_categorizer.api.schemas import ClearCacheResponse
from cascade_categorizer.models import MerchantPattern, SimilarPattern
from cascade_categorizer.services.categorization import CategorizationPipeline

router = APIRouter(prefix="/api/v1/categorization", tags=["patterns"])


@router.get("/patterns", response_model=list[MerchantPattern])
async def list_patterns(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[MerchantPattern]:
    patterns = await asyncio.to_thread(pipeline.patterns.list_patterns, organization_id)
    return patterns[offset:offset + limit]


@router.get("/patterns/similar", response_model=list[SimilarPattern])
async def similar_patterns(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    merchant: Annotated[str, Query(min_length=1)],
    threshold: Annotated[float, Query(ge=0.0, le=1.0)] = 0.3,
) -> list[SimilarPattern]:
    return await asyncio.to_thread(pipeline.patterns.get_similar_patterns, organization_id, merchant, threshold)


@router.delete("/patterns/cache", response_model=ClearCacheResponse)
async def clear_pattern_cache(
    organization_id: Annotated[str, Depends(get_organization_id)],
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
) -> ClearCacheResponse:
    cleared = await asyncio.to_thread(pipeline.patterns.clear_cache, organization_id)
    return ClearCacheResponse(status="cleared", cleared=cleared)
