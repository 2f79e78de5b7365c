from typing import List, Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_breakdown_processor
from schemas.deliveries import (
    BulkDescription,
    DeliveryItemResult,
    DeliveryRequest,
    DeliverySummary,
    ParseRequest,
)
from services.bulk_breakdown import BulkBreakdownProcessor, parse_bulk_description

router = APIRouter()


@router.post("/parse", response_model=Optional[BulkDescription])
async def parse_description(payload: ParseRequest):
    return parse_bulk_description(payload.description)


@router.post("/preview", response_model=List[DeliveryItemResult])
async def preview_delivery(
    payload: DeliveryRequest,
    processor: BulkBreakdownProcessor = Depends(get_breakdown_processor),
):
    return await processor.preview_delivery(payload.items, store_id=payload.store_id)


@router.post("/", response_model=DeliverySummary)
async def process_delivery(
    payload: DeliveryRequest,
    processor: BulkBreakdownProcessor = Depends(get_breakdown_processor),
):
    return await processor.process_delivery(payload.items, store_id=payload.store_id)
