from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.dependencies import get_client_ip, get_supplier
from app.services.sale_ingest_service import ingest_paid_sale, parse_paid_sale
from app.services.storefront_client import verify_webhook_signature
from app.services.supplier_provider import PrimarySupplier

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/webhooks', tags=['webhooks'])

SIGNATURE_HEADER = 'X-Shopify-Hmac-Sha256'


@router.post('/storefront/order-paid')
async def storefront_order_paid(
    request: Request,
    db: Session = Depends(get_db),
    supplier: PrimarySupplier = Depends(get_supplier),
):
    secret = settings.storefront_webhook_secret
    if not secret:
        logger.error('STOREFRONT_WEBHOOK_SECRET is not configured; rejecting webhook')
        raise HTTPException(status_code=500, detail='Webhook secret is not configured')

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning(f'Rejected storefront webhook with bad signature from {get_client_ip(request)}')
        raise HTTPException(status_code=401, detail='Invalid webhook signature')

    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid JSON body') from exc

    try:
        sale = parse_paid_sale(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    # Ingest blocks on the database and the supplier API; keep it off the event loop.
    result = await run_in_threadpool(ingest_paid_sale, db, sale, supplier=supplier)
    return {'ok': True, **result.to_dict()}
