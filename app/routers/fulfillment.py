from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import get_supplier
from app.models import FulfillmentStatus, FulfillmentSupplier
from app.services.errors import FulfillmentError
from app.services.fulfillment_control_service import (
    approve_fulfillment,
    cancel_fulfillment,
    get_fulfillment_audit,
    mark_fulfillment_delivered,
    retry_fulfillment,
    return_fulfillment,
    serialize_audit_event,
    serialize_fulfillment,
)
from app.services.fulfillment_store import (
    list_fulfillment_orders,
    load_fulfillment_order,
    summarize_fulfillment,
)
from app.services.supplier_provider import PrimarySupplier

router = APIRouter(prefix='/api/fulfillment', tags=['fulfillment'])


class ApproveRequest(BaseModel):
    supplier_order_id: str | None = Field(default=None, max_length=200)
    note: str | None = Field(default=None, max_length=500)


class NoteRequest(BaseModel):
    note: str | None = Field(default=None, max_length=500)


class CloseRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


def _http_error(exc: FulfillmentError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


@router.get('')
def list_fulfillments(
    status: FulfillmentStatus | None = Query(default=None),
    supplier: FulfillmentSupplier | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    orders = list_fulfillment_orders(db, status=status, supplier=supplier, limit=limit)
    return {'items': [serialize_fulfillment(order) for order in orders], 'count': len(orders)}


@router.get('/summary')
def fulfillment_summary(db: Session = Depends(get_db)):
    summary = summarize_fulfillment(db)
    return {**summary, 'realized_profit': str(summary['realized_profit'])}


@router.get('/{order_id}')
def get_fulfillment(order_id: int, db: Session = Depends(get_db)):
    try:
        order = load_fulfillment_order(db, order_id)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return serialize_fulfillment(order)


@router.get('/{order_id}/audit')
def get_fulfillment_audit_trail(order_id: int, db: Session = Depends(get_db)):
    try:
        events = get_fulfillment_audit(db, order_id)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return {'items': [serialize_audit_event(event) for event in events]}


@router.post('/{order_id}/retry')
def retry(
    order_id: int,
    db: Session = Depends(get_db),
    supplier: PrimarySupplier = Depends(get_supplier),
):
    try:
        order = retry_fulfillment(db, order_id, supplier=supplier)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return serialize_fulfillment(order)


@router.post('/{order_id}/approve')
def approve(
    order_id: int,
    payload: ApproveRequest | None = Body(default=None),
    db: Session = Depends(get_db),
):
    payload = payload or ApproveRequest()
    try:
        order = approve_fulfillment(db, order_id, supplier_order_id=payload.supplier_order_id, note=payload.note)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return serialize_fulfillment(order)


@router.post('/{order_id}/deliver')
def deliver(
    order_id: int,
    payload: NoteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
):
    payload = payload or NoteRequest()
    try:
        order = mark_fulfillment_delivered(db, order_id, note=payload.note)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return serialize_fulfillment(order)


@router.post('/{order_id}/cancel')
def cancel(
    order_id: int,
    payload: CloseRequest | None = Body(default=None),
    db: Session = Depends(get_db),
):
    payload = payload or CloseRequest()
    try:
        order = cancel_fulfillment(db, order_id, reason=payload.reason)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return serialize_fulfillment(order)


@router.post('/{order_id}/return')
def mark_returned(
    order_id: int,
    payload: CloseRequest | None = Body(default=None),
    db: Session = Depends(get_db),
):
    payload = payload or CloseRequest()
    try:
        order = return_fulfillment(db, order_id, reason=payload.reason)
    except FulfillmentError as exc:
        raise _http_error(exc) from exc
    return serialize_fulfillment(order)
