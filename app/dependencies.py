from fastapi import Request

from app.services.provider_factory import get_primary_supplier
from app.services.supplier_provider import PrimarySupplier


def get_supplier() -> PrimarySupplier:
    return get_primary_supplier()


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None
