from __future__ import annotations

import http.client
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from app.config import settings
from app.services.errors import SupplierCallFailed
from app.services.supplier_provider import (
    ShipmentStatus,
    SupplierOrderDetail,
    SupplierOrderRequest,
    SupplierOrderResult,
)

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 55 * 60


def _money(value, *, field: str, path: str) -> Decimal | None:
    """Parse a cost from a response that already carries an order id. Unusable values read as unknown."""
    if value is None or value == '':
        logger.warning(f'CJ API response on {path} is missing {field}')
        return None
    try:
        return Decimal(str(value)).quantize(Decimal('0.01'))
    except InvalidOperation:
        logger.warning(f'CJ API response on {path} has invalid {field}: {value!r}')
        return None


class CjSupplierClient:
    def __init__(self) -> None:
        if not settings.cj_access_token and not (settings.cj_email and settings.cj_password):
            raise ValueError('CJ_EMAIL and CJ_PASSWORD (or CJ_ACCESS_TOKEN) are required when SUPPLIER_PROVIDER=cj')

        self.base_url = settings.cj_api_base_url.rstrip('/')
        self.timeout = settings.supplier_timeout_seconds
        self._token: str | None = settings.cj_access_token
        self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS if self._token else 0.0

    def _send(self, method: str, path: str, *, payload: dict | None = None, params: dict | None = None, token: str | None = None) -> dict:
        url = f'{self.base_url}{path}'
        if params:
            url = f'{url}?{urlencode(params)}'
        headers = {'Content-Type': 'application/json'}
        if token:
            headers['CJ-Access-Token'] = token
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        req = Request(url=url, data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout) as response:
                parsed = json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise SupplierCallFailed(f'CJ API error {exc.code} on {method} {path}: {body[:300]}') from exc
        except URLError as exc:
            raise SupplierCallFailed(f'CJ API network error on {method} {path}: {exc.reason}') from exc
        except TimeoutError as exc:
            raise SupplierCallFailed(f'CJ API timed out after {self.timeout}s on {method} {path}') from exc
        except ValueError as exc:
            raise SupplierCallFailed(f'CJ API returned invalid JSON on {method} {path}') from exc
        except (OSError, http.client.HTTPException) as exc:
            raise SupplierCallFailed(f'CJ API connection failed on {method} {path}: {exc!r}') from exc

        if not isinstance(parsed, dict):
            raise SupplierCallFailed(f'CJ API returned an unexpected payload on {method} {path}')
        if parsed.get('result') is False or (parsed.get('code') not in (None, 200)):
            raise SupplierCallFailed(f'CJ API rejected {method} {path}: {parsed.get("message") or parsed.get("code")}')
        return parsed

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        response = self._send(
            'POST',
            '/authentication/getAccessToken',
            payload={'email': settings.cj_email, 'password': settings.cj_password},
        )
        data = response.get('data') or {}
        token = data.get('accessToken') or data.get('token') or data.get('access_token')
        if not token:
            raise SupplierCallFailed('CJ getAccessToken returned no token')
        self._token = token
        self._token_expires_at = time.monotonic() + TOKEN_TTL_SECONDS
        return token

    def _request(self, method: str, path: str, *, payload: dict | None = None, params: dict | None = None) -> dict:
        return self._send(method, path, payload=payload, params=params, token=self._access_token())

    def create_order(self, request: SupplierOrderRequest) -> SupplierOrderResult:
        path = '/shopping/order/createOrderV2'
        recipient = request.recipient
        payload = {
            'orderNumber': request.order_number,
            'shippingCustomerName': recipient.name,
            'shippingAddress': recipient.address1,
            'shippingAddress2': recipient.address2,
            'shippingCity': recipient.city,
            'shippingProvince': recipient.province,
            'shippingCountryCode': recipient.country,
            'shippingZip': recipient.zip,
            'shippingPhone': recipient.phone,
            'products': [{'vid': request.variant_id, 'quantity': request.quantity}],
        }
        response = self._request('POST', path, payload=payload)
        data = response.get('data') or {}
        supplier_order_id = data.get('orderId') or data.get('id')
        if not supplier_order_id:
            raise SupplierCallFailed(f'CJ createOrderV2 returned no orderId for {request.order_number}')
        # CJ holds the order from here on; a missing quote must not turn into a resubmission.
        return SupplierOrderResult(
            supplier_order_id=str(supplier_order_id),
            product_cost=_money(data.get('productAmount'), field='productAmount', path=path),
            shipping_cost=_money(data.get('postageAmount', '0'), field='postageAmount', path=path),
        )

    def get_order(self, supplier_order_id: str) -> SupplierOrderDetail:
        response = self._request('GET', '/shopping/order/getOrderDetail', params={'orderId': supplier_order_id})
        data = response.get('data') or {}
        return SupplierOrderDetail(
            supplier_order_id=supplier_order_id,
            tracking_number=data.get('trackNumber') or None,
            carrier=data.get('logisticName') or None,
        )

    def get_tracking(self, tracking_number: str) -> ShipmentStatus:
        response = self._request('GET', '/logistic/trackInfo', params={'trackNumber': tracking_number})
        data = response.get('data')
        if isinstance(data, list):
            info = data[0] if data else {}
        else:
            info = data or {}
        return ShipmentStatus(
            status_text=str(info.get('trackingStatus') or info.get('status') or ''),
            tracking_url=info.get('trackingUrl') or None,
            carrier=info.get('lastMileCarrier') or None,
        )
