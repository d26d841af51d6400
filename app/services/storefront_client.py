from __future__ import annotations

import base64
import hashlib
import hmac
import http.client
import json
import logging
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from app.config import settings
from app.services.errors import StorefrontCallFailed
from app.services.supplier_provider import StorefrontFulfillmentRequest

logger = logging.getLogger(__name__)


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode('ascii')


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    expected = compute_webhook_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode('ascii'), signature.strip().encode('ascii', errors='ignore'))


class ShopifyStorefrontClient:
    def __init__(self) -> None:
        if not settings.storefront_domain or not settings.storefront_access_token:
            raise ValueError('STOREFRONT_DOMAIN and STOREFRONT_ACCESS_TOKEN are required when STOREFRONT_PROVIDER=shopify')

        self.base_url = f'https://{settings.storefront_domain}/admin/api/{settings.storefront_api_version}'
        self.headers = {
            'X-Shopify-Access-Token': settings.storefront_access_token,
            'Content-Type': 'application/json',
        }

    def _post(self, path: str, payload: dict) -> dict:
        req = Request(
            url=f'{self.base_url}{path}',
            data=json.dumps(payload).encode('utf-8'),
            headers=self.headers,
            method='POST',
        )
        try:
            with urlopen(req, timeout=settings.storefront_timeout_seconds) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise StorefrontCallFailed(f'Storefront API error {exc.code} on {path}: {body[:300]}') from exc
        except URLError as exc:
            raise StorefrontCallFailed(f'Storefront API network error on {path}: {exc.reason}') from exc
        except TimeoutError as exc:
            raise StorefrontCallFailed(f'Storefront API timed out on {path}') from exc
        except ValueError as exc:
            raise StorefrontCallFailed(f'Storefront API returned invalid JSON on {path}') from exc
        except (OSError, http.client.HTTPException) as exc:
            raise StorefrontCallFailed(f'Storefront API connection failed on {path}: {exc!r}') from exc

    def create_fulfillment(self, request: StorefrontFulfillmentRequest) -> str:
        payload = {
            'fulfillment': {
                'notify_customer': True,
                'tracking_number': request.tracking_number,
                'tracking_company': request.carrier,
                'line_items': [{'id': request.line_item_id, 'quantity': request.quantity}],
            }
        }
        if request.tracking_url:
            payload['fulfillment']['tracking_url'] = request.tracking_url

        response = self._post(f'/orders/{request.sale_id}/fulfillments.json', payload)
        fulfillment = response.get('fulfillment') or {}
        if not fulfillment.get('id'):
            raise StorefrontCallFailed(f'Storefront returned no fulfillment id for sale {request.sale_id}')
        return str(fulfillment['id'])


class MockStorefront:
    def create_fulfillment(self, request: StorefrontFulfillmentRequest) -> str:
        logger.info(
            f'[mock storefront] fulfillment sale={request.sale_id} line={request.line_item_id} '
            f'tracking={request.tracking_number}'
        )
        return f'MOCK-FUL-{request.sale_id}-{request.line_item_id}'
