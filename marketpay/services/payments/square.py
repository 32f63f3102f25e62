"""Thin async client for the Square REST API.

One instance is bound to one access token (platform or seller). Callers build
instances through a factory so tests and multi-seller scans can inject their
own transport and credentials instead of relying on a shared client.
"""

from uuid import uuid4

import httpx

from marketpay.common.config import settings
from marketpay.common.errors import ProviderFailure
from marketpay.common.logging import logger
from marketpay.common.metrics import provider_failures_total


class SquareClient:
    """Square v2 endpoints used by checkout, terminal, and reconciliation."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.access_token = access_token
        self.base_url = base_url or settings.square_base_url
        self.api_version = api_version or settings.square_api_version
        self.timeout = timeout if timeout is not None else settings.provider_http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Square-Version": self.api_version,
                "Content-Type": "application/json",
            },
        )

    async def _request(self, operation: str, method: str, path: str, json: dict | None = None) -> dict:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            provider_failures_total.labels(service=settings.service_name, provider="square", operation=operation).inc()
            raise ProviderFailure(f"Square request failed: {exc}", provider="square") from exc
        if resp.status_code >= 400:
            provider_failures_total.labels(service=settings.service_name, provider="square", operation=operation).inc()
            message = _error_detail(resp)
            logger.warning("square %s failed status=%s detail=%s", operation, resp.status_code, message)
            raise ProviderFailure(message, provider="square", status=resp.status_code)
        return resp.json()

    async def create_payment_link(
        self,
        location_id: str,
        line_items: list[dict],
        metadata: dict[str, str],
        redirect_url: str,
    ) -> dict:
        body = {
            "idempotency_key": str(uuid4()),
            "order": {"location_id": location_id, "line_items": line_items, "metadata": metadata},
            "checkout_options": {"redirect_url": redirect_url},
        }
        data = await self._request("create_payment_link", "POST", "/v2/online-checkout/payment-links", body)
        return data.get("payment_link") or {}

    async def get_payment_link(self, link_id: str) -> dict:
        data = await self._request("get_payment_link", "GET", f"/v2/online-checkout/payment-links/{link_id}")
        return data.get("payment_link") or {}

    async def get_order(self, order_id: str) -> dict:
        data = await self._request("get_order", "GET", f"/v2/orders/{order_id}")
        return data.get("order") or {}

    async def list_locations(self) -> list[dict]:
        data = await self._request("list_locations", "GET", "/v2/locations")
        return data.get("locations") or []

    async def create_terminal_checkout(
        self,
        device_id: str,
        amount_cents: int,
        currency: str,
        reference_id: str,
        note: str,
    ) -> dict:
        body = {
            "idempotency_key": str(uuid4()),
            "checkout": {
                "amount_money": {"amount": amount_cents, "currency": currency.upper()},
                "device_options": {
                    "device_id": device_id,
                    "skip_receipt_screen": False,
                    "tip_settings": {"allow_tipping": False},
                },
                "reference_id": reference_id,
                "note": note,
                "payment_type": "CARD_PRESENT",
            },
        }
        data = await self._request("create_terminal_checkout", "POST", "/v2/terminals/checkouts", body)
        return data.get("checkout") or {}

    async def get_terminal_checkout(self, checkout_id: str) -> dict:
        data = await self._request("get_terminal_checkout", "GET", f"/v2/terminals/checkouts/{checkout_id}")
        return data.get("checkout") or {}

    async def create_device_code(self, location_id: str, name: str, idempotency_key: str | None = None) -> dict:
        body = {
            "idempotency_key": idempotency_key or str(uuid4()),
            "device_code": {"product_type": "TERMINAL_API", "location_id": location_id, "name": name},
        }
        data = await self._request("create_device_code", "POST", "/v2/devices/codes", body)
        return data.get("device_code") or {}

    async def get_device_code(self, device_code_id: str) -> dict:
        data = await self._request("get_device_code", "GET", f"/v2/devices/codes/{device_code_id}")
        return data.get("device_code") or {}

    async def refresh_token(self, client_id: str, client_secret: str, refresh_token: str) -> dict:
        body = {
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        return await self._request("refresh_token", "POST", "/oauth2/token", body)


def _error_detail(resp: httpx.Response) -> str:
    try:
        errors = resp.json().get("errors") or []
    except ValueError:
        errors = []
    if errors:
        first = errors[0]
        return first.get("detail") or first.get("code") or f"Square API error ({resp.status_code})"
    return f"Square API error ({resp.status_code})"


def default_square_client_factory(access_token: str) -> SquareClient:
    return SquareClient(access_token)
