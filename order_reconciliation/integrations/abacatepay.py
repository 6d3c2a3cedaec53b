"""
AbacatePay gateway client.
Read-only charge lookups over aiohttp with a per-call timeout, call pacing and error classification.
"""
import asyncio
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from order_reconciliation.exceptions import (
    GatewayClientError,
    GatewayNotFound,
    GatewayResponseError,
    GatewayServerError,
    GatewayTimeout,
)
from order_reconciliation.integrations.base import PaymentGateway
from order_reconciliation.integrations.normalization import normalize_charge
from order_reconciliation.models.schemas.gateway import GatewayCharge
from order_reconciliation.utils import get_logger
from order_reconciliation.utils.throttle import Throttle

USER_AGENT = "order-reconciliation/1.0"

class AbacatePayClient(PaymentGateway):
    """AbacatePay charge status client.

    The session may be injected (tests, shared connection pools); otherwise
    one is created lazily and closed by `close()`.
    """

    name = "abacatepay"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str],
        timeout_seconds: float,
        throttle_seconds: float = 0.0,
        throttle: Optional[Throttle] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.throttle = throttle or Throttle(throttle_seconds)
        self._session = session
        self._owns_session = session is None
        self.logger = get_logger(f"integration.{self.name}")

    @classmethod
    def from_settings(cls, settings, *, session: Optional[aiohttp.ClientSession] = None) -> "AbacatePayClient":
        return cls(
            base_url=settings.gateway_base_url,
            api_key=settings.gateway_api_key,
            timeout_seconds=settings.api_timeout_seconds,
            throttle_seconds=settings.api_throttle_seconds,
            session=session,
        )

    async def __aenter__(self) -> "AbacatePayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def query_status(self, payment_reference: str) -> GatewayCharge:
        """GET /charges/{reference} and normalize the body.

        Raises GatewayTimeout, GatewayServerError (5xx, 429, connection),
        GatewayNotFound (404), GatewayClientError (other 4xx) or
        GatewayResponseError (unparseable body).
        """
        await self.throttle.wait()
        url = f"{self.base_url}/charges/{quote(payment_reference, safe='')}"
        session = self._get_session()
        try:
            async with session.get(url, headers=self._headers(), timeout=self.timeout) as response:
                status_code = response.status
                if status_code == 404:
                    raise GatewayNotFound(f"Charge {payment_reference} not found", status_code=404)
                if status_code >= 500 or status_code == 429:
                    body = await response.text()
                    raise GatewayServerError(f"HTTP {status_code}: {body[:200]}", status_code=status_code)
                if status_code >= 400:
                    body = await response.text()
                    raise GatewayClientError(f"HTTP {status_code}: {body[:200]}", status_code=status_code)
                try:
                    payload: Any = await response.json(content_type=None)
                except ValueError as e:
                    raise GatewayResponseError(f"Invalid JSON from gateway: {e}", status_code=status_code) from e
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(
                f"Gateway call exceeded {self.timeout.total}s for {payment_reference}"
            ) from e
        except aiohttp.ClientError as e:
            raise GatewayServerError(f"Gateway connection error: {e}") from e

        charge = normalize_charge(payment_reference, payload)
        self.logger.debug(
            "Gateway charge fetched",
            payment_reference=payment_reference,
            gateway_status=charge.gateway_status,
            mapped_status=charge.status.value,
            amount=charge.amount,
        )
        return charge
