"""Async HTTP client for the CRM deals API (HubSpot v3).

Provides CrmClient with a short tenacity retry for transport failures,
timeouts, 429 and 5xx responses. Whatever remains after the retry budget is
classified into a CrmResult:

- 2xx                              -> OK
- 404                              -> NOT_FOUND
- 429, 5xx, timeouts, connect errs -> TRANSIENT_ERROR
- any other status                 -> PERMANENT_ERROR (body kept verbatim)
"""

from __future__ import annotations

import time

import httpx
import structlog
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealsync.core.monitoring import CRM_REQUEST_LATENCY
from src.dealsync.sync.crm.schemas import (
    READ_PROPERTIES,
    CrmResult,
    CrmStatus,
    DealProperties,
    DealSnapshot,
)

logger = structlog.get_logger(__name__)

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


class _RetryableResponse(Exception):
    """Raised inside the retry loop for responses worth another attempt."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


_crm_retry = retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type(
        (_RetryableResponse, httpx.TimeoutException, httpx.TransportError)
    ),
    reraise=True,
)


class CrmClient:
    """Async client for CRM deal reads and property updates.

    Args:
        access_token: Bearer token for the CRM account. Empty means the
            integration is not configured.
        base_url: API root, e.g. https://api.hubapi.com.
        timeout: Read timeout in seconds; writes get twice this.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.hubapi.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self.TIMEOUT_READ = timeout
        self.TIMEOUT_MUTATE = timeout * 2
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    @property
    def is_configured(self) -> bool:
        return bool(self._access_token)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=timeout,
            transport=self._transport,
        )

    def _deal_url(self, deal_id: str) -> str:
        return f"{self._base_url}/crm/v3/objects/deals/{deal_id}"

    @_crm_retry
    async def _send(
        self,
        method: str,
        url: str,
        timeout: float,
        **kwargs,
    ) -> httpx.Response:
        async with self._client(timeout) as client:
            response = await client.request(method, url, **kwargs)
        if response.status_code in _TRANSIENT_STATUS:
            raise _RetryableResponse(response)
        return response

    async def _call(
        self, operation: str, method: str, url: str, timeout: float, **kwargs
    ) -> tuple[httpx.Response | None, CrmResult | None]:
        """Run a request; returns (response, None) or (None, failure result)."""
        started = time.perf_counter()
        try:
            response = await self._send(method, url, timeout, **kwargs)
        except _RetryableResponse as exc:
            return None, CrmResult(
                status=CrmStatus.TRANSIENT_ERROR,
                status_code=exc.response.status_code,
                error=exc.response.text,
            )
        except (httpx.TimeoutException, httpx.TransportError, RetryError) as exc:
            return None, CrmResult(
                status=CrmStatus.TRANSIENT_ERROR,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            CRM_REQUEST_LATENCY.labels(operation=operation).observe(
                time.perf_counter() - started
            )

        if response.status_code == 404:
            return None, CrmResult(
                status=CrmStatus.NOT_FOUND,
                status_code=404,
                error=response.text,
            )
        if response.status_code >= 400:
            return None, CrmResult(
                status=CrmStatus.PERMANENT_ERROR,
                status_code=response.status_code,
                error=response.text,
            )
        return response, None

    async def get_deal(self, deal_id: str) -> CrmResult:
        """Read a deal with the properties needed for comparison.

        GET /crm/v3/objects/deals/{id}?properties=dealstage,amount,...
        """
        response, failure = await self._call(
            "get_deal",
            "GET",
            self._deal_url(deal_id),
            self.TIMEOUT_READ,
            params={"properties": ",".join(READ_PROPERTIES)},
        )
        if failure is not None:
            logger.warning(
                "crm.get_deal_failed",
                deal_id=deal_id,
                status=failure.status.value,
                status_code=failure.status_code,
            )
            return failure

        deal = DealSnapshot.from_api(response.json())
        logger.debug("crm.deal_read", deal_id=deal_id, dealstage=deal.dealstage)
        return CrmResult(status=CrmStatus.OK, deal=deal, status_code=response.status_code)

    async def update_deal(self, deal_id: str, properties: DealProperties) -> CrmResult:
        """Write allow-listed properties to a deal.

        PATCH /crm/v3/objects/deals/{id} with {"properties": {...}}.
        """
        response, failure = await self._call(
            "update_deal",
            "PATCH",
            self._deal_url(deal_id),
            self.TIMEOUT_MUTATE,
            json=properties.to_payload(),
        )
        if failure is not None:
            logger.warning(
                "crm.update_deal_failed",
                deal_id=deal_id,
                status=failure.status.value,
                status_code=failure.status_code,
            )
            return failure

        deal = DealSnapshot.from_api(response.json())
        logger.info(
            "crm.deal_updated",
            deal_id=deal_id,
            properties=sorted(properties.model_dump(exclude_none=True)),
        )
        return CrmResult(status=CrmStatus.OK, deal=deal, status_code=response.status_code)
