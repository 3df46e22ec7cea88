"""Async HTTP client for the Zoho CRM v2 REST API.

Provides ZohoClient with retry logic (tenacity, 3 attempts, exponential
backoff 1-10s) on transport errors, 429 and 5xx responses. The OAuth access
token lives in an injected TokenCache so the webhook and sync paths share one
token without module-level state.

Search quirks handled here:
- Leads are linked to a partner through a Vendor lookup whose API name has
  varied across Zoho layouts, so several criteria are tried in order. A 400
  (unknown field in criteria) moves on to the next variation.
- 204 No Content means "no matches".
- Results are paginated at 200 records; ``info.more_records`` drives paging.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.partner_portal.reconciliation.crm.adapter import CRMClient
from src.partner_portal.reconciliation.errors import UpstreamError

logger = structlog.get_logger(__name__)

LEAD_VENDOR_CRITERIA = (
    "(Vendor:equals:{id})",
    "(Vendor.id:equals:{id})",
    "(Vendor_Name:equals:{id})",
    "(Vendor_Name.id:equals:{id})",
)
DEAL_VENDOR_CRITERIA = ("(Vendor.id:equals:{id})",)

PER_PAGE = 200
MAX_PAGES = 50


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return False


_zoho_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class TokenCache:
    """Cached OAuth access token with an explicit expiry.

    A token is treated as expired ``safety_margin`` seconds before Zoho's
    stated expiry. The lock serializes refreshes so concurrent callers
    trigger at most one token request.

    Args:
        safety_margin: Seconds subtracted from ``expires_in``.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        safety_margin: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._safety_margin = safety_margin
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float = 0.0
        self.lock = asyncio.Lock()

    def get(self) -> str | None:
        """Return the cached token if still valid, else None."""
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def store(self, token: str, expires_in: float) -> None:
        self._token = token
        self._expires_at = self._clock() + max(float(expires_in) - self._safety_margin, 0.0)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


class ZohoClient(CRMClient):
    """Zoho CRM client.

    Args:
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        refresh_token: Long-lived refresh token for the portal integration user.
        api_base_url: CRM API root (e.g. https://www.zohoapis.com/crm/v2).
        accounts_url: Zoho accounts host used for token refresh.
        token_cache: Shared TokenCache; a private one is created if omitted.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    TIMEOUT_TOKEN = 15.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        api_base_url: str = "https://www.zohoapis.com/crm/v2",
        accounts_url: str = "https://accounts.zoho.com",
        token_cache: TokenCache | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._base_url = api_base_url.rstrip("/")
        self._token_url = f"{accounts_url.rstrip('/')}/oauth/v2/token"
        self._tokens = token_cache or TokenCache()
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Any, token_cache: TokenCache | None = None) -> ZohoClient:
        """Build a client from application Settings."""
        return cls(
            client_id=settings.ZOHO_CLIENT_ID,
            client_secret=settings.ZOHO_CLIENT_SECRET,
            refresh_token=settings.ZOHO_REFRESH_TOKEN,
            api_base_url=settings.ZOHO_API_BASE_URL,
            accounts_url=settings.ZOHO_ACCOUNTS_URL,
            token_cache=token_cache,
            timeout=settings.ZOHO_REQUEST_TIMEOUT,
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    # ── Auth ────────────────────────────────────────────────────────────────

    async def get_access_token(self) -> str:
        cached = self._tokens.get()
        if cached:
            return cached
        async with self._tokens.lock:
            # Another caller may have refreshed while we waited
            cached = self._tokens.get()
            if cached:
                return cached
            try:
                data = await self._refresh_access_token()
            except httpx.HTTPError as exc:
                logger.error("zoho.token_refresh_failed", error=str(exc))
                raise UpstreamError("Failed to obtain Zoho access token", cause=str(exc)) from exc
            token = data.get("access_token")
            if not token:
                raise UpstreamError(
                    "Zoho token response had no access_token",
                    zoho_error=data.get("error"),
                )
            self._tokens.store(token, data.get("expires_in", 3600))
            logger.info("zoho.token_refreshed", expires_in=data.get("expires_in"))
            return token

    @_zoho_retry
    async def _refresh_access_token(self) -> dict[str, Any]:
        async with self._client(self.TIMEOUT_TOKEN) as client:
            response = await client.post(
                self._token_url,
                params={
                    "refresh_token": self._refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "refresh_token",
                },
            )
            response.raise_for_status()
            return response.json()

    # ── Transport ───────────────────────────────────────────────────────────

    @_zoho_retry
    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one authorized request; retries transient failures.

        A 401 invalidates the cached token and is retried once with a fresh one.
        """
        for attempt in range(2):
            token = await self.get_access_token()
            async with self._client(self._timeout) as client:
                response = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    params=params,
                    json=json,
                    headers={"Authorization": f"Zoho-oauthtoken {token}"},
                )
            if response.status_code == 401 and attempt == 0:
                logger.warning("zoho.token_rejected", path=path)
                self._tokens.invalidate()
                continue
            response.raise_for_status()
            return response
        return response

    async def _search_all(self, module: str, criteria: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            response = await self._send(
                "GET",
                f"/{module}/search",
                params={"criteria": criteria, "page": page, "per_page": PER_PAGE},
            )
            if response.status_code == 204 or not response.content:
                break
            body = response.json()
            records.extend(body.get("data") or [])
            if not (body.get("info") or {}).get("more_records"):
                break
        else:
            logger.warning("zoho.search_page_limit", module=module, criteria=criteria)
        return records

    async def _search_with_variations(
        self,
        module: str,
        templates: tuple[str, ...],
        partner_external_id: str,
    ) -> list[dict[str, Any]]:
        try:
            for template in templates:
                criteria = template.format(id=partner_external_id)
                try:
                    records = await self._search_all(module, criteria)
                except httpx.HTTPStatusError as exc:
                    if exc.response.status_code == 400:
                        logger.debug("zoho.criteria_rejected", module=module, criteria=criteria)
                        continue
                    raise
                if records:
                    logger.info(
                        "zoho.search_complete",
                        module=module,
                        criteria=criteria,
                        count=len(records),
                    )
                    return records
        except httpx.HTTPError as exc:
            logger.error(
                "zoho.search_failed",
                module=module,
                partner_external_id=partner_external_id,
                error=str(exc),
            )
            raise UpstreamError(
                f"Zoho {module} search failed for partner {partner_external_id}",
                cause=str(exc),
            ) from exc
        return []

    # ── CRMClient ───────────────────────────────────────────────────────────

    async def search_leads_by_partner(self, partner_external_id: str) -> list[dict[str, Any]]:
        return await self._search_with_variations("Leads", LEAD_VENDOR_CRITERIA, partner_external_id)

    async def search_deals_by_partner(self, partner_external_id: str) -> list[dict[str, Any]]:
        return await self._search_with_variations("Deals", DEAL_VENDOR_CRITERIA, partner_external_id)

    async def create_lead(self, data: dict[str, Any]) -> str:
        """Create a lead. Returns the new Zoho record id.

        Raises:
            UpstreamError: HTTP failure or Zoho reported a non-SUCCESS code.
        """
        try:
            response = await self._send("POST", "/Leads", json={"data": [data]})
        except httpx.HTTPError as exc:
            raise UpstreamError("Zoho lead creation failed", cause=str(exc)) from exc
        result = (response.json().get("data") or [{}])[0]
        if result.get("code") != "SUCCESS":
            raise UpstreamError(
                result.get("message") or "Zoho lead creation failed",
                zoho_code=result.get("code"),
            )
        external_id = str(result["details"]["id"])
        logger.info("zoho.lead_created", external_id=external_id)
        return external_id

    async def update_lead(self, external_id: str, data: dict[str, Any]) -> None:
        try:
            response = await self._send(
                "PUT", "/Leads", json={"data": [{"id": external_id, **data}]}
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Zoho lead update failed for {external_id}", cause=str(exc)
            ) from exc
        result = (response.json().get("data") or [{}])[0]
        if result.get("code") != "SUCCESS":
            raise UpstreamError(
                result.get("message") or f"Zoho lead update failed for {external_id}",
                zoho_code=result.get("code"),
            )
        logger.info("zoho.lead_updated", external_id=external_id)
