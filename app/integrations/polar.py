"""Polar API client for the checkout and customer-portal flows.

Only two calls are needed: create a checkout session and create a customer
portal session. Transport errors are retried with tenacity; any non-2xx
response becomes an UpstreamError carrying the provider's status and body.
"""

import json
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings, get_settings
from app.core.exceptions import MissingConfigError, UpstreamError

logger = structlog.get_logger(__name__)

CHECKOUTS_PATH = "/v1/checkouts"
CUSTOMER_SESSIONS_PATH = "/v1/customer-sessions"
LEGACY_PORTAL_SESSIONS_PATH = "/v1/customer-portal/sessions"

URL_KEYS = ("url", "checkout_url", "checkoutUrl", "portal_url", "customer_portal_url")


def extract_url(payload: Any) -> str | None:
    """Find the redirect URL in a Polar response, descending into ``data``."""
    if not isinstance(payload, dict):
        return None
    for key in URL_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return extract_url(payload.get("data"))


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except json.JSONDecodeError:
        return response.text


class PolarClient:
    """Thin async client for the Polar HTTP API."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Polar client.

        Args:
            settings: Defaults to the cached application settings
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.polar_api_base_url.rstrip("/"),
            timeout=self.settings.polar_request_timeout_seconds,
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        token = self.settings.polar_access_token
        if not token:
            raise MissingConfigError("Missing POLAR_ACCESS_TOKEN")
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "polar_api_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def _send(self, path: str, body: dict) -> httpx.Response:
        return await self._client.post(path, json=body, headers=self._headers())

    async def post(self, path: str, body: dict) -> Any:
        """POST ``body`` to ``path`` and return the parsed JSON response.

        Raises:
            MissingConfigError: no access token configured
            UpstreamError: transport failure after retries, or non-2xx status
        """
        try:
            response = await self._send(path, body)
        except httpx.TransportError as e:
            logger.error("polar_api_unreachable", path=path, error=str(e), error_type=type(e).__name__)
            raise UpstreamError(f"Polar request failed for {path}: {e}") from e

        payload = _parse_body(response)
        if response.is_error:
            logger.warning("polar_api_error", path=path, status_code=response.status_code)
            raise UpstreamError(
                f"Polar request failed ({response.status_code}) for {path}",
                upstream_status=response.status_code,
                payload=payload,
            )
        return payload

    async def create_checkout(self, body: dict) -> Any:
        return await self.post(CHECKOUTS_PATH, body)

    async def create_portal_session(self, customer_id: str) -> Any:
        """Create a customer portal session.

        Older API deployments only expose the legacy portal endpoint, so a 404
        from ``/v1/customer-sessions`` is retried there.
        """
        body = {"customer_id": customer_id}
        try:
            return await self.post(CUSTOMER_SESSIONS_PATH, body)
        except UpstreamError as e:
            if e.upstream_status != 404:
                raise
            logger.info("polar_portal_fallback", path=LEGACY_PORTAL_SESSIONS_PATH)
            return await self.post(LEGACY_PORTAL_SESSIONS_PATH, body)

    async def aclose(self) -> None:
        await self._client.aclose()
