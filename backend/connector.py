"""
Backend Connector — HTTP adapter for the CRM services this core calls out to.

The core never writes message text or talks to WhatsApp itself. Both of
those live behind the CRM's internal API and are configured via
settings.yaml (``backend`` section):

  deliver_followup   generate the nudge with the org's AI agent and send it
  process_webhook    replay one stored inbound webhook payload

Transient failures (network errors, 5xx, 429) are retried here with
tenacity and then surface to the caller, which lets the queue or the
webhook retry job schedule the next attempt. 409/410/422 from the
delivery endpoint mean "never send this one" and become DeliveryRejected.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import BackendConfig
from followup.sender import DeliveryReceipt, DeliveryRejected, DeliveryRequest, FollowUpDeliverer
from jobs.webhook_retry import WebhookEventHandler

logger = structlog.get_logger()

REJECT_STATUSES = {409, 410, 422}
MAX_ATTEMPTS = 3
MAX_RETRY_WAIT = 10


class BackendNotConfiguredError(RuntimeError):
    pass


def delivery_budget_seconds(config: BackendConfig) -> float:
    """Upper bound on one ``post`` call: every attempt times out, every wait is maxed."""
    return config.timeout * MAX_ATTEMPTS + MAX_RETRY_WAIT * (MAX_ATTEMPTS - 1)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return False


class RESTBackendClient:
    """Shared httpx client with auth headers and named endpoints."""

    def __init__(self, config: BackendConfig):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=1, max=MAX_RETRY_WAIT),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    async def post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()


class RESTDeliverer(FollowUpDeliverer):

    def __init__(self, client: RESTBackendClient):
        self.client = client

    async def deliver(self, request: DeliveryRequest) -> DeliveryReceipt:
        try:
            data = await self.client.post("deliver_followup", asdict(request))
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in REJECT_STATUSES:
                raise DeliveryRejected(f"{status}: {e.response.text[:200]}") from e
            raise
        return DeliveryReceipt(
            content=data.get("content", ""),
            provider_message_id=data.get("message_id", ""),
        )


class RESTWebhookHandler(WebhookEventHandler):

    def __init__(self, client: RESTBackendClient):
        self.client = client

    async def process(self, payload: dict[str, Any]) -> Any:
        return await self.client.post("process_webhook", {"payload": payload})


class UnconfiguredBackend(FollowUpDeliverer, WebhookEventHandler):
    """
    Stands in until ``backend.base_url`` is set. Every call fails, and the
    ``degraded`` flag lets the health check and the webhook retry job tell
    "not wired" apart from a real outage.
    """

    degraded = True

    async def deliver(self, request: DeliveryRequest) -> DeliveryReceipt:
        raise BackendNotConfiguredError("backend.base_url is not configured")

    async def process(self, payload: dict[str, Any]) -> Any:
        raise BackendNotConfiguredError("backend.base_url is not configured")


def create_backend_collaborators(
    config: BackendConfig = None,
) -> tuple[FollowUpDeliverer, WebhookEventHandler, Optional[RESTBackendClient]]:
    """Returns (deliverer, webhook handler, client to close on shutdown)."""
    config = config or BackendConfig()
    if not config.base_url or "${" in config.base_url:
        logger.warning("backend_not_configured")
        unconfigured = UnconfiguredBackend()
        return unconfigured, unconfigured, None

    client = RESTBackendClient(config)
    logger.info("backend_connector_created", base_url=config.base_url)
    return RESTDeliverer(client), RESTWebhookHandler(client), client
