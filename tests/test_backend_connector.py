"""
Tests for the CRM backend connector (httpx + tenacity).

HTTP is faked with httpx.MockTransport; no network is touched.
"""
import httpx
import pytest
from tenacity import wait_none

from backend.connector import (
    BackendNotConfiguredError, RESTBackendClient, RESTDeliverer,
    RESTWebhookHandler, UnconfiguredBackend, _is_transient,
    create_backend_collaborators, delivery_budget_seconds,
)
from config.settings import BackendConfig, FollowUpSettings, Settings
from core.container import build_services
from followup.sender import DeliveryRejected, DeliveryRequest


def make_client(handler, **config_kwargs) -> RESTBackendClient:
    config = BackendConfig(base_url="http://crm.test", **config_kwargs)
    client = RESTBackendClient(config)
    client.client = httpx.AsyncClient(
        base_url=config.base_url,
        transport=httpx.MockTransport(handler),
    )
    return client


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(RESTBackendClient.post.retry, "wait", wait_none())


REQUEST = DeliveryRequest(
    scheduled_message_id="m1", ticket_id="t1", organization_id="org-1",
    step=1, total_steps=3,
)


class TestTransientClassification:
    def _status_error(self, status):
        request = httpx.Request("POST", "http://crm.test/x")
        return httpx.HTTPStatusError("x", request=request, response=httpx.Response(status, request=request))

    def test_transport_errors_are_transient(self):
        assert _is_transient(httpx.ConnectError("refused"))

    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_retryable_statuses(self, status):
        assert _is_transient(self._status_error(status))

    @pytest.mark.parametrize("status", [400, 404, 409, 422])
    def test_client_errors_are_not(self, status):
        assert not _is_transient(self._status_error(status))

    def test_other_exceptions_are_not(self):
        assert not _is_transient(ValueError("bad"))


class TestRESTDeliverer:
    @pytest.mark.asyncio
    async def test_posts_request_and_reads_receipt(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"content": "Oi! Still interested?", "message_id": "wamid.1"})

        client = make_client(handler)
        receipt = await RESTDeliverer(client).deliver(REQUEST)
        assert receipt.content == "Oi! Still interested?"
        assert receipt.provider_message_id == "wamid.1"
        assert seen[0].url.path == "/api/internal/followups/deliver"
        assert b'"scheduled_message_id":"m1"' in seen[0].content.replace(b" ", b"")
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [409, 410, 422])
    async def test_reject_statuses_become_delivery_rejected(self, status):
        client = make_client(lambda r: httpx.Response(status, text="window closed"))
        with pytest.raises(DeliveryRejected):
            await RESTDeliverer(client).deliver(REQUEST)
        await client.close()

    @pytest.mark.asyncio
    async def test_server_errors_retried_then_raised(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(503)

        client = make_client(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await RESTDeliverer(client).deliver(REQUEST)
        assert calls == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        responses = [httpx.Response(502), httpx.Response(200, json={"content": "hi"})]
        client = make_client(lambda r: responses.pop(0))
        receipt = await RESTDeliverer(client).deliver(REQUEST)
        assert receipt.content == "hi"
        await client.close()

    @pytest.mark.asyncio
    async def test_bad_request_not_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(400)

        client = make_client(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await RESTDeliverer(client).deliver(REQUEST)
        assert calls == 1
        await client.close()


class TestRESTWebhookHandler:
    @pytest.mark.asyncio
    async def test_wraps_payload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        client = make_client(handler)
        result = await RESTWebhookHandler(client).process({"entry": [1]})
        assert result == {}
        assert seen[0].url.path == "/api/internal/webhooks/process"
        assert b'"payload"' in seen[0].content
        await client.close()


class TestClientAuth:
    @pytest.mark.asyncio
    async def test_bearer_header(self):
        client = RESTBackendClient(BackendConfig(
            base_url="http://crm.test", auth_type="bearer", auth_credentials={"token": "tok"},
        ))
        http = await client._get_client()
        assert http.headers["Authorization"] == "Bearer tok"
        await client.close()

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        client = RESTBackendClient(BackendConfig(
            base_url="http://crm.test", auth_type="api_key",
            auth_credentials={"api_key": "k", "header_name": "X-Internal-Key"},
        ))
        http = await client._get_client()
        assert http.headers["X-Internal-Key"] == "k"
        await client.close()


class TestFactory:
    @pytest.mark.asyncio
    async def test_unconfigured_backend_fails_every_call(self):
        deliverer, handler, client = create_backend_collaborators(BackendConfig())
        assert client is None
        assert isinstance(deliverer, UnconfiguredBackend)
        with pytest.raises(BackendNotConfiguredError):
            await deliverer.deliver(REQUEST)
        with pytest.raises(BackendNotConfiguredError):
            await handler.process({})

    def test_unsubstituted_env_var_counts_as_unconfigured(self):
        _, _, client = create_backend_collaborators(BackendConfig(base_url="${CRM_INTERNAL_URL}"))
        assert client is None

    def test_configured_backend(self):
        deliverer, handler, client = create_backend_collaborators(BackendConfig(base_url="http://crm.test"))
        assert isinstance(deliverer, RESTDeliverer)
        assert isinstance(handler, RESTWebhookHandler)
        assert deliverer.client is client is handler.client


class TestDeliveryBudget:
    def test_default_budget(self):
        # 3 attempts x 30 s timeout + 2 waits capped at 10 s
        assert delivery_budget_seconds(BackendConfig()) == 110

    def test_budget_follows_timeout(self):
        assert delivery_budget_seconds(BackendConfig(timeout=5)) == 35

    def test_default_ticket_lock_outlives_a_delivery(self):
        assert FollowUpSettings().ticket_lock_ttl_seconds > delivery_budget_seconds(BackendConfig())

    def test_ticket_lock_shorter_than_budget_is_rejected(self):
        settings = Settings(
            backend=BackendConfig(base_url="http://crm.test"),
            followup=FollowUpSettings(ticket_lock_ttl_seconds=60),
        )
        with pytest.raises(ValueError, match="ticket_lock_ttl_seconds"):
            build_services(settings)

    def test_ticket_lock_above_budget_is_accepted(self):
        settings = Settings(
            backend=BackendConfig(base_url="http://crm.test", timeout=5),
            followup=FollowUpSettings(ticket_lock_ttl_seconds=60),
        )
        services = build_services(settings)
        assert services.scheduler.mutex.ttl_seconds == 60
        assert services.backend_degraded is False
