"""
Unit tests for HTTP delivery through the connection router.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from relay_guard.core.delivery import ErrorKind, normalize_result
from relay_guard.core.router import AdaptiveConnectionRouter, ServiceEndpoint, StrictConnectionRouter
from relay_guard.sdk.http_delivery import HttpDelivery, classify_response
from relay_guard.storage.models import Submission

SERVICES = {"gateway": ServiceEndpoint(name="gateway", domain="gw.example.com", port=8080)}
QUEUED_AT = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _submission(**kwargs):
    kwargs.setdefault("retry_count", 0)
    return Submission(id="s1", payload={"url": "https://example.com"}, queued_at=QUEUED_AT, **kwargs)


def _delivery(handler, clock):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    router = AdaptiveConnectionRouter(SERVICES, "10.0.0.1", client, clock=clock)
    return HttpDelivery(router, "gateway", "/api/submit", timeout=5.0)


class TestHttpDelivery:
    """Test posting submissions to the gateway."""

    def test_posts_submission_body(self, clock):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": "stored"})

        result = _delivery(handler, clock)(_submission(retry_count=2))

        assert result.success
        [request] = seen
        assert request.method == "POST"
        assert str(request.url) == "https://gw.example.com/api/submit"
        assert json.loads(request.content) == {
            "url": "https://example.com",
            "id": "s1",
            "retryCount": 2,
            "queuedAt": "2024-01-15T12:00:00+00:00",
        }

    def test_transport_error(self, clock):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        result = _delivery(handler, clock)(_submission())

        assert not result.success
        assert result.error_kind == ErrorKind.TRANSPORT
        assert result.error == "timed out"

    def test_gateway_err_field_is_rejection(self, clock):
        def handler(request):
            return httpx.Response(200, json={"err": "Unauthorized"})

        result = _delivery(handler, clock)(_submission())

        assert result.error_kind == ErrorKind.REJECTED
        assert result.error == "Unauthorized"

    def test_strict_router(self):
        def handler(request):
            return httpx.Response(201)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        delivery = HttpDelivery(StrictConnectionRouter(SERVICES, client=client), "gateway",
                                "/api/submit", timeout=1.0)

        assert delivery(_submission()).success

    def test_invalid_timeout(self):
        with pytest.raises(ValueError, match="timeout must be > 0"):
            HttpDelivery(None, "gateway", "/api/submit", timeout=0)


class TestClassifyResponse:
    """Test mapping gateway responses to delivery results."""

    def test_success_without_body(self):
        assert classify_response(httpx.Response(204)).success

    def test_non_json_success(self):
        assert classify_response(httpx.Response(200, text="OK")).success

    @pytest.mark.parametrize("status_code", [400, 410, 413, 422])
    def test_permanent_statuses(self, status_code):
        result = classify_response(httpx.Response(status_code, text="bad payload"))
        assert result.error_kind == ErrorKind.PERMANENT
        assert result.error == f"HTTP {status_code}: bad payload"

    @pytest.mark.parametrize("status_code", [401, 403, 429, 500, 503])
    def test_retryable_statuses(self, status_code):
        result = classify_response(httpx.Response(status_code))
        assert not result.success
        assert result.error_kind == ErrorKind.REJECTED

    def test_unit_ok_is_success(self):
        response = httpx.Response(200, json={"ok": None})
        assert classify_response(response).success
        assert normalize_result({"ok": None}).success

    def test_null_err_is_rejection(self):
        result = classify_response(httpx.Response(200, json={"err": None}))
        assert result.error_kind == ErrorKind.REJECTED
        assert result.error == "Unknown error"
