"""Tests for authenticated edge function calls and endpoint failover."""
import json

import httpx
import pytest

from bunkd.services.edge_function_service import EdgeFunctionClient, derive_fallback_base
from bunkd.services.errors import AnonymousSignInDisabled, HttpError, NetworkError
from bunkd.services.session_service import SessionManager

from conftest import (
    ANALYZE_URL,
    FALLBACK_BASE,
    JOB_STATUS_URL,
    SIGNUP_URL,
    USER_URL,
)

FALLBACK_ANALYZE_URL = f"{FALLBACK_BASE}/analyze_product"
INVALID_JWT = {"code": 401, "message": "Invalid JWT"}


class TestRequestShape:
    """Tests for headers, bodies and query strings."""

    async def test_post_sends_json_body_and_auth_headers(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (202, {"status": "queued", "job_id": "J1"}))

        data = await edge_client.invoke("analyze_product", "POST", body={"text": "hello"})

        assert data == {"status": "queued", "job_id": "J1"}
        request = signed_in_backend.calls(ANALYZE_URL)[0]
        assert request.headers["Authorization"] == "Bearer token-aaaaaaaaaaaa-1"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"text": "hello"}

    async def test_get_sends_query_string(self, signed_in_backend, edge_client):
        signed_in_backend.add("GET", JOB_STATUS_URL, (200, {"status": "queued", "job_id": "J1"}))

        await edge_client.invoke("job_status", "GET", query={"job_id": "J1", "job_token": "T1"})

        request = signed_in_backend.calls(JOB_STATUS_URL)[0]
        assert request.url.params["job_id"] == "J1"
        assert request.url.params["job_token"] == "T1"
        assert request.content == b""

    async def test_non_json_body_is_returned_as_text(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (200, "plain text reply"))

        data = await edge_client.invoke("analyze_product", body={"text": "x"})

        assert data == "plain text reply"

    async def test_empty_body_is_none(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (204, ""))

        assert await edge_client.invoke("analyze_product", body={"text": "x"}) is None


class TestFailover:
    """Tests for the single retry against the functions domain."""

    async def test_invalid_jwt_retries_once_on_fallback(self, signed_in_backend, edge_client):
        """401 Invalid JWT on primary -> one fallback call -> success surfaces."""
        signed_in_backend.add("POST", ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (200, {"status": "cached"}))

        data = await edge_client.invoke("analyze_product", body={"text": "x"})

        assert data == {"status": "cached"}
        assert len(signed_in_backend.calls(ANALYZE_URL)) == 1
        assert len(signed_in_backend.calls(FALLBACK_ANALYZE_URL)) == 1

    async def test_fallback_keeps_method_body_and_token(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (202, {"status": "queued"}))

        await edge_client.invoke("analyze_product", body={"url": "https://example.com"})

        request = signed_in_backend.calls(FALLBACK_ANALYZE_URL)[0]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer token-aaaaaaaaaaaa-1"
        assert json.loads(request.content) == {"url": "https://example.com"}

    async def test_message_match_is_substring(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (401, {"msg": "invalid JWT: unable to parse or verify signature"}))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (200, {"ok": True}))

        assert await edge_client.invoke("analyze_product", body={"text": "x"}) == {"ok": True}

    async def test_other_401_does_not_fail_over(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (401, {"message": "Missing authorization header"}))

        with pytest.raises(HttpError) as exc_info:
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert exc_info.value.status_code == 401
        assert signed_in_backend.calls(FALLBACK_ANALYZE_URL) == []

    async def test_other_status_with_invalid_jwt_does_not_fail_over(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (403, INVALID_JWT))

        with pytest.raises(HttpError):
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert signed_in_backend.calls(FALLBACK_ANALYZE_URL) == []

    async def test_fallback_rejection_is_not_retried_again(self, signed_in_backend, edge_client, session_manager):
        """Both hosts reject: one fallback only, token verified, session dropped."""
        signed_in_backend.add("POST", ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("GET", USER_URL, (401, {"msg": "invalid JWT"}))

        with pytest.raises(HttpError) as exc_info:
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert exc_info.value.status_code == 401
        assert len(signed_in_backend.calls(ANALYZE_URL)) == 1
        assert len(signed_in_backend.calls(FALLBACK_ANALYZE_URL)) == 1
        assert session_manager.session is None

    async def test_verified_token_keeps_session(self, signed_in_backend, edge_client, session_manager):
        signed_in_backend.add("POST", ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("GET", USER_URL, (200, {"id": "user-1"}))

        with pytest.raises(HttpError):
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert session_manager.session is not None

    async def test_no_fallback_for_local_host(self, settings, backend):
        """Hosts without a project ref have no alternate domain; the token is verified instead."""
        local = settings.model_copy(update={"SUPABASE_URL": "http://127.0.0.1:54321"})
        backend.add("POST", "http://127.0.0.1/auth/v1/signup", (200, {
            "access_token": "local-token-123456",
            "user": {"id": "user-1"},
        }))
        backend.add("POST", "http://127.0.0.1/functions/v1/analyze_product", (401, INVALID_JWT))
        backend.add("GET", "http://127.0.0.1/auth/v1/user", (200, {"id": "user-1"}))
        sessions = SessionManager(local, transport=backend.transport)
        edge = EdgeFunctionClient(sessions, local, transport=backend.transport)

        with pytest.raises(HttpError):
            await edge.invoke("analyze_product", body={"text": "x"})

        assert [r.url.path for r in backend.requests] == [
            "/auth/v1/signup",
            "/functions/v1/analyze_product",
            "/auth/v1/user",
        ]
        assert sessions.session is not None

    async def test_rejected_token_without_fallback_is_replaced(self, settings, backend):
        """Invalid JWT on a local host drops the session; the next call signs in again."""
        local = settings.model_copy(update={"SUPABASE_URL": "http://localhost:54321"})
        backend.add(
            "POST", "http://localhost/auth/v1/signup",
            (200, {"access_token": "local-token-000001", "user": {"id": "user-1"}}),
            (200, {"access_token": "local-token-000002", "user": {"id": "user-2"}}),
        )
        backend.add(
            "POST", "http://localhost/functions/v1/analyze_product",
            (401, INVALID_JWT),
            (200, {"status": "queued", "job_id": "J1"}),
        )
        backend.add("GET", "http://localhost/auth/v1/user", (401, {"msg": "invalid JWT"}))
        sessions = SessionManager(local, transport=backend.transport)
        edge = EdgeFunctionClient(sessions, local, transport=backend.transport)

        with pytest.raises(HttpError):
            await edge.invoke("analyze_product", body={"text": "x"})

        assert sessions.session is None

        data = await edge.invoke("analyze_product", body={"text": "x"})

        assert data["job_id"] == "J1"
        assert sessions.session.user_id == "user-2"
        assert len(backend.calls("http://localhost/auth/v1/signup")) == 2
        retried = backend.calls("http://localhost/functions/v1/analyze_product")[1]
        assert retried.headers["Authorization"] == "Bearer local-token-000002"

    async def test_fallback_server_error_verifies_token(self, signed_in_backend, edge_client, session_manager):
        signed_in_backend.add("POST", ANALYZE_URL, (401, INVALID_JWT))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (503, {"message": "Service unavailable"}))
        signed_in_backend.add("GET", USER_URL, (401, {"msg": "invalid JWT"}))

        with pytest.raises(HttpError) as exc_info:
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert exc_info.value.status_code == 503
        assert session_manager.session is None

    async def test_invalid_jwt_in_any_message_field(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (401, {"error": "Unauthorized", "message": "Invalid JWT"}))
        signed_in_backend.add("POST", FALLBACK_ANALYZE_URL, (200, {"ok": True}))

        assert await edge_client.invoke("analyze_product", body={"text": "x"}) == {"ok": True}
        assert len(signed_in_backend.calls(FALLBACK_ANALYZE_URL)) == 1


class TestErrors:
    """Tests for error mapping."""

    async def test_http_error_includes_details_and_hint(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (400, {
            "error": "Missing required parameters",
            "details": "Provide exactly one of url, text or image_url",
            "hint": "Check the request body",
        }))

        with pytest.raises(HttpError) as exc_info:
            await edge_client.invoke("analyze_product", body={"text": "x"})

        error = exc_info.value
        assert error.status_code == 400
        assert error.message == "Missing required parameters"
        assert error.details == "Provide exactly one of url, text or image_url"
        assert error.hint == "Check the request body"
        assert str(error) == (
            "API Error (400): Missing required parameters"
            "\nProvide exactly one of url, text or image_url"
            "\nHint: Check the request body"
        )

    async def test_non_json_error_keeps_raw_text(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (502, "<html>Bad Gateway</html>"))

        with pytest.raises(HttpError) as exc_info:
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert exc_info.value.message == "<html>Bad Gateway</html>"
        assert exc_info.value.body == "<html>Bad Gateway</html>"

    async def test_empty_error_body_uses_reason_phrase(self, signed_in_backend, edge_client):
        signed_in_backend.add("POST", ANALYZE_URL, (500, ""))

        with pytest.raises(HttpError) as exc_info:
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert exc_info.value.message == "Internal Server Error"

    async def test_transport_error_is_network_error(self, settings, signed_in_backend):
        def handler(request):
            if request.url.path.startswith("/functions"):
                raise httpx.ReadTimeout("timed out", request=request)
            return signed_in_backend.handler(request)

        transport = httpx.MockTransport(handler)
        edge = EdgeFunctionClient(SessionManager(settings, transport=transport), settings, transport=transport)

        with pytest.raises(NetworkError):
            await edge.invoke("analyze_product", body={"text": "x"})

    async def test_auth_failure_prevents_call(self, backend, edge_client):
        backend.add("POST", SIGNUP_URL, (422, {"error_code": "anonymous_provider_disabled"}))

        with pytest.raises(AnonymousSignInDisabled):
            await edge_client.invoke("analyze_product", body={"text": "x"})

        assert backend.calls(ANALYZE_URL) == []


class TestDeriveFallbackBase:
    """Tests for the alternate functions host."""

    def test_project_host(self):
        assert derive_fallback_base("https://abc123.supabase.co", "functions.supabase.co") == FALLBACK_BASE

    def test_trailing_slash(self):
        assert derive_fallback_base("https://abc123.supabase.co/", "functions.supabase.co") == FALLBACK_BASE

    def test_ip_address(self):
        assert derive_fallback_base("http://127.0.0.1:54321", "functions.supabase.co") is None

    def test_single_label_host(self):
        assert derive_fallback_base("http://localhost:54321", "functions.supabase.co") is None
