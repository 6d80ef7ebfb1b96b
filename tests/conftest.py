"""Shared fixtures: settings pointing at a fake project and a scripted HTTP backend."""
from typing import Any, Dict, List, Tuple

import httpx
import pytest

from bunkd.config import Settings
from bunkd.services.client import BunkdClient
from bunkd.services.edge_function_service import EdgeFunctionClient
from bunkd.services.session_service import SessionManager


BASE_URL = "https://abc123.supabase.co"
FALLBACK_BASE = "https://abc123.functions.supabase.co"

SIGNUP_URL = f"{BASE_URL}/auth/v1/signup"
USER_URL = f"{BASE_URL}/auth/v1/user"
ANALYZE_URL = f"{BASE_URL}/functions/v1/analyze_product"
JOB_STATUS_URL = f"{BASE_URL}/functions/v1/job_status"
HISTORY_URL = f"{BASE_URL}/rest/v1/analysis_jobs"


def session_payload(user_id: str = "user-1", token: str = "token-aaaaaaaaaaaa-1") -> Dict[str, Any]:
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_in": 3600,
        "expires_at": 1900000000,
        "refresh_token": f"refresh-{user_id}",
        "user": {"id": user_id, "is_anonymous": True},
    }


class FakeBackend:
    """
    Scripted responses keyed by (method, url-without-query).

    Each route holds a queue of (status, body); the last entry repeats once the
    queue runs down. Every request is recorded for assertions.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], List[Tuple[int, Any]]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, url: str, *responses: Tuple[int, Any]) -> "FakeBackend":
        self.routes.setdefault((method, url), []).extend(responses)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        queue = self.routes.get(key)
        if not queue:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body or "")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, url: str, method: str = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if f"{r.url.scheme}://{r.url.host}{r.url.path}" == url and (method is None or r.method == method)
        ]


@pytest.fixture
def settings():
    return Settings(
        SUPABASE_URL=BASE_URL,
        SUPABASE_ANON_KEY="anon-key",
        POLL_INTERVAL_SECONDS=0,
        POLL_MAX_ATTEMPTS=5,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def signed_in_backend(backend):
    """Backend that accepts anonymous sign-in."""
    backend.add("POST", SIGNUP_URL, (200, session_payload()))
    return backend


@pytest.fixture
def session_manager(settings, backend):
    return SessionManager(settings, transport=backend.transport)


@pytest.fixture
def edge_client(settings, backend, session_manager):
    return EdgeFunctionClient(session_manager, settings, transport=backend.transport)


@pytest.fixture
def client(settings, backend):
    return BunkdClient(settings, transport=backend.transport)
