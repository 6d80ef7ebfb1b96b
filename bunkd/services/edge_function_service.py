# services/edge_function_service.py
"""
Authenticated calls to the backend's edge functions.

Requests go to https://<ref>.supabase.co/functions/v1/<name>. When that host
answers 401 with an invalid-token message, the same request is sent once more
to https://<ref>.functions.supabase.co/<name>, which accepts tokens the
gateway sometimes rejects.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from bunkd.config import Settings, settings as default_settings
from bunkd.services.errors import HttpError, NetworkError
from bunkd.services.http_helpers import (
    base_headers,
    decode_body,
    error_messages,
    extract_message,
    matches_signature,
    open_client,
)
from bunkd.services.session_service import SessionManager

logger = logging.getLogger(__name__)


def derive_fallback_base(supabase_url: str, functions_domain: str) -> Optional[str]:
    """
    https://abc123.supabase.co -> https://abc123.functions.supabase.co

    Returns None when the host has no project-ref label to reuse.
    """
    try:
        host = httpx.URL(supabase_url).host
    except httpx.InvalidURL:
        return None
    if not host or "." not in host or host.replace(".", "").isdigit():
        return None
    ref = host.split(".")[0]
    return f"https://{ref}.{functions_domain}"


def build_http_error(response: httpx.Response, body: Any) -> HttpError:
    message = extract_message(body, fallback=response.reason_phrase)
    details = hint = None
    if isinstance(body, dict):
        details = body.get("details")
        hint = body.get("hint")
    return HttpError(
        response.status_code,
        message,
        details=str(details) if details else None,
        hint=str(hint) if hint else None,
        body=body,
    )


class EdgeFunctionClient:
    def __init__(
        self,
        session_manager: SessionManager,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_manager = session_manager
        self.settings = settings or default_settings
        self._transport = transport

    def primary_url(self, function_name: str) -> str:
        return f"{self.settings.SUPABASE_URL.rstrip('/')}/functions/v1/{function_name}"

    def fallback_url(self, function_name: str) -> Optional[str]:
        base = derive_fallback_base(self.settings.SUPABASE_URL, self.settings.FUNCTIONS_FALLBACK_DOMAIN)
        return f"{base}/{function_name}" if base else None

    def is_invalid_token(self, response: httpx.Response, body: Any) -> bool:
        if response.status_code != 401:
            return False
        return any(
            matches_signature(message, self.settings.INVALID_TOKEN_SIGNATURES)
            for message in error_messages(body)
        )

    async def invoke(
        self,
        function_name: str,
        method: str = "POST",
        body: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Call an edge function and return its decoded body.

        Non-JSON bodies are returned as text. Raises AuthError when no session
        can be obtained, NetworkError when no response arrives, HttpError on a
        non-2xx final status.
        """
        session = await self.session_manager.ensure_session()
        method = method.upper()
        headers = base_headers(self.settings, session.access_token)

        logger.debug(f"Calling edge function {function_name} ({method}) as {session.user_id}, token {session.token_prefix}")

        response, data = await self._send(self.primary_url(function_name), method, headers, body, query)

        if self.is_invalid_token(response, data):
            fallback = self.fallback_url(function_name)
            if fallback:
                logger.warning(f"{function_name}: primary endpoint returned Invalid JWT, retrying via {fallback}")
                response, data = await self._send(fallback, method, headers, body, query)
            if not response.is_success:
                await self._check_rejected_session(session)

        if not response.is_success:
            error = build_http_error(response, data)
            logger.error(f"{function_name} failed: {error}")
            raise error

        logger.debug(f"{function_name} -> {response.status_code}")
        return data

    async def _send(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Optional[Dict[str, Any]],
        query: Optional[Dict[str, str]],
    ):
        request_kwargs: Dict[str, Any] = {"headers": headers}
        if query:
            request_kwargs["params"] = query
        if method != "GET" and body is not None:
            request_kwargs["json"] = body
        try:
            async with open_client(self.settings, self._transport) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TransportError as e:
            logger.error(f"Network error calling {url}: {e}")
            raise NetworkError(f"Network error calling {url}: {e}") from e
        return response, decode_body(response)

    async def _check_rejected_session(self, session) -> None:
        # No host accepted the token: if the auth server agrees, replace the session.
        try:
            accepted = await self.session_manager.verify_token(session)
        except NetworkError as e:
            logger.warning(f"Could not verify rejected token: {e}")
            return
        if not accepted:
            self.session_manager.invalidate(session)
