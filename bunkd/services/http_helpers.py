import json
import logging
from typing import Any, List, Optional

import httpx

from bunkd.config import Settings

logger = logging.getLogger(__name__)


def open_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """One client per call; `transport` lets tests swap the network out."""
    return httpx.AsyncClient(transport=transport, timeout=settings.HTTP_TIMEOUT_SECONDS)


def base_headers(settings: Settings, access_token: str) -> dict:
    return {
        "apikey": settings.SUPABASE_ANON_KEY,
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }


def decode_body(response: httpx.Response) -> Any:
    """
    JSON-decode a response body.

    Empty bodies decode to None. Bodies that are not JSON come back as the raw
    text so error handling can still show them.
    """
    text = response.text
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"Response body is not JSON ({response.status_code}): {text[:200]}")
        return text


MESSAGE_KEYS = ("error", "message", "msg", "error_description")


def error_messages(body: Any) -> List[str]:
    """Every message string in an error body, in MESSAGE_KEYS order."""
    if isinstance(body, str):
        return [body] if body else []
    if not isinstance(body, dict):
        return []
    messages = []
    for key in MESSAGE_KEYS:
        value = body.get(key)
        if isinstance(value, dict):
            value = value.get("message")
        if isinstance(value, str) and value:
            messages.append(value)
    return messages


def extract_message(body: Any, fallback: str = "") -> str:
    if isinstance(body, dict):
        for key in MESSAGE_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
            # {"error": {"message": "..."}}
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
        return json.dumps(body)
    if body is None or body == "":
        return fallback
    return str(body)


def matches_signature(text: Optional[str], signatures) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(sig.lower() in lowered for sig in signatures)
