# services/history_service.py
"""
Past analysis jobs for the signed-in user.

Rows come straight from the analysis_jobs table through the REST endpoint and
are turned into HistoryRecord objects, newest first.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from bunkd.config import Settings, settings as default_settings
from bunkd.schemas.history import HistoryRecord
from bunkd.services.edge_function_service import build_http_error
from bunkd.services.errors import MalformedResponse, NetworkError
from bunkd.services.http_helpers import base_headers, decode_body, open_client
from bunkd.services.session_service import SessionManager

logger = logging.getLogger(__name__)

# Score has lived under each of these names over time. Order is priority:
# the first numeric value wins. Add new names at the front.
SCORE_KEYS = (
    "bs_score",
    "bunk_score",
    "bunkd_score",
)

HISTORY_COLUMNS = "id,input_type,input_value,created_at,status,bs_score,result_json,user_id"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def reconcile_score(*sources: Optional[Dict[str, Any]]) -> Optional[float]:
    """
    First numeric score found across `sources`, checking SCORE_KEYS in order
    within each source. Sources are consulted in the order given.
    """
    for source in sources:
        if not isinstance(source, dict):
            continue
        for key in SCORE_KEYS:
            value = source.get(key)
            if _is_number(value):
                return float(value)
    return None


def to_history_record(row: Dict[str, Any]) -> HistoryRecord:
    payload = row.get("result_json")
    if not isinstance(payload, dict):
        payload = None
    return HistoryRecord(
        id=str(row["id"]),
        input_type=row.get("input_type") or "",
        input_value=row.get("input_value") or "",
        created_at=row.get("created_at") or "",
        status=row.get("status") or "",
        # The row's own bs_score column first, then whatever the payload carries.
        score=reconcile_score(row, payload),
        result_payload=payload,
    )


def is_disambiguation_only(record: HistoryRecord) -> bool:
    """A job that asked for clarification and never produced a score."""
    payload = record.result_payload or {}
    return bool(payload.get("needs_disambiguation")) and record.score is None


def reconcile_rows(rows: Iterable[Dict[str, Any]]) -> List[HistoryRecord]:
    records = []
    for row in rows:
        record = to_history_record(row)
        if is_disambiguation_only(record):
            logger.info(f"Filtering out disambiguation item: {record.id}")
            continue
        records.append(record)
    # The query already orders by created_at; keep that guarantee locally too.
    records.sort(key=lambda r: r.created_at, reverse=True)
    return records


class HistoryReconciler:
    def __init__(
        self,
        session_manager: SessionManager,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_manager = session_manager
        self.settings = settings or default_settings
        self._transport = transport

    async def list_history(self, user_id: Optional[str] = None, limit: Optional[int] = None) -> List[HistoryRecord]:
        """
        Presentable history for `user_id` (default: the current session's user).

        Returns an empty list when there is no signed-in user.
        """
        session = self.session_manager.session
        if session is None:
            logger.info("No authenticated user found - history is empty")
            return []
        user_id = user_id or session.user_id
        limit = limit or self.settings.HISTORY_PAGE_SIZE

        url = f"{self.settings.SUPABASE_URL.rstrip('/')}/rest/v1/analysis_jobs"
        params = {
            "select": HISTORY_COLUMNS,
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        try:
            async with open_client(self.settings, self._transport) as client:
                response = await client.get(url, params=params, headers=base_headers(self.settings, session.access_token))
        except httpx.TransportError as e:
            raise NetworkError(f"Error loading history: {e}") from e

        body = decode_body(response)
        if not response.is_success:
            error = build_http_error(response, body)
            logger.error(f"Error loading history: {error}")
            raise error
        if not isinstance(body, list):
            raise MalformedResponse("History query did not return a list", body=body)

        records = reconcile_rows(row for row in body if isinstance(row, dict))
        logger.info(f"Loaded {len(records)} history items for {user_id}")
        return records[:limit]
