from pydantic import BaseModel
from typing import Any, Dict, Optional


class HistoryRecord(BaseModel):
    id: str
    input_type: str
    input_value: str
    created_at: str  # ISO8601 string, as stored
    status: str
    score: Optional[float] = None
    result_payload: Optional[Dict[str, Any]] = None

    @property
    def is_viewable(self) -> bool:
        """Only finished jobs with a stored payload can be opened."""
        return self.status in ("done", "completed") and self.result_payload is not None

    def to_request_input(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Rebuild the analyze input this record was created from.

        Pass force_refresh=True to re-analyze instead of getting the cached result back.
        """
        key = {"url": "url", "text": "text", "image": "image_url"}.get(self.input_type)
        if not key:
            return {}
        request: Dict[str, Any] = {key: self.input_value}
        if force_refresh:
            request["force_refresh"] = True
        return request
