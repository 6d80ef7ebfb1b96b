# services/client.py
import logging
from typing import Any, Dict, List, Optional, Union

import httpx

from bunkd.config import Settings, settings as default_settings
from bunkd.schemas.analysis import AnalysisOutcome, AnalysisResult, AnalyzeRequest, JobHandle, SubmitResponse
from bunkd.schemas.history import HistoryRecord
from bunkd.schemas.session import AuthState
from bunkd.services.cancellation import CancelToken
from bunkd.services.edge_function_service import EdgeFunctionClient
from bunkd.services.history_service import HistoryReconciler
from bunkd.services.job_service import JobPoller, JobSubmitter, UpdateCallback
from bunkd.services.session_service import SessionManager

logger = logging.getLogger(__name__)


class BunkdClient:
    """
    Entry point for host applications.

    One instance per process: it owns the shared session. Call `initialize()`
    at start-up, then `analyze()` per request and `list_history()` as needed.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or default_settings
        self.sessions = SessionManager(self.settings, transport=transport)
        self.functions = EdgeFunctionClient(self.sessions, self.settings, transport=transport)
        self.submitter = JobSubmitter(self.functions)
        self.poller = JobPoller(self.functions, self.settings)
        self.history = HistoryReconciler(self.sessions, self.settings, transport=transport)

    @property
    def auth_state(self) -> AuthState:
        return self.sessions.state

    async def initialize(self) -> AuthState:
        return await self.sessions.initialize()

    async def submit(self, request: Union[AnalyzeRequest, Dict[str, Any]]) -> SubmitResponse:
        return await self.submitter.submit(request)

    async def poll(
        self,
        handle: JobHandle,
        on_update: Optional[UpdateCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AnalysisResult:
        return await self.poller.poll(handle, on_update=on_update, cancel_token=cancel_token)

    async def analyze(
        self,
        request: Union[AnalyzeRequest, Dict[str, Any]],
        on_update: Optional[UpdateCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AnalysisOutcome:
        """Submit, then poll unless the backend already had the answer."""
        response = await self.submitter.submit(request)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if response.cached:
            logger.info(f"Returning cached result for job {response.job_id}")
            return AnalysisOutcome(result=response.result, job_id=response.job_id, cached=True)

        handle = response.handle
        result = await self.poller.poll(handle, on_update=on_update, cancel_token=cancel_token)
        return AnalysisOutcome(result=result, job_id=handle.job_id, cached=False)

    async def list_history(self, user_id: Optional[str] = None) -> List[HistoryRecord]:
        return await self.history.list_history(user_id)
