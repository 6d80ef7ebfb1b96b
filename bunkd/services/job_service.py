# services/job_service.py
"""
Submitting analysis jobs and polling them to completion.

    submit() -> cached result (done, no polling)
             -> JobHandle   -> poll() -> queued/processing ... -> done | failed | timeout
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from pydantic import ValidationError

from bunkd.config import Settings, settings as default_settings
from bunkd.schemas.analysis import (
    AnalysisResult,
    AnalyzeRequest,
    JobHandle,
    JobStatus,
    JobStatusSnapshot,
    SubmitResponse,
)
from bunkd.services.cancellation import CancelToken
from bunkd.services.edge_function_service import EdgeFunctionClient
from bunkd.services.errors import (
    InvalidAnalyzeRequest,
    JobFailed,
    MalformedResponse,
    PollingTimeout,
)
from bunkd.services.history_service import reconcile_score

logger = logging.getLogger(__name__)

ANALYZE_FUNCTION = "analyze_product"
JOB_STATUS_FUNCTION = "job_status"

DEFAULT_FAILURE_MESSAGE = "An error occurred during analysis"

UpdateCallback = Callable[[JobStatusSnapshot], Union[None, Awaitable[None]]]


def coerce_request(request: Union[AnalyzeRequest, Dict[str, Any]]) -> AnalyzeRequest:
    if isinstance(request, AnalyzeRequest):
        return request
    try:
        return AnalyzeRequest(**request)
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise InvalidAnalyzeRequest(messages) from e


def parse_status(value: Any, body: Any) -> JobStatus:
    try:
        return JobStatus(value)
    except ValueError:
        raise MalformedResponse(f"Unknown job status: {value!r}", body=body)


def result_from_response(data: Dict[str, Any]) -> Optional[AnalysisResult]:
    payload = data.get("result_json")
    if payload is None:
        payload = data.get("result")
    if not isinstance(payload, dict):
        return None
    # Payload keys first, then the response's own bs_score.
    score = reconcile_score(payload, data)
    try:
        result = AnalysisResult.from_payload(payload, score)
    except ValidationError as e:
        raise MalformedResponse(
            f"Result payload does not match the expected shape ({e.error_count()} errors)", body=data
        ) from e
    if result.score is not None and not result.score_in_range:
        logger.warning(f"Score {result.score} is outside 0-10; passing it through unchanged")
    return result


class JobSubmitter:
    def __init__(self, edge_client: EdgeFunctionClient):
        self.edge_client = edge_client

    async def submit(self, request: Union[AnalyzeRequest, Dict[str, Any]]) -> SubmitResponse:
        """
        Send one analysis request. Exactly one HTTP submission per call; never retried here.

        Raises InvalidAnalyzeRequest before any network traffic if the input is
        blank or ambiguous.
        """
        request = coerce_request(request)
        logger.info(f"Submitting {request.input_type} analysis{' (force refresh)' if request.force_refresh else ''}")

        data = await self.edge_client.invoke(ANALYZE_FUNCTION, "POST", body=request.to_payload())
        if not isinstance(data, dict):
            raise MalformedResponse("analyze_product returned a non-object body", body=data)

        status = parse_status(data.get("status"), data)
        result = result_from_response(data)

        if status in (JobStatus.CACHED, JobStatus.COMPLETED):
            if result is None:
                raise MalformedResponse(f"{status.value} response without a result", body=data)
            logger.info(f"Cache hit - job {data.get('job_id')}")
            return SubmitResponse(status=status, cached=True, job_id=data.get("job_id"), result=result)

        if status is JobStatus.DONE and result is not None:
            return SubmitResponse(status=status, cached=True, job_id=data.get("job_id"), result=result)

        job_id = data.get("job_id")
        if not job_id:
            raise MalformedResponse("analyze_product response has no job_id", body=data)
        logger.info(f"Job {job_id} accepted (status: {status.value})")
        return SubmitResponse(status=status, job_id=str(job_id), job_token=data.get("job_token"))


class JobPoller:
    def __init__(self, edge_client: EdgeFunctionClient, settings: Optional[Settings] = None):
        self.edge_client = edge_client
        self.settings = settings or default_settings
        self._active: Set[str] = set()

    async def fetch_status(self, handle: JobHandle, attempt: int = 1) -> JobStatusSnapshot:
        query = {"job_id": handle.job_id}
        if handle.job_token:
            query["job_token"] = handle.job_token
        data = await self.edge_client.invoke(JOB_STATUS_FUNCTION, "GET", query=query)
        if not isinstance(data, dict):
            raise MalformedResponse("job_status returned a non-object body", body=data)

        status = parse_status(data.get("status"), data)
        snapshot = JobStatusSnapshot(job_id=str(data.get("job_id") or handle.job_id), status=status, attempt=attempt)
        if status.is_success:
            snapshot.result = result_from_response(data)
        elif status is JobStatus.FAILED:
            snapshot.error_message = (
                data.get("error_message") or data.get("last_error_message") or data.get("error")
            )
            code = data.get("last_error_code")
            snapshot.error_code = str(code) if code is not None else None
        return snapshot

    async def poll(
        self,
        handle: JobHandle,
        on_update: Optional[UpdateCallback] = None,
        cancel_token: Optional[CancelToken] = None,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> AnalysisResult:
        """
        Poll job_status until the job is done or failed.

        `on_update` fires on every tick, repeated queued/processing included.
        Ticks are sequential: the next request starts only after the previous
        one returned and `interval` seconds passed.

        Raises JobFailed, PollingTimeout, or OperationCancelled.
        """
        max_attempts = self.settings.POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts
        interval = self.settings.POLL_INTERVAL_SECONDS if interval is None else interval
        token = cancel_token or CancelToken()

        if handle.job_id in self._active:
            raise RuntimeError(f"Job {handle.job_id} is already being polled")
        self._active.add(handle.job_id)
        try:
            for attempt in range(1, max_attempts + 1):
                token.raise_if_cancelled()
                snapshot = await self.fetch_status(handle, attempt)
                # The owner may have gone away while the request was in flight.
                token.raise_if_cancelled()

                if on_update is not None:
                    outcome = on_update(snapshot)
                    if inspect.isawaitable(outcome):
                        await outcome

                if snapshot.status.is_success:
                    if snapshot.result is None:
                        raise MalformedResponse(f"Job {handle.job_id} is done but carries no result")
                    logger.info(f"Job {handle.job_id} done after {attempt} polls")
                    return snapshot.result

                if snapshot.status is JobStatus.FAILED:
                    message = snapshot.error_message or DEFAULT_FAILURE_MESSAGE
                    logger.error(f"Job {handle.job_id} failed: {message}")
                    raise JobFailed(handle.job_id, message, error_code=snapshot.error_code)

                logger.debug(f"Job {handle.job_id} still {snapshot.status.value} (attempt {attempt}/{max_attempts})")
                if attempt < max_attempts:
                    await token.sleep(interval)

            logger.error(f"Job {handle.job_id} did not complete after {max_attempts} polls")
            raise PollingTimeout(handle.job_id, max_attempts)
        finally:
            self._active.discard(handle.job_id)
