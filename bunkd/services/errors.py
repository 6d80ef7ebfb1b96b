# services/errors.py
"""
Errors surfaced by the bunkd client.

Every failure reaches the caller as one of these, so the host application can
tell a configuration problem (banner) from a failed analysis (alert).
"""
from typing import Any, Optional


class BunkdError(Exception):
    """Base exception for client errors."""
    pass


class AuthError(BunkdError):
    """No usable session could be obtained."""
    pass


class AnonymousSignInDisabled(AuthError):
    """The backend has anonymous sign-ins turned off (project configuration issue)."""
    pass


class SessionUnavailable(AuthError):
    """Anonymous sign-in failed for any other reason."""
    pass


class NetworkError(BunkdError):
    """No response was obtained (DNS, connect, timeout...)."""
    pass


class HttpError(BunkdError):
    """The backend answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        details: Optional[str] = None,
        hint: Optional[str] = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.message = message
        self.details = details
        self.hint = hint
        self.body = body

        text = f"API Error ({status_code}): {message}"
        if details:
            text += f"\n{details}"
        if hint:
            text += f"\nHint: {hint}"
        super().__init__(text)


class MalformedResponse(BunkdError):
    """The response body did not have the expected JSON shape."""

    def __init__(self, message: str, body: Any = None):
        super().__init__(message)
        self.body = body


class PollingTimeout(BunkdError):
    """The job did not reach a terminal state within the attempt budget."""

    def __init__(self, job_id: str, attempts: int):
        super().__init__(f"Polling timeout: job {job_id} did not complete after {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts


class JobFailed(BunkdError):
    """The backend reported the job as failed."""

    def __init__(self, job_id: str, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.message = message
        self.error_code = error_code


class InvalidAnalyzeRequest(BunkdError, ValueError):
    """The request does not carry exactly one non-blank input."""
    pass


class OperationCancelled(BunkdError):
    """The owning context cancelled the operation."""
    pass
