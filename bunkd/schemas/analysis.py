from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator, model_validator


INPUT_FIELDS = ("url", "text", "image_url")

SUPPORT_LEVEL_VERIFIED = {
    "supported": True,
    "unsupported": False,
}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    RUNNING = "running"
    DONE = "done"
    COMPLETED = "completed"
    FAILED = "failed"
    CACHED = "cached"

    @property
    def is_success(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.COMPLETED)

    @property
    def is_terminal(self) -> bool:
        return self.is_success or self is JobStatus.FAILED


class AnalyzeRequest(BaseModel):
    """
    Input for one analysis. Exactly one of url / text / image_url must be set;
    blank or whitespace-only values count as absent.

    `force_refresh` asks the backend to skip its result cache and run a new job.
    """
    url: Optional[str] = None
    text: Optional[str] = None
    image_url: Optional[str] = None
    force_refresh: bool = False

    @field_validator("url", "text", "image_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @model_validator(mode="after")
    def _exactly_one_input(self) -> "AnalyzeRequest":
        provided = [name for name in INPUT_FIELDS if getattr(self, name)]
        if not provided:
            raise ValueError("Please enter some content to analyze")
        if len(provided) > 1:
            raise ValueError(f"Only one input may be analyzed at a time, got: {', '.join(provided)}")
        return self

    @property
    def input_type(self) -> str:
        if self.url:
            return "url"
        if self.text:
            return "text"
        return "image"

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = self.model_dump(include=set(INPUT_FIELDS), exclude_none=True)
        if self.force_refresh:
            payload["force_refresh"] = True
        return payload


class FactualClaim(BaseModel):
    claim: str
    verified: Optional[bool] = None
    confidence: Optional[float] = None


class Source(BaseModel):
    url: Optional[str] = None
    title: Optional[str] = None
    snippet: Optional[str] = None


class AnalysisResult(BaseModel):
    # 0-10, higher = weaker evidence / more exaggerated claims
    score: Optional[float] = None
    bias_indicators: List[str] = []
    factual_claims: List[FactualClaim] = []
    summary: str = ""
    sources: Optional[List[Source]] = None
    reasoning: Optional[str] = None
    raw: Dict[str, Any] = {}

    @property
    def score_in_range(self) -> bool:
        return self.score is not None and 0.0 <= self.score <= 10.0

    @property
    def needs_disambiguation(self) -> bool:
        return bool(self.raw.get("needs_disambiguation"))

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], score: Optional[float]) -> "AnalysisResult":
        """
        Build a result from a backend result payload.

        Canonical keys win; the worker's own names (red_flags, key_claims,
        citations, verdict_text) fill in when the canonical ones are missing.
        """
        bias = payload.get("bias_indicators")
        if bias is None:
            bias = payload.get("red_flags") or []

        claims = payload.get("factual_claims")
        if claims is None:
            claims = [
                {
                    "claim": item.get("claim", ""),
                    "verified": SUPPORT_LEVEL_VERIFIED.get(item.get("support_level")),
                }
                for item in _as_list(payload.get("key_claims"))
                if isinstance(item, dict)
            ]

        sources = payload.get("sources")
        if sources is None:
            sources = payload.get("citations")
        if isinstance(sources, list):
            sources = [s if isinstance(s, dict) else {"url": str(s)} for s in sources]

        reasoning = payload.get("reasoning")
        if reasoning is None:
            reasoning = payload.get("verdict_text")

        return cls(
            score=score,
            bias_indicators=bias,
            factual_claims=claims,
            summary=payload.get("summary") or "",
            sources=sources,
            reasoning=reasoning,
            raw=payload,
        )


class JobHandle(BaseModel):
    job_id: str
    job_token: Optional[str] = None

    model_config = {"frozen": True}


class SubmitResponse(BaseModel):
    status: JobStatus
    cached: bool = False
    job_id: Optional[str] = None
    job_token: Optional[str] = None
    result: Optional[AnalysisResult] = None

    @property
    def handle(self) -> Optional[JobHandle]:
        # A cached response never yields a handle: there is nothing to poll.
        if self.cached or not self.job_id:
            return None
        return JobHandle(job_id=self.job_id, job_token=self.job_token)


class JobStatusSnapshot(BaseModel):
    job_id: str
    status: JobStatus
    attempt: int
    result: Optional[AnalysisResult] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None


class AnalysisOutcome(BaseModel):
    result: AnalysisResult
    job_id: Optional[str] = None
    cached: bool = False
