from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Union

_DATA_URL_PREFIX_RE = re.compile(r"^data:[^;,]+;base64,", re.IGNORECASE)


class JobKind(str, Enum):
    """Kinds of provider-side generation jobs."""

    IMAGE_EDIT = "image_edit"
    VIDEO_COMPILE = "video_compile"


class JobStatus(str, Enum):
    """Normalized provider job states."""

    PENDING = "Pending"
    READY = "Ready"
    ERROR = "Error"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING

    @property
    def is_failure(self) -> bool:
        return self in {JobStatus.ERROR, JobStatus.FAILED}


@dataclass(slots=True)
class ImageEditPayload:
    prompt: str
    image_base64: str
    aspect_ratio: Optional[str] = None


@dataclass(slots=True)
class VideoCompilePayload:
    prompt: str
    video_bytes: bytes
    # Last frame of the clip when the capture side could extract one.
    frame_base64: Optional[str] = None


GenerationPayload = Union[ImageEditPayload, VideoCompilePayload]


@dataclass(slots=True)
class GenerationJob:
    """Handle for one provider job; status is only updated by the poll loop."""

    id: str
    kind: JobKind
    poll_endpoint: str
    status: JobStatus = JobStatus.PENDING
    result_url: Optional[str] = None
    error_detail: Optional[str] = None


@dataclass(slots=True)
class StatusSnapshot:
    """One normalized status query response."""

    status: JobStatus
    result_url: Optional[str] = None
    detail: Optional[str] = None
    raw: Optional[dict[str, Any]] = None


@dataclass(slots=True)
class GenerationResult:
    job_id: str
    result_url: str
    attempts: int
    raw: Optional[dict[str, Any]] = None


class JobProvider(Protocol):
    """Wire format of one upstream provider.

    Providers never perform I/O; the submission client and poll loop own the
    HTTP calls and delegate request building and response parsing here.
    """

    kind: JobKind

    def build_submission(self, payload: Any) -> tuple[str, dict[str, Any]]:
        ...

    def parse_submission(self, data: Any, *, status_code: int) -> tuple[str, str]:
        ...

    def parse_status(self, data: Any) -> StatusSnapshot:
        ...

    def poll_endpoint_for(self, job_id: str) -> str:
        ...


def strip_data_url(value: str) -> str:
    """Drop a ``data:<mime>;base64,`` prefix; providers expect raw base64."""
    return _DATA_URL_PREFIX_RE.sub("", (value or "").strip())


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}
