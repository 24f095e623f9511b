"""FLUX Kontext image-edit provider wire format.

Submission: ``POST {base}/flux-kontext-pro`` with an ``X-Key`` header and
``{prompt, input_image, aspect_ratio, output_format, safety_tolerance}``.
The response carries ``{id, polling_url}``; polling returns
``{status, result: {sample}}`` where ``sample`` is the edited image URL.
"""
from __future__ import annotations

from typing import Any, Optional

from framecast.services.errors import InvalidPayload, NoPromptProvided, PayloadTooLarge, SubmissionRejected
from framecast.services.jobs import ImageEditPayload, JobKind, JobStatus, StatusSnapshot, as_dict, strip_data_url

DEFAULT_API_BASE = "https://api.bfl.ai/v1"
DEFAULT_MAX_IMAGE_CHARS = 4 * 1024 * 1024

_STATUS_MAP = {
    "ready": JobStatus.READY,
    "error": JobStatus.ERROR,
    "failed": JobStatus.FAILED,
}


class FluxKontextProvider:
    kind = JobKind.IMAGE_EDIT

    def __init__(
        self,
        *,
        api_base: str = DEFAULT_API_BASE,
        aspect_ratio: str = "1:1",
        max_image_chars: int = DEFAULT_MAX_IMAGE_CHARS,
        output_format: str = "jpeg",
        safety_tolerance: int = 2,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._aspect_ratio = aspect_ratio
        self._max_image_chars = max_image_chars
        self._output_format = output_format
        self._safety_tolerance = safety_tolerance

    @property
    def submit_url(self) -> str:
        return f"{self._api_base}/flux-kontext-pro"

    def poll_endpoint_for(self, job_id: str) -> str:
        return f"{self._api_base}/get_result?id={job_id}"

    def build_submission(self, payload: ImageEditPayload) -> tuple[str, dict[str, Any]]:
        if not isinstance(payload, ImageEditPayload):
            raise TypeError(f"Image edits need an ImageEditPayload, got {type(payload)!r}")
        prompt = (payload.prompt or "").strip()
        if not prompt:
            raise NoPromptProvided()
        image = strip_data_url(payload.image_base64)
        if not image:
            raise InvalidPayload("An input image is required for image edits")
        if len(image) > self._max_image_chars:
            raise PayloadTooLarge(size=len(image), limit=self._max_image_chars, unit="base64 chars")
        body = {
            "prompt": prompt,
            "input_image": image,
            "aspect_ratio": payload.aspect_ratio or self._aspect_ratio,
            "output_format": self._output_format,
            "safety_tolerance": self._safety_tolerance,
        }
        return self.submit_url, body

    def parse_submission(self, data: Any, *, status_code: int) -> tuple[str, str]:
        body = as_dict(data)
        job_id = body.get("id")
        if not isinstance(job_id, str) or not job_id.strip():
            raise SubmissionRejected(
                status_code=status_code,
                provider_message=f"Submission response missing job id: {data}",
            )
        polling_url = body.get("polling_url")
        if not isinstance(polling_url, str) or not polling_url.strip():
            # Older API revisions only expose the shared get_result endpoint.
            polling_url = self.poll_endpoint_for(job_id)
        return job_id, polling_url

    def parse_status(self, data: Any) -> StatusSnapshot:
        body = as_dict(data)
        raw_status = str(body.get("status") or "Pending")
        # Moderation and queue states are not final for this API; keep polling.
        status = _STATUS_MAP.get(raw_status.strip().lower(), JobStatus.PENDING)
        result = as_dict(body.get("result"))
        sample = result.get("sample")
        return StatusSnapshot(
            status=status,
            result_url=sample if isinstance(sample, str) and sample.strip() else None,
            detail=_failure_detail(body) if status.is_failure else raw_status,
            raw=body,
        )


def _failure_detail(body: dict[str, Any]) -> Optional[str]:
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    elif isinstance(error, str) and error.strip():
        return error.strip()
    reason = body.get("failure_reason")
    if isinstance(reason, str) and reason.strip():
        return reason.strip()
    return None
