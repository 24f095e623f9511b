"""Kling image-to-video provider wire format.

Every request carries a freshly signed HS256 bearer token. Submission posts
``{model_name, mode, duration, image, prompt, cfg_scale}`` to
``/v1/videos/image2video`` and gets ``{code, data: {task_id}}`` back; the task
is then read from ``/v1/videos/image2video/{task_id}``.
"""
from __future__ import annotations

import base64
from typing import Any

from framecast.services.errors import InvalidPayload, NoPromptProvided, PayloadTooLarge, SubmissionRejected
from framecast.services.jobs import JobKind, JobStatus, StatusSnapshot, VideoCompilePayload, as_dict, strip_data_url

DEFAULT_API_BASE = "https://api.klingai.com"
DEFAULT_MAX_VIDEO_BYTES = 50 * 1024 * 1024

_STATUS_MAP = {
    "submitted": JobStatus.PENDING,
    "processing": JobStatus.PENDING,
    "succeed": JobStatus.READY,
    "failed": JobStatus.FAILED,
}


class KlingVideoProvider:
    kind = JobKind.VIDEO_COMPILE

    def __init__(
        self,
        *,
        api_base: str = DEFAULT_API_BASE,
        model_name: str = "kling-v1",
        mode: str = "std",
        duration: str = "5",
        cfg_scale: float = 0.5,
        max_video_bytes: int = DEFAULT_MAX_VIDEO_BYTES,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._model_name = model_name
        self._mode = mode
        self._duration = str(duration)
        self._cfg_scale = cfg_scale
        self._max_video_bytes = max_video_bytes

    @property
    def submit_url(self) -> str:
        return f"{self._api_base}/v1/videos/image2video"

    def poll_endpoint_for(self, task_id: str) -> str:
        return f"{self.submit_url}/{task_id}"

    def build_submission(self, payload: VideoCompilePayload) -> tuple[str, dict[str, Any]]:
        if not isinstance(payload, VideoCompilePayload):
            raise TypeError(f"Video compiles need a VideoCompilePayload, got {type(payload)!r}")
        prompt = (payload.prompt or "").strip()
        if not prompt:
            raise NoPromptProvided()
        if not payload.video_bytes:
            raise InvalidPayload("A recorded clip is required for video compiles")
        if len(payload.video_bytes) > self._max_video_bytes:
            raise PayloadTooLarge(size=len(payload.video_bytes), limit=self._max_video_bytes)

        frame = strip_data_url(payload.frame_base64 or "")
        # Without an extracted frame the clip itself is forwarded and the
        # provider picks the frame.
        image = frame or base64.b64encode(payload.video_bytes).decode("ascii")
        body = {
            "model_name": self._model_name,
            "mode": self._mode,
            "duration": self._duration,
            "image": image,
            "prompt": prompt,
            "cfg_scale": self._cfg_scale,
        }
        return self.submit_url, body

    def parse_submission(self, data: Any, *, status_code: int) -> tuple[str, str]:
        body = as_dict(data)
        if body.get("code") != 0:
            message = body.get("message") or f"unexpected response: {data}"
            raise SubmissionRejected(status_code=status_code, provider_message=str(message))
        task_id = as_dict(body.get("data")).get("task_id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise SubmissionRejected(
                status_code=status_code,
                provider_message=f"Submission response missing task_id: {data}",
            )
        return task_id, self.poll_endpoint_for(task_id)

    def parse_status(self, data: Any) -> StatusSnapshot:
        body = as_dict(data)
        if body.get("code") != 0:
            return StatusSnapshot(
                status=JobStatus.ERROR,
                detail=str(body.get("message") or f"Unexpected response format: code={body.get('code')}"),
                raw=body,
            )
        task = as_dict(body.get("data"))
        raw_status = str(task.get("task_status") or "").strip().lower()
        status = _STATUS_MAP.get(raw_status, JobStatus.PENDING)
        videos = as_dict(task.get("task_result")).get("videos") or []
        url = None
        if isinstance(videos, list) and videos:
            candidate = as_dict(videos[0]).get("url")
            if isinstance(candidate, str) and candidate.strip():
                url = candidate.strip()
        message = task.get("task_status_msg")
        return StatusSnapshot(
            status=status,
            result_url=url,
            detail=str(message) if message else raw_status or None,
            raw=body,
        )
