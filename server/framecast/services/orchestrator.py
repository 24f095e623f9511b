from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import httpx

from framecast.config import Settings, get_settings
from framecast.logging import get_logger
from framecast.services.auth import ApiKeyAuth, AuthMethod, BearerTokenAuth
from framecast.services.errors import (
    GenerationError,
    GenerationInProgress,
    GenerationTimedOut,
    NoPromptProvided,
    PollCancelled,
)
from framecast.services.flux import FluxKontextProvider
from framecast.services.jobs import (
    GenerationJob,
    GenerationPayload,
    ImageEditPayload,
    JobKind,
    JobProvider,
    StatusSnapshot,
    VideoCompilePayload,
)
from framecast.services.kling import KlingVideoProvider
from framecast.services.merging import PassThroughMerger, ResultMerger
from framecast.services.polling import PollLoopController, race_cancellation
from framecast.services.signing import Credentials
from framecast.services.submission import JobSubmissionClient
from framecast.services.tasks import TaskRecord, TaskStatus, TaskStore

logger = get_logger(__name__)

_MERGING_PERCENT = 85.0


class OrchestratorState(str, Enum):
    IDLE = "Idle"
    SUBMITTING = "Submitting"
    POLLING = "Polling"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"
    CANCELLED = "Cancelled"

    @property
    def is_active(self) -> bool:
        return self in {OrchestratorState.SUBMITTING, OrchestratorState.POLLING}


class ProgressStage(str, Enum):
    SUBMITTING = "Submitting"
    POLLING = "Polling"
    MERGING = "Merging"
    DONE = "Done"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    stage: ProgressStage
    percent: Optional[float] = None
    message: Optional[str] = None


@dataclass(slots=True)
class CaptureInput:
    """What the capture front end hands over for one attempt."""

    frame_base64: str = ""
    transcript: str = ""
    video_bytes: bytes = b""


@dataclass(slots=True)
class GenerationOutcome:
    """Terminal result of one orchestrated attempt."""

    state: OrchestratorState
    prompt: str
    job_id: Optional[str] = None
    result_url: Optional[str] = None
    generated_url: Optional[str] = None
    failure: Optional[GenerationError] = None

    @property
    def error(self) -> Optional[str]:
        return str(self.failure) if self.failure is not None else None

    @property
    def status_code(self) -> Optional[int]:
        return getattr(self.failure, "status_code", None)


@dataclass(eq=False)
class _Attempt:
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: Optional[OrchestratorState] = None
    timer: Optional[asyncio.TimerHandle] = None


ProgressCallback = Callable[[ProgressEvent], None]


class GenerationOrchestrator:
    """Runs one capture -> submit -> poll -> result attempt at a time.

    State machine::

        Idle -> Submitting -> Polling -> Succeeded | Failed | TimedOut | Cancelled

    Every transition emits a ``ProgressEvent`` and appends a timestamped line to
    the diagnostic log. The wall-clock timeout is a loop timer armed when
    polling starts; its handle is cancelled on every terminal transition.
    Overlapping attempts are rejected with ``GenerationInProgress``.
    """

    def __init__(
        self,
        *,
        kind: JobKind,
        submitter: JobSubmissionClient,
        poller: PollLoopController,
        auth: AuthMethod,
        poll_interval_seconds: float = 0.5,
        max_attempts: int = 120,
        timeout_seconds: Optional[float] = None,
        task_store: Optional[TaskStore] = None,
        merger: Optional[ResultMerger] = None,
        on_progress: Optional[ProgressCallback] = None,
        max_log_lines: int = 500,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._kind = kind
        self._submitter = submitter
        self._poller = poller
        self._auth = auth
        self._poll_interval_seconds = poll_interval_seconds
        self._max_attempts = max_attempts
        self._timeout_seconds = timeout_seconds
        self._task_store = task_store
        self._merger = merger or PassThroughMerger()
        self._on_progress = on_progress
        # Closed by aclose(); only set when this instance created the client.
        self._http_client = http_client

        self._state = OrchestratorState.IDLE
        self._attempt: Optional[_Attempt] = None
        self._job: Optional[GenerationJob] = None
        self._progress: Optional[ProgressEvent] = None
        self._log: deque[str] = deque(maxlen=max_log_lines)

    @classmethod
    def from_settings(
        cls,
        kind: JobKind,
        *,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        task_store: Optional[TaskStore] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "GenerationOrchestrator":
        settings = settings or get_settings()
        owned_client = None
        if http_client is None:
            owned_client = http_client = httpx.AsyncClient(
                timeout=settings.provider_request_timeout_seconds,
                headers={"Accept": "application/json"},
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                http2=True,
            )

        provider: JobProvider
        auth: AuthMethod
        if kind is JobKind.IMAGE_EDIT:
            provider = FluxKontextProvider(
                api_base=settings.bfl_api_base,
                aspect_ratio=settings.flux_aspect_ratio,
                max_image_chars=settings.image_max_base64_chars,
            )
            auth = ApiKeyAuth(settings.bfl_api_key, header_name="X-Key")
            interval = settings.image_poll_interval_seconds
            attempts = settings.image_poll_max_attempts
            timeout = settings.image_timeout_seconds
        else:
            provider = KlingVideoProvider(
                api_base=settings.kling_api_base,
                model_name=settings.kling_model_name,
                mode=settings.kling_mode,
                duration=settings.kling_duration,
                max_video_bytes=settings.video_max_bytes,
            )
            auth = BearerTokenAuth(
                Credentials(
                    issuer_key=settings.kling_access_key or "",
                    signing_secret=settings.kling_secret_key or "",
                ),
                reuse_margin_seconds=settings.token_reuse_margin_seconds,
            )
            interval = settings.video_poll_interval_seconds
            attempts = settings.video_poll_max_attempts
            timeout = settings.video_timeout_seconds

        providers = {kind: provider}
        return cls(
            kind=kind,
            submitter=JobSubmissionClient(http_client=http_client, providers=providers),
            poller=PollLoopController(http_client=http_client, providers=providers),
            auth=auth,
            poll_interval_seconds=interval,
            max_attempts=attempts,
            timeout_seconds=timeout if timeout > 0 else None,
            task_store=task_store,
            on_progress=on_progress,
            http_client=owned_client,
        )

    @property
    def kind(self) -> JobKind:
        return self._kind

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def job(self) -> Optional[GenerationJob]:
        return self._job

    @property
    def progress(self) -> Optional[ProgressEvent]:
        return self._progress

    @property
    def log(self) -> list[str]:
        return list(self._log)

    async def generate(self, capture: CaptureInput, prompt: str = "") -> GenerationOutcome:
        """Run one attempt to a terminal state and return its outcome.

        The typed prompt wins over the transcript. With neither, raises
        ``NoPromptProvided`` and the orchestrator stays idle.
        """
        if self._state.is_active:
            raise GenerationInProgress("A generation is already in progress; cancel it first")

        resolved_prompt = (prompt or "").strip() or (capture.transcript or "").strip()
        if not resolved_prompt:
            self._log.clear()
            self._progress = None
            self._state = OrchestratorState.IDLE
            self._append_log("No prompt provided; nothing was submitted")
            raise NoPromptProvided()

        attempt = _Attempt()
        self._attempt = attempt
        self._job = None
        self._log.clear()
        self._progress = None
        payload = self._build_payload(capture, resolved_prompt)

        self._transition(
            OrchestratorState.SUBMITTING,
            ProgressEvent(ProgressStage.SUBMITTING, 10, f"Submitting {self._kind.value} job"),
        )
        try:
            return await self._run(attempt, payload, resolved_prompt)
        except asyncio.CancelledError:
            self._stop(attempt, OrchestratorState.CANCELLED, "Cancelled: task was cancelled")
            raise
        except Exception as exc:
            self._clear_timer(attempt)
            if self._attempt is attempt and self._state.is_active:
                self._state = OrchestratorState.FAILED
                self._job = None
                self._append_log(f"Failed: unexpected error: {exc!r}")
            logger.exception("generation-crashed", kind=self._kind.value)
            raise

    async def _run(self, attempt: _Attempt, payload: GenerationPayload, prompt: str) -> GenerationOutcome:
        try:
            job = await race_cancellation(
                self._submitter.submit(self._kind, payload, self._auth),
                attempt.cancel_event,
                description=f"Submitting {self._kind.value} job",
            )
        except PollCancelled:
            return await self._stopped_outcome(attempt, prompt, None)
        except GenerationError as exc:
            if attempt.stop_reason is not None:
                return await self._stopped_outcome(attempt, prompt, None)
            return await self._fail(attempt, exc, prompt, None)

        if attempt.stop_reason is not None:
            return await self._stopped_outcome(attempt, prompt, job)

        self._job = job
        await self._record(self._task_record(job, prompt, TaskStatus.PROCESSING))
        self._transition(
            OrchestratorState.POLLING,
            ProgressEvent(ProgressStage.POLLING, 20, f"Job {job.id} submitted; waiting for result"),
        )
        self._arm_timer(attempt)

        try:
            result = await self._poller.poll_until_done(
                job,
                self._auth,
                poll_interval_seconds=self._poll_interval_seconds,
                max_attempts=self._max_attempts,
                cancel_event=attempt.cancel_event,
                on_attempt=lambda n, total, snapshot: self._on_poll_attempt(attempt, n, total, snapshot),
            )
        except PollCancelled:
            return await self._stopped_outcome(attempt, prompt, job)
        except GenerationError as exc:
            return await self._fail(attempt, exc, prompt, job)
        finally:
            self._clear_timer(attempt)

        generated_url = result.result_url
        result_url = generated_url
        if isinstance(payload, VideoCompilePayload):
            self._emit(ProgressEvent(ProgressStage.MERGING, _MERGING_PERCENT, "Merging generated clip"))
            self._append_log("Merging generated clip with the original recording")
            result_url = await self._merger.merge(
                original_video=payload.video_bytes, generated_url=generated_url
            )
            if attempt.stop_reason is not None:
                return await self._stopped_outcome(attempt, prompt, job)

        self._state = OrchestratorState.SUCCEEDED
        self._job = None
        self._attempt = None
        self._emit(ProgressEvent(ProgressStage.DONE, 100, result_url))
        self._append_log(f"Done: {result_url}")
        logger.info("generation-succeeded", kind=self._kind.value, job_id=job.id, attempts=result.attempts)
        await self._record(
            self._task_record(job, prompt, TaskStatus.COMPLETED, result_url=result_url)
        )
        return GenerationOutcome(
            state=OrchestratorState.SUCCEEDED,
            prompt=prompt,
            job_id=job.id,
            result_url=result_url,
            generated_url=generated_url,
        )

    def cancel(self) -> None:
        """Stop the active attempt; with nothing running this is a reset."""
        attempt = self._attempt
        if attempt is not None and self._state.is_active:
            self._stop(attempt, OrchestratorState.CANCELLED, "Cancelled by caller")
            return
        self.reset()

    def reset(self) -> None:
        attempt = self._attempt
        if attempt is not None and self._state.is_active:
            self._stop(attempt, OrchestratorState.CANCELLED, "Cancelled by reset")
        self._attempt = None
        self._job = None
        self._progress = None
        self._log.clear()
        self._state = OrchestratorState.IDLE

    async def check_job(self, job_id: str) -> StatusSnapshot:
        """Query a previously submitted job once, outside any attempt."""
        job = self._poller.job_handle(self._kind, job_id)
        return await self._poller.check_status(job, self._auth)

    async def aclose(self) -> None:
        self.reset()
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _build_payload(self, capture: CaptureInput, prompt: str) -> GenerationPayload:
        if self._kind is JobKind.IMAGE_EDIT:
            return ImageEditPayload(prompt=prompt, image_base64=capture.frame_base64)
        return VideoCompilePayload(
            prompt=prompt,
            video_bytes=capture.video_bytes,
            frame_base64=capture.frame_base64 or None,
        )

    def _on_poll_attempt(
        self,
        attempt: _Attempt,
        number: int,
        total: int,
        snapshot: Optional[StatusSnapshot],
    ) -> None:
        if self._attempt is not attempt or attempt.stop_reason is not None:
            return
        status = snapshot.status.value if snapshot is not None else "query failed"
        # Video polling stays below the Merging stage that follows it.
        ceiling = _MERGING_PERCENT - 5 if self._kind is JobKind.VIDEO_COMPILE else 90.0
        percent = min(ceiling, 20 + (ceiling - 20) * number / total)
        message = f"Poll {number}/{total}: {status}"
        self._emit(ProgressEvent(ProgressStage.POLLING, round(percent, 1), message))
        self._append_log(message)

    def _arm_timer(self, attempt: _Attempt) -> None:
        if self._timeout_seconds is None:
            return
        loop = asyncio.get_running_loop()
        attempt.timer = loop.call_later(self._timeout_seconds, self._on_timeout, attempt)

    @staticmethod
    def _clear_timer(attempt: _Attempt) -> None:
        if attempt.timer is not None:
            attempt.timer.cancel()
            attempt.timer = None

    def _on_timeout(self, attempt: _Attempt) -> None:
        attempt.timer = None
        self._stop(
            attempt,
            OrchestratorState.TIMED_OUT,
            f"Timed out after {self._timeout_seconds:g}s waiting for the provider",
        )

    def _stop(self, attempt: _Attempt, reason: OrchestratorState, message: str) -> None:
        """Synchronously end ``attempt`` as Cancelled or TimedOut."""
        if self._attempt is not attempt or attempt.stop_reason is not None:
            return
        attempt.stop_reason = reason
        self._clear_timer(attempt)
        attempt.cancel_event.set()
        self._state = reason
        self._job = None
        self._append_log(message)
        logger.info("generation-stopped", kind=self._kind.value, reason=reason.value)
        if reason is OrchestratorState.CANCELLED:
            self._notify(ProgressEvent(ProgressStage.DONE, None, message))
            self._progress = None
        else:
            self._emit(ProgressEvent(ProgressStage.DONE, None, message))

    async def _stopped_outcome(
        self, attempt: _Attempt, prompt: str, job: Optional[GenerationJob]
    ) -> GenerationOutcome:
        reason = attempt.stop_reason or OrchestratorState.CANCELLED
        failure: GenerationError
        if reason is OrchestratorState.TIMED_OUT:
            failure = GenerationTimedOut(timeout_seconds=self._timeout_seconds or 0)
        else:
            failure = PollCancelled("Generation was cancelled")
        if job is not None:
            await self._record(
                self._task_record(job, prompt, TaskStatus.FAILED, error_message=str(failure))
            )
        return GenerationOutcome(
            state=reason,
            prompt=prompt,
            job_id=job.id if job is not None else None,
            failure=failure,
        )

    async def _fail(
        self,
        attempt: _Attempt,
        exc: GenerationError,
        prompt: str,
        job: Optional[GenerationJob],
    ) -> GenerationOutcome:
        self._clear_timer(attempt)
        if self._attempt is attempt:
            self._state = OrchestratorState.FAILED
            self._job = None
            self._attempt = None
            self._emit(ProgressEvent(ProgressStage.DONE, None, str(exc)))
            self._append_log(f"Failed: {exc}")
        logger.warning(
            "generation-failed",
            kind=self._kind.value,
            job_id=job.id if job is not None else None,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if job is not None:
            await self._record(
                self._task_record(job, prompt, TaskStatus.FAILED, error_message=str(exc))
            )
        return GenerationOutcome(
            state=OrchestratorState.FAILED,
            prompt=prompt,
            job_id=job.id if job is not None else None,
            failure=exc,
        )

    def _task_record(
        self,
        job: GenerationJob,
        prompt: str,
        status: TaskStatus,
        *,
        result_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> TaskRecord:
        return TaskRecord(
            task_id=job.id,
            prompt=prompt,
            status=status,
            result_url=result_url,
            error_message=error_message,
            kind=self._kind,
        )

    async def _record(self, record: TaskRecord) -> None:
        if self._task_store is None:
            return
        try:
            await self._task_store.record(record)
        except Exception as exc:
            # Task history is best-effort; the attempt result stands on its own.
            logger.warning("task-record-failed", task_id=record.task_id, error=str(exc))
            self._append_log(f"Task history update failed for {record.task_id}: {exc}")

    def _transition(self, state: OrchestratorState, event: ProgressEvent) -> None:
        self._state = state
        self._emit(event)
        self._append_log(event.message or state.value)

    def _emit(self, event: ProgressEvent) -> None:
        self._progress = event
        self._notify(event)

    def _notify(self, event: ProgressEvent) -> None:
        if self._on_progress is not None:
            self._on_progress(event)

    def _append_log(self, message: str) -> None:
        timestamp = datetime.now().strftime("%H:%M:%S")
        self._log.append(f"[{timestamp}] {message}")
