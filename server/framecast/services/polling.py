from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Mapping, Optional, TypeVar

import httpx

from framecast.logging import get_logger
from framecast.services.auth import AuthMethod
from framecast.services.errors import GenerationFailed, PollCancelled, PollTimeout, ProviderRequestFailed
from framecast.services.jobs import GenerationJob, GenerationResult, JobKind, JobProvider, JobStatus, StatusSnapshot
from framecast.services.submission import resolve_provider

logger = get_logger(__name__)

T = TypeVar("T")

# Called after every status query with (attempt, max_attempts, snapshot);
# snapshot is None when the query itself failed.
AttemptCallback = Callable[[int, int, Optional[StatusSnapshot]], None]


async def _wait_or_cancelled(cancel_event: asyncio.Event, timeout_seconds: float) -> bool:
    """Sleep for ``timeout_seconds`` unless cancelled first; True means cancelled."""
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def race_cancellation(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event,
    *,
    description: str,
) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first.

    An in-flight request is cancelled as soon as the event is set and
    ``PollCancelled`` is raised. Cancellation wins when both finish together.
    """
    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not work.done():
            work.cancel()
        await asyncio.gather(work, stop, return_exceptions=True)
    if cancel_event.is_set():
        raise PollCancelled(f"{description} was cancelled")
    return work.result()


class PollLoopController:
    """Drives a submitted job to a terminal state by repeated status queries."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        providers: Mapping[JobKind, JobProvider],
    ) -> None:
        self._http = http_client
        self._providers = dict(providers)

    def job_handle(self, kind: JobKind, job_id: str) -> GenerationJob:
        """Rebuild a pollable handle for a job submitted earlier."""
        provider = resolve_provider(self._providers, kind)
        return GenerationJob(id=job_id, kind=kind, poll_endpoint=provider.poll_endpoint_for(job_id))

    async def check_status(self, job: GenerationJob, auth: AuthMethod) -> StatusSnapshot:
        """Run exactly one status query for ``job``."""
        provider = resolve_provider(self._providers, job.kind)
        headers = auth.headers()
        try:
            response = await self._http.get(job.poll_endpoint, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderRequestFailed(f"Status query failed: {exc}") from exc
        if not response.is_success:
            raise ProviderRequestFailed(
                f"Status query failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderRequestFailed(
                f"Status query returned invalid JSON: {response.text[:200]}",
                status_code=response.status_code,
            ) from exc
        return provider.parse_status(data)

    async def poll_until_done(
        self,
        job: GenerationJob,
        auth: AuthMethod,
        *,
        poll_interval_seconds: float = 0.5,
        max_attempts: int = 120,
        cancel_event: Optional[asyncio.Event] = None,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> GenerationResult:
        """Poll until Ready, a terminal failure, cancellation or budget exhaustion.

        Each attempt waits ``poll_interval_seconds`` first; setting
        ``cancel_event`` releases that wait or aborts the in-flight query
        immediately, and no further query is issued. Failed status queries
        are logged and consume an attempt.
        """
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        cancel_event = cancel_event or asyncio.Event()
        log = logger.bind(job_id=job.id, kind=job.kind.value)

        for attempt in range(1, max_attempts + 1):
            if await _wait_or_cancelled(cancel_event, poll_interval_seconds):
                log.info("poll-cancelled", attempt=attempt)
                raise PollCancelled(f"Polling for job {job.id} was cancelled")

            try:
                snapshot = await race_cancellation(
                    self.check_status(job, auth),
                    cancel_event,
                    description=f"Polling for job {job.id}",
                )
            except PollCancelled:
                log.info("poll-cancelled", attempt=attempt, in_flight=True)
                raise
            except ProviderRequestFailed as exc:
                log.warning("poll-query-failed", attempt=attempt, error=str(exc))
                if on_attempt is not None:
                    on_attempt(attempt, max_attempts, None)
                continue

            job.status = snapshot.status
            if on_attempt is not None:
                on_attempt(attempt, max_attempts, snapshot)

            if snapshot.status is JobStatus.READY:
                if not snapshot.result_url:
                    job.status = JobStatus.FAILED
                    job.error_detail = "Provider reported Ready without a result URL"
                    raise GenerationFailed(provider_status=JobStatus.READY.value, detail=job.error_detail)
                job.result_url = snapshot.result_url
                log.info("poll-ready", attempt=attempt)
                return GenerationResult(
                    job_id=job.id,
                    result_url=snapshot.result_url,
                    attempts=attempt,
                    raw=snapshot.raw,
                )

            if snapshot.status.is_failure:
                job.error_detail = snapshot.detail
                log.info("poll-failed", attempt=attempt, status=snapshot.status.value)
                raise GenerationFailed(provider_status=snapshot.status.value, detail=snapshot.detail)

            log.debug("poll-pending", attempt=attempt, detail=snapshot.detail)

        log.info("poll-budget-exhausted", attempts=max_attempts)
        raise PollTimeout(attempts=max_attempts)
