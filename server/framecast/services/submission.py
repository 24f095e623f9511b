from __future__ import annotations

from typing import Any, Mapping

import httpx

from framecast.logging import get_logger
from framecast.services.auth import AuthMethod
from framecast.services.errors import ProviderRequestFailed, SubmissionRejected
from framecast.services.jobs import GenerationJob, JobKind, JobProvider

logger = get_logger(__name__)


def resolve_provider(providers: Mapping[JobKind, JobProvider], kind: JobKind) -> JobProvider:
    try:
        return providers[kind]
    except KeyError:
        raise ValueError(f"No provider registered for job kind {kind.value!r}") from None


class JobSubmissionClient:
    """Submits one generation request and returns a pollable job handle.

    Payload validation and credential resolution both happen before the
    request is built, so size or configuration problems never reach the
    network. Exactly one request is sent per call and nothing is retried here.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        providers: Mapping[JobKind, JobProvider],
    ) -> None:
        self._http = http_client
        self._providers = dict(providers)

    async def submit(self, kind: JobKind, payload: Any, auth: AuthMethod) -> GenerationJob:
        provider = resolve_provider(self._providers, kind)
        url, body = provider.build_submission(payload)
        headers = auth.headers()

        try:
            response = await self._http.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("job-submit-transport-error", kind=kind.value, error=str(exc))
            raise ProviderRequestFailed(f"Submission request failed: {exc}") from exc

        if not response.is_success:
            logger.warning(
                "job-submit-rejected",
                kind=kind.value,
                status_code=response.status_code,
            )
            raise SubmissionRejected(status_code=response.status_code, provider_message=response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise SubmissionRejected(
                status_code=response.status_code, provider_message=response.text
            ) from exc

        job_id, poll_endpoint = provider.parse_submission(data, status_code=response.status_code)
        logger.info("job-submitted", kind=kind.value, job_id=job_id)
        return GenerationJob(id=job_id, kind=kind, poll_endpoint=poll_endpoint)
