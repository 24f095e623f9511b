from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Union

import httpx
import pytest

from framecast.services.auth import ApiKeyAuth, BearerTokenAuth
from framecast.services.flux import FluxKontextProvider
from framecast.services.jobs import JobKind
from framecast.services.kling import KlingVideoProvider
from framecast.services.orchestrator import GenerationOrchestrator
from framecast.services.polling import PollLoopController
from framecast.services.signing import Credentials
from framecast.services.submission import JobSubmissionClient

BFL_BASE = "https://bfl.test/v1"
KLING_BASE = "https://kling.test"
TEST_CREDENTIALS = Credentials(
    issuer_key="ak-test-issuer-0001",
    signing_secret="sk-test-signing-secret-with-enough-bytes",
)

Scripted = Union[dict, httpx.Response]


class FakeProvider:
    """Scripted provider answering submissions and status queries in order.

    Once the status script runs out, the last entry is repeated. The delays
    hold each response back to simulate a slow provider.
    """

    def __init__(
        self,
        *,
        submit: Scripted,
        statuses: Optional[list[Scripted]] = None,
        submit_delay: float = 0.0,
        status_delay: float = 0.0,
    ) -> None:
        self._submit = submit
        self._statuses = list(statuses or [])
        self._submit_delay = submit_delay
        self._status_delay = status_delay
        self.requests: list[httpx.Request] = []
        self.on_status_query: Optional[Callable[[int], None]] = None

    @property
    def submissions(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    @property
    def status_queries(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "GET"]

    @staticmethod
    def _respond(entry: Scripted) -> httpx.Response:
        if isinstance(entry, httpx.Response):
            return entry
        return httpx.Response(200, json=entry)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            if self._submit_delay:
                await asyncio.sleep(self._submit_delay)
            return self._respond(self._submit)
        count = len(self.status_queries)
        if self.on_status_query is not None:
            self.on_status_query(count)
        if self._status_delay:
            await asyncio.sleep(self._status_delay)
        if not self._statuses:
            return httpx.Response(404, text="no status scripted")
        entry = self._statuses[min(count, len(self._statuses)) - 1]
        return self._respond(entry)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def flux_provider() -> FluxKontextProvider:
    return FluxKontextProvider(api_base=BFL_BASE, max_image_chars=64 * 1024)


def kling_provider() -> KlingVideoProvider:
    return KlingVideoProvider(api_base=KLING_BASE, max_video_bytes=256 * 1024)


@pytest.fixture
def make_orchestrator() -> Callable[..., GenerationOrchestrator]:
    def _build(kind: JobKind, fake: FakeProvider, **kwargs: Any) -> GenerationOrchestrator:
        client = fake.client()
        if kind is JobKind.IMAGE_EDIT:
            providers = {kind: flux_provider()}
            auth = kwargs.pop("auth", ApiKeyAuth("bfl-test-key"))
        else:
            providers = {kind: kling_provider()}
            auth = kwargs.pop("auth", BearerTokenAuth(TEST_CREDENTIALS))
        kwargs.setdefault("poll_interval_seconds", 0.001)
        kwargs.setdefault("max_attempts", 5)
        return GenerationOrchestrator(
            kind=kind,
            submitter=JobSubmissionClient(http_client=client, providers=providers),
            poller=PollLoopController(http_client=client, providers=providers),
            auth=auth,
            **kwargs,
        )

    return _build
