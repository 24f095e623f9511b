from __future__ import annotations

import base64
import binascii
from typing import Any, Optional

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from framecast.api.models import (
  CredentialReport,
  GenerationResponse,
  ImageEditRequest,
  JobStatusResponse,
  TaskRecordModel,
  VideoCompileRequest,
)
from framecast.config import Settings, get_settings
from framecast.logging import configure_logging, get_logger
from framecast.services.errors import (
  ConfigurationError,
  GenerationError,
  GenerationFailed,
  GenerationTimedOut,
  InvalidPayload,
  PayloadTooLarge,
  PollTimeout,
  ProviderRequestFailed,
  SubmissionRejected,
)
from framecast.services.jobs import JobKind, JobStatus
from framecast.services.orchestrator import CaptureInput, GenerationOrchestrator, GenerationOutcome
from framecast.services.signing import Credentials, TokenSigner
from framecast.services.tasks import InMemoryTaskStore, SupabaseTaskStore, TaskStore

logger = get_logger(__name__)


def _status_for(failure: Optional[GenerationError]) -> int:
  if failure is None:
    return 200
  if isinstance(failure, PayloadTooLarge):
    return 413
  if isinstance(failure, InvalidPayload):
    return 400
  if isinstance(failure, ConfigurationError):
    return 500
  if isinstance(failure, SubmissionRejected):
    # Provider 4xx/5xx codes pass through; 2xx bodies that rejected the job do not.
    return failure.status_code if 400 <= failure.status_code < 600 else 502
  if isinstance(failure, (GenerationFailed, ProviderRequestFailed)):
    return 502
  if isinstance(failure, (PollTimeout, GenerationTimedOut)):
    return 504
  return 500


def _select_task_store(settings: Settings) -> TaskStore:
  return SupabaseTaskStore.from_settings(settings) or InMemoryTaskStore()


def create_app(
  *,
  settings: Optional[Settings] = None,
  http_client: Optional[httpx.AsyncClient] = None,
  task_store: Optional[TaskStore] = None,
) -> FastAPI:
  settings = settings or get_settings()
  configure_logging(settings.log_level, json=settings.log_json)

  app = FastAPI(title="Framecast", version="0.1.0")
  app.state.settings = settings
  app.state.http_client = http_client
  app.state.task_store = task_store or _select_task_store(settings)

  def _orchestrator(kind: JobKind) -> GenerationOrchestrator:
    # One orchestrator per request: attempts never share job or log state.
    return GenerationOrchestrator.from_settings(
      kind,
      settings=app.state.settings,
      http_client=app.state.http_client,
      task_store=app.state.task_store,
    )

  async def _run(kind: JobKind, capture: CaptureInput, prompt: str) -> JSONResponse:
    orchestrator = _orchestrator(kind)
    try:
      outcome: GenerationOutcome = await orchestrator.generate(capture, prompt)
      log_lines = orchestrator.log
    except InvalidPayload as exc:
      return JSONResponse(
        status_code=400,
        content=GenerationResponse(
          success=False, state=orchestrator.state.value, error=str(exc), log=orchestrator.log
        ).model_dump(),
      )
    finally:
      await orchestrator.aclose()
    body = GenerationResponse(
      success=outcome.failure is None,
      state=outcome.state.value,
      task_id=outcome.job_id,
      result_url=outcome.result_url,
      generated_url=outcome.generated_url,
      error=outcome.error,
      log=log_lines,
    )
    return JSONResponse(status_code=_status_for(outcome.failure), content=body.model_dump())

  async def _check(kind: JobKind, task_id: str) -> JobStatusResponse:
    orchestrator = _orchestrator(kind)
    try:
      snapshot = await orchestrator.check_job(task_id)
    except ConfigurationError as exc:
      raise HTTPException(status_code=500, detail=str(exc))
    except ProviderRequestFailed as exc:
      raise HTTPException(status_code=502, detail=str(exc))
    finally:
      await orchestrator.aclose()

    if snapshot.status is JobStatus.READY:
      if not snapshot.result_url:
        return JobStatusResponse(
          success=False, status="failed", message="Provider reported Ready without a result URL"
        )
      return JobStatusResponse(success=True, status="completed", result_url=snapshot.result_url)
    if snapshot.status.is_failure:
      return JobStatusResponse(success=False, status="failed", message=snapshot.detail)
    return JobStatusResponse(success=True, status="processing", message=snapshot.detail)

  @app.get("/health")
  async def health() -> dict[str, Any]:
    current: Settings = app.state.settings
    return {
      "service": "framecast",
      "status": "ok",
      "providers": {
        JobKind.IMAGE_EDIT.value: bool((current.bfl_api_key or "").strip()),
        JobKind.VIDEO_COMPILE.value: bool(
          (current.kling_access_key or "").strip() and (current.kling_secret_key or "").strip()
        ),
      },
      "task_store": type(app.state.task_store).__name__,
    }

  @app.post("/image-edits", response_model=GenerationResponse)
  async def create_image_edit(req: ImageEditRequest) -> JSONResponse:
    capture = CaptureInput(frame_base64=req.input_image, transcript=req.transcript)
    return await _run(JobKind.IMAGE_EDIT, capture, req.prompt)

  @app.get("/image-edits/{task_id}", response_model=JobStatusResponse)
  async def image_edit_status(task_id: str) -> JobStatusResponse:
    return await _check(JobKind.IMAGE_EDIT, task_id)

  @app.post("/video-compilations", response_model=GenerationResponse)
  async def create_video_compilation(req: VideoCompileRequest) -> JSONResponse:
    try:
      video_bytes = base64.b64decode(req.video_base64.split(",")[-1], validate=True)
    except (binascii.Error, ValueError) as exc:
      raise HTTPException(status_code=400, detail=f"Invalid base64 video payload: {exc}")
    capture = CaptureInput(
      frame_base64=req.frame_base64 or "",
      transcript=req.transcript,
      video_bytes=video_bytes,
    )
    return await _run(JobKind.VIDEO_COMPILE, capture, req.prompt)

  @app.get("/video-compilations/{task_id}", response_model=JobStatusResponse)
  async def video_compilation_status(task_id: str) -> JobStatusResponse:
    return await _check(JobKind.VIDEO_COMPILE, task_id)

  @app.get("/tasks", response_model=list[TaskRecordModel])
  async def list_tasks() -> list[TaskRecordModel]:
    records = await app.state.task_store.list_records()
    return [
      TaskRecordModel(
        task_id=record.task_id,
        kind=record.kind.value,
        prompt=record.prompt,
        status=record.status.value,
        result_url=record.result_url,
        error_message=record.error_message,
      )
      for record in records
    ]

  @app.post("/credentials/verify", response_model=CredentialReport)
  async def verify_credentials() -> JSONResponse:
    current: Settings = app.state.settings
    credentials = Credentials(
      issuer_key=current.kling_access_key or "",
      signing_secret=current.kling_secret_key or "",
    )
    try:
      token = TokenSigner().sign(credentials)
    except ConfigurationError as exc:
      logger.warning("credential-check-failed", error=str(exc))
      return JSONResponse(status_code=500, content=CredentialReport(success=False, error=str(exc)).model_dump())
    details = TokenSigner.describe(token, credentials)
    report = CredentialReport(
      success=True,
      issuer=details["issuer"],
      issued_at=details["issued_at"],
      expires_at=details["expires_at"],
      not_before=details["not_before"],
      token_length=details["token_length"],
    )
    return JSONResponse(status_code=200, content=report.model_dump())

  return app
