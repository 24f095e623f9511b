from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class ImageEditRequest(BaseModel):
  prompt: str = ""
  # Speech transcript used when no prompt was typed.
  transcript: str = ""
  # Empty values reach the provider adapter and are rejected there with a 400.
  input_image: str = ""


class VideoCompileRequest(BaseModel):
  prompt: str = ""
  transcript: str = ""
  video_base64: str = ""
  # Last frame of the clip, when the capture side extracted one.
  frame_base64: Optional[str] = None


class GenerationResponse(BaseModel):
  success: bool
  state: str
  task_id: Optional[str] = None
  result_url: Optional[str] = None
  generated_url: Optional[str] = None
  error: Optional[str] = None
  log: list[str] = Field(default_factory=list)


class JobStatusResponse(BaseModel):
  success: bool
  status: Literal["processing", "completed", "failed"]
  result_url: Optional[str] = None
  message: Optional[str] = None


class TaskRecordModel(BaseModel):
  task_id: str
  kind: str
  prompt: str
  status: str
  result_url: Optional[str] = None
  error_message: Optional[str] = None


class CredentialReport(BaseModel):
  success: bool
  issuer: Optional[str] = None
  issued_at: Optional[str] = None
  expires_at: Optional[str] = None
  not_before: Optional[str] = None
  token_length: Optional[int] = None
  error: Optional[str] = None
