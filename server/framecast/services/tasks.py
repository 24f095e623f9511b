from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from supabase import Client, create_client

from framecast.config import Settings
from framecast.logging import get_logger
from framecast.services.jobs import JobKind

logger = get_logger(__name__)


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TaskRecord:
    """Task-history row emitted for external persistence."""

    task_id: str
    prompt: str
    status: TaskStatus
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    kind: JobKind = JobKind.VIDEO_COMPILE


class TaskStore(Protocol):
    async def record(self, record: TaskRecord) -> None:
        ...

    async def list_records(self) -> list[TaskRecord]:
        ...


class InMemoryTaskStore:
    """Process-local task history, newest first, bounded to ``max_records``."""

    def __init__(self, *, max_records: int = 200) -> None:
        self._max_records = max_records
        self._records: OrderedDict[str, TaskRecord] = OrderedDict()

    async def record(self, record: TaskRecord) -> None:
        self._records.pop(record.task_id, None)
        self._records[record.task_id] = record
        while len(self._records) > self._max_records:
            self._records.popitem(last=False)

    async def list_records(self) -> list[TaskRecord]:
        return list(reversed(self._records.values()))


class SupabaseTaskStore:
    """Writes task history into the Supabase ``video_tasks`` table.

    The supabase client is synchronous, so every call runs in a worker thread
    bounded by ``timeout_seconds``. Rows are scoped by ``user_session_id``.
    Only video compiles are persisted; image edits are skipped.
    """

    def __init__(
        self,
        client: Client,
        *,
        session_id: str,
        table: str = "video_tasks",
        timeout_seconds: float = 2.0,
    ) -> None:
        self._client = client
        self._session_id = session_id
        self._table = table
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["SupabaseTaskStore"]:
        """Return a store when Supabase is configured, otherwise None."""
        url = (settings.supabase_url or "").strip()
        key = (settings.supabase_service_role_key or "").strip()
        if not url or not key:
            return None
        return cls(
            create_client(url, key),
            session_id=settings.task_session_id,
            table=settings.supabase_tasks_table,
            timeout_seconds=settings.supabase_timeout_seconds,
        )

    def _row(self, record: TaskRecord) -> dict[str, Any]:
        return {
            "task_id": record.task_id,
            "user_session_id": self._session_id,
            "prompt": record.prompt,
            "status": record.status.value,
            "video_url": record.result_url,
            "error_message": record.error_message,
        }

    async def record(self, record: TaskRecord) -> None:
        if record.kind is not JobKind.VIDEO_COMPILE:
            logger.debug("task-record-skipped", task_id=record.task_id, kind=record.kind.value)
            return
        row = self._row(record)

        def _upsert() -> None:
            self._client.table(self._table).upsert(row, on_conflict="task_id").execute()

        await asyncio.wait_for(asyncio.to_thread(_upsert), timeout=self._timeout_seconds)
        logger.debug("task-recorded", task_id=record.task_id, status=record.status.value)

    async def list_records(self) -> list[TaskRecord]:
        def _select() -> list[dict]:
            response = (
                self._client.table(self._table)
                .select("task_id, prompt, status, video_url, error_message, created_at")
                .eq("user_session_id", self._session_id)
                .order("created_at", desc=True)
                .limit(50)
                .execute()
            )
            data = getattr(response, "data", None)
            return data if isinstance(data, list) else []

        rows = await asyncio.wait_for(asyncio.to_thread(_select), timeout=self._timeout_seconds)
        records: list[TaskRecord] = []
        for row in rows:
            if not isinstance(row, dict) or not row.get("task_id"):
                continue
            try:
                status = TaskStatus(str(row.get("status") or "processing"))
            except ValueError:
                status = TaskStatus.PROCESSING
            records.append(
                TaskRecord(
                    task_id=str(row["task_id"]),
                    prompt=str(row.get("prompt") or ""),
                    status=status,
                    result_url=row.get("video_url"),
                    error_message=row.get("error_message"),
                )
            )
        return records
