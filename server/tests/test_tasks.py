from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

from framecast.config import Settings
from framecast.services.jobs import JobKind
from framecast.services.tasks import InMemoryTaskStore, SupabaseTaskStore, TaskRecord, TaskStatus


def _run(coro):
    return asyncio.run(coro)


class _FakeQuery:
    def __init__(self, client: "FakeSupabaseClient", table: str) -> None:
        self._client = client
        self.table = table
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def _chain(self, name: str, *args: Any, **kwargs: Any) -> "_FakeQuery":
        self.calls.append((name, args, kwargs))
        return self

    def upsert(self, *args: Any, **kwargs: Any) -> "_FakeQuery":
        return self._chain("upsert", *args, **kwargs)

    def select(self, *args: Any, **kwargs: Any) -> "_FakeQuery":
        return self._chain("select", *args, **kwargs)

    def eq(self, *args: Any, **kwargs: Any) -> "_FakeQuery":
        return self._chain("eq", *args, **kwargs)

    def order(self, *args: Any, **kwargs: Any) -> "_FakeQuery":
        return self._chain("order", *args, **kwargs)

    def limit(self, *args: Any, **kwargs: Any) -> "_FakeQuery":
        return self._chain("limit", *args, **kwargs)

    def execute(self) -> SimpleNamespace:
        return SimpleNamespace(data=self._client.rows)


class FakeSupabaseClient:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = rows or []
        self.queries: list[_FakeQuery] = []

    def table(self, name: str) -> _FakeQuery:
        query = _FakeQuery(self, name)
        self.queries.append(query)
        return query


def _store(client: FakeSupabaseClient) -> SupabaseTaskStore:
    return SupabaseTaskStore(client, session_id="session-1", table="video_tasks", timeout_seconds=1.0)


def test_record_upserts_video_task_row() -> None:
    client = FakeSupabaseClient()
    record = TaskRecord(
        task_id="t-1",
        prompt="make it snow",
        status=TaskStatus.FAILED,
        result_url=None,
        error_message="bad frame",
        kind=JobKind.VIDEO_COMPILE,
    )

    _run(_store(client).record(record))

    assert len(client.queries) == 1
    query = client.queries[0]
    assert query.table == "video_tasks"
    name, args, kwargs = query.calls[0]
    assert name == "upsert"
    assert args[0] == {
        "task_id": "t-1",
        "user_session_id": "session-1",
        "prompt": "make it snow",
        "status": "failed",
        "video_url": None,
        "error_message": "bad frame",
    }
    assert kwargs == {"on_conflict": "task_id"}


def test_completed_record_writes_video_url() -> None:
    client = FakeSupabaseClient()

    _run(
        _store(client).record(
            TaskRecord(task_id="t-2", prompt="p", status=TaskStatus.COMPLETED, result_url="http://v.mp4")
        )
    )

    row = client.queries[0].calls[0][1][0]
    assert row["status"] == "completed"
    assert row["video_url"] == "http://v.mp4"


def test_image_edit_records_are_not_written() -> None:
    client = FakeSupabaseClient()
    record = TaskRecord(task_id="abc", prompt="p", status=TaskStatus.COMPLETED, kind=JobKind.IMAGE_EDIT)

    _run(_store(client).record(record))

    assert client.queries == []


def test_list_records_filters_by_session_and_orders_newest_first() -> None:
    client = FakeSupabaseClient(
        rows=[
            {"task_id": "t-2", "prompt": "second", "status": "completed", "video_url": "http://v.mp4"},
            {"task_id": "t-1", "prompt": "first", "status": "mystery", "error_message": None},
            {"prompt": "no id"},
        ]
    )

    records = _run(_store(client).list_records())

    names = [call[0] for call in client.queries[0].calls]
    assert names == ["select", "eq", "order", "limit"]
    calls = {name: (args, kwargs) for name, args, kwargs in client.queries[0].calls}
    assert calls["eq"] == (("user_session_id", "session-1"), {})
    assert calls["order"] == (("created_at",), {"desc": True})
    assert calls["limit"] == ((50,), {})
    assert [r.task_id for r in records] == ["t-2", "t-1"]
    assert records[0].result_url == "http://v.mp4"
    assert records[0].status is TaskStatus.COMPLETED
    assert records[1].status is TaskStatus.PROCESSING
    assert all(r.kind is JobKind.VIDEO_COMPILE for r in records)


def test_from_settings_requires_url_and_key() -> None:
    assert SupabaseTaskStore.from_settings(Settings(supabase_url=None, supabase_service_role_key="k")) is None
    half_configured = Settings(supabase_url="https://x.supabase.co", supabase_service_role_key="")
    assert SupabaseTaskStore.from_settings(half_configured) is None


def test_in_memory_store_is_newest_first_and_bounded() -> None:
    store = InMemoryTaskStore(max_records=2)

    async def _scenario():
        for task_id in ("a", "b", "c"):
            await store.record(TaskRecord(task_id=task_id, prompt=task_id, status=TaskStatus.PROCESSING))
        await store.record(TaskRecord(task_id="b", prompt="b", status=TaskStatus.COMPLETED))
        return await store.list_records()

    records = _run(_scenario())

    assert [r.task_id for r in records] == ["b", "c"]
    assert records[0].status is TaskStatus.COMPLETED
