"""Shared pytest fixtures and in-memory collaborators for boxpool tests."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from boxpool.interfaces import RemoteResult
from boxpool.models import (
    ID_TAG,
    AuditEvent,
    InstanceSpec,
    ResourceKind,
    ResourceRecord,
    ResourceStatus,
    TagKey,
    VolumeSpec,
)
from boxpool.queries import ResourceQueryService
from boxpool.settings import Settings

# ============================================================================
# QMP output helpers
# ============================================================================

GREETING: dict[str, Any] = {
    "QMP": {"version": {"qemu": {"micro": 0, "minor": 2, "major": 8}, "package": ""}, "capabilities": ["oob"]}
}


def qmp_output(*frames: dict[str, Any], noise: bool = False) -> str:
    """Render a QMP response stream (greeting + handshake reply + frames)."""
    lines = [json.dumps(GREETING), json.dumps({"return": {}})]
    lines += [json.dumps(f) for f in frames]
    if noise:
        lines.insert(0, "Warning: Permanently added '10.0.0.4' (ED25519) to the list of known hosts.")
        lines.append("")
    return "\n".join(lines) + "\n"


def qmp_ok(value: Any = None, *events: str) -> RemoteResult:
    """Successful single-command exchange, optionally with events before the return."""
    frames: list[dict[str, Any]] = [{"event": e, "data": {}} for e in events]
    frames.append({"return": {} if value is None else value})
    return RemoteResult(output=qmp_output(*frames), exit_code=0)


def qmp_err(error_class: str, desc: str) -> RemoteResult:
    return RemoteResult(output=qmp_output({"error": {"class": error_class, "desc": desc}}), exit_code=0)


# ============================================================================
# Fake cloud control plane
# ============================================================================


class FakeCloud:
    """In-memory CloudControlPlane with an optionally lagging tag index.

    Writes land in ``resources`` immediately. ``list_by_tag`` reads a
    separate index snapshot that catches up after ``index_lag`` reads.
    """

    def __init__(self, *, index_lag: int = 0) -> None:
        self.resources: dict[tuple[ResourceKind, str], dict[str, str]] = {}
        self._index: dict[tuple[ResourceKind, str], dict[str, str]] = {}
        self._index_lag = index_lag
        self._lag_remaining = 0
        self.specs: dict[str, InstanceSpec | VolumeSpec] = {}
        self.attachments: dict[str, str] = {}
        self.addresses: dict[str, str] = {}
        self.snapshots: dict[str, str] = {}
        self.calls: list[tuple[str, ...]] = []
        self.fail_on: dict[str, BaseException] = {}
        self.fail_times: dict[str, int] = {}

    # -- helpers -------------------------------------------------------

    def _maybe_fail(self, key: str) -> None:
        exc = self.fail_on.get(key)
        if exc is None:
            return
        remaining = self.fail_times.get(key)
        if remaining is not None:
            if remaining <= 0:
                return
            self.fail_times[key] = remaining - 1
        raise exc

    def _written(self) -> None:
        if self._index_lag == 0:
            self.sync_index()
        else:
            self._lag_remaining = self._index_lag

    def sync_index(self) -> None:
        self._index = {key: dict(tags) for key, tags in self.resources.items()}
        self._lag_remaining = 0

    def seed(
        self,
        kind: ResourceKind,
        resource_id: str,
        status: ResourceStatus = ResourceStatus.FREE,
        *,
        last_used: datetime | None = None,
        user_id: str | None = None,
    ) -> None:
        now = datetime(2026, 1, 1, tzinfo=UTC)
        record = ResourceRecord.new_free(kind, resource_id, now=now).model_copy(
            update={"status": status, "last_used_at": last_used or now, "owner_user_id": user_id}
        )
        self.resources[(kind, resource_id)] = record.to_tags()
        self.sync_index()

    def status_of(self, kind: ResourceKind, resource_id: str) -> ResourceStatus:
        return ResourceStatus(self.resources[(kind, resource_id)][TagKey.STATUS.value])

    def ids(self, kind: ResourceKind) -> set[str]:
        return {rid for k, rid in self.resources if k is kind}

    # -- CloudControlPlane ---------------------------------------------

    async def create(self, kind: ResourceKind, spec: InstanceSpec | VolumeSpec, tags: dict[str, str]) -> str:
        self.calls.append(("create", kind.value))
        await asyncio.sleep(0)
        self._maybe_fail("create")
        resource_id = tags[ID_TAG[kind].value]
        self.resources[(kind, resource_id)] = dict(tags)
        self.specs[resource_id] = spec
        self._written()
        return resource_id

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        self.calls.append(("delete", kind.value, resource_id))
        await asyncio.sleep(0)
        self._maybe_fail("delete")
        self.resources.pop((kind, resource_id), None)
        self._written()

    async def get_tags(self, kind: ResourceKind, resource_id: str) -> dict[str, str]:
        return dict(self.resources[(kind, resource_id)])

    async def update_tags(self, kind: ResourceKind, resource_id: str, tags: dict[str, str]) -> None:
        self.calls.append(("update_tags", kind.value, resource_id, tags.get(TagKey.STATUS.value, "")))
        self._maybe_fail(f"update_tags:{kind.value}")
        current = self.resources[(kind, resource_id)]
        for key, value in tags.items():
            if value == "":
                current.pop(key, None)
            else:
                current[key] = value
        self._written()

    async def list_by_tag(self, kind: ResourceKind, tag_filter: dict[str, str]) -> list[dict[str, str]]:
        self._maybe_fail("list_by_tag")
        if self._lag_remaining > 0:
            self._lag_remaining -= 1
        else:
            self.sync_index()
        return [
            dict(tags)
            for (k, _), tags in self._index.items()
            if k is kind and all(tags.get(key) == value for key, value in tag_filter.items())
        ]

    async def attach_volume(self, instance_id: str, volume_id: str) -> None:
        self.calls.append(("attach_volume", instance_id, volume_id))
        self._maybe_fail("attach_volume")
        self.attachments[volume_id] = instance_id

    async def detach_volume(self, instance_id: str, volume_id: str) -> None:
        self.calls.append(("detach_volume", instance_id, volume_id))
        self._maybe_fail("detach_volume")
        self.attachments.pop(volume_id, None)

    async def get_private_address(self, instance_id: str) -> str:
        self._maybe_fail("get_private_address")
        return self.addresses.get(instance_id, "10.0.0.4")

    async def find_snapshot(self, name: str) -> str | None:
        return self.snapshots.get(name)


# ============================================================================
# Fake remote executor
# ============================================================================


class FakeExecutor:
    """Scripted RemoteExecutor.

    ``script(match, *results)`` answers commands containing ``match``; the
    results are consumed in order and the last one repeats. The most recently
    added matching script wins. Unmatched commands succeed with no output.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str, int | None]] = []
        self.copies: list[tuple[str, str, str, str]] = []
        self._scripts: list[tuple[str, list[RemoteResult | BaseException]]] = []

    def script(self, match: str, *results: RemoteResult | BaseException | str) -> None:
        queued = [RemoteResult(output=r, exit_code=0) if isinstance(r, str) else r for r in results]
        self._scripts.append((match, queued))

    @property
    def commands(self) -> list[str]:
        return [command for _, _, command, _ in self.calls]

    async def run(self, host: str, user: str, command: str, *, port: int | None = None) -> RemoteResult:
        self.calls.append((host, user, command, port))
        await asyncio.sleep(0)
        for match, results in reversed(self._scripts):
            if match in command:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, BaseException):
                    raise result
                return result
        return RemoteResult(output="", exit_code=0)

    async def copy_file(self, host: str, user: str, local_path: str, remote_path: str) -> None:
        self.copies.append((host, user, local_path, remote_path))


# ============================================================================
# Other collaborators
# ============================================================================


class RecordingAuditSink:
    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[AuditEvent] = []
        self.fail = fail

    async def write(self, event: AuditEvent) -> None:
        if self.fail:
            raise ConnectionError("audit store unavailable")
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


class FakeLifecycle:
    """Stands in for LifecycleManager in allocator tests."""

    def __init__(self, *, start_error: BaseException | None = None) -> None:
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.start_error = start_error

    async def start(self, host: str) -> None:
        self.started.append(host)
        if self.start_error is not None:
            raise self.start_error

    async def stop(self, host: str) -> None:
        self.stopped.append(host)


class FakeClock:
    """Monotonic clock that only moves when told to (or when ``sleep`` is awaited)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def ago(minutes: int) -> datetime:
    return datetime(2026, 1, 1, 12, 0, tzinfo=UTC) - timedelta(minutes=minutes)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queries(cloud: FakeCloud) -> ResourceQueryService:
    return ResourceQueryService(cloud, visibility_timeout=2.0, visibility_poll_interval=0.01)


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with lifecycle waits shrunk to milliseconds."""
    return Settings(
        device_wait_timeout_seconds=0.5,
        device_wait_interval_seconds=0.01,
        guest_ssh_timeout_seconds=0.5,
        guest_ssh_interval_seconds=0.01,
        migration_timeout_seconds=5.0,
    )
