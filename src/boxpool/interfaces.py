"""Collaborator interfaces consumed by the pool, allocator and lifecycle driver.

Uses structural typing (Protocol) instead of inheritance: the cloud SDK
adapter, the remote-execution transport and the audit store live outside
this package and only have to match these shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from boxpool.models import AuditEvent, InstanceSpec, ResourceKind, VolumeSpec


@dataclass(frozen=True, slots=True)
class RemoteResult:
    """Outcome of one remote command.

    ``output`` is combined stdout+stderr, as a shell ``2>&1`` would give.
    """

    output: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class CloudControlPlane(Protocol):
    """Cloud resource CRUD plus the tag index.

    Every call is a poll-until-done operation on the cloud side; from here it
    is a single awaitable. Tag writes reach ``list_by_tag`` only after a
    bounded propagation delay.
    """

    async def create(
        self,
        kind: ResourceKind,
        spec: InstanceSpec | VolumeSpec,
        tags: dict[str, str],
    ) -> str:
        """Create a resource carrying ``tags``.

        Returns the pool id of the new resource: the value of the kind's id
        tag (``boxpool:instance-id`` / ``boxpool:volume-id``), which every
        other call takes as ``resource_id``.
        """
        ...

    async def delete(self, kind: ResourceKind, resource_id: str) -> None:
        """Delete a resource and anything it owns (NICs, OS disk)."""
        ...

    async def get_tags(self, kind: ResourceKind, resource_id: str) -> dict[str, str]:
        """Read tags straight from the resource (not through the index)."""
        ...

    async def update_tags(self, kind: ResourceKind, resource_id: str, tags: dict[str, str]) -> None:
        """Merge ``tags`` into the resource's tags. Keys mapped to "" are removed."""
        ...

    async def list_by_tag(self, kind: ResourceKind, tag_filter: dict[str, str]) -> list[dict[str, str]]:
        """Tag maps of every resource matching all filter pairs, via the index."""
        ...

    async def attach_volume(self, instance_id: str, volume_id: str) -> None:
        """Attach a volume as the instance's first data disk."""
        ...

    async def detach_volume(self, instance_id: str, volume_id: str) -> None:
        """Detach a volume. No-op if it is not attached."""
        ...

    async def get_private_address(self, instance_id: str) -> str:
        """Private IP of the instance's primary NIC."""
        ...

    async def find_snapshot(self, name: str) -> str | None:
        """Id of the snapshot with this name, or None."""
        ...


@runtime_checkable
class RemoteExecutor(Protocol):
    """One-shot remote command execution. No session reuse is assumed."""

    async def run(self, host: str, user: str, command: str, *, port: int | None = None) -> RemoteResult:
        """Run a shell command on ``host``."""
        ...

    async def copy_file(self, host: str, user: str, local_path: str, remote_path: str) -> None:
        """Copy a local file to ``host``."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only event store keyed by (partition_key, row_key)."""

    async def write(self, event: AuditEvent) -> None: ...


@runtime_checkable
class SnapshotBuilder(Protocol):
    """Builds the golden base snapshot from scratch. Slow; runs once per script revision."""

    async def build(self, name: str) -> str:
        """Build a snapshot called ``name`` and return its id."""
        ...
