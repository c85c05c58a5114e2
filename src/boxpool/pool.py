"""Autoscaling pool of free instances and volumes.

One background task runs a maintenance tick every ``check_interval``. A tick
runs two independent passes, instances then volumes. Each pass:

1. Counts the kind by status through the inventory index
2. free < min_free: creates the shortfall concurrently (bounded), each new
   resource waiting until the index shows it so a fast second tick cannot
   provision the same shortfall twice
3. free > max_free: deletes the least recently used Free resources, at most
   one scale-down batch per cooldown window

Every create/delete is isolated: a failing item is logged and its siblings
carry on. A failing pass is logged and the loop continues; whatever went
wrong is retried on the next tick.

The pool never changes a resource's status. It only creates and deletes
whole resources; status flips belong to the allocator.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Self

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.audit import AuditLog
from boxpool.config import PoolConfig
from boxpool.exceptions import SnapshotSourceMissingError
from boxpool.interfaces import CloudControlPlane
from boxpool.models import (
    AuditEventType,
    InstanceSpec,
    ResourceCounts,
    ResourceKind,
    ResourceRecord,
    VolumeSpec,
)
from boxpool.queries import ResourceQueryService
from boxpool.task_utils import gather_isolated, log_task_exception

logger = get_logger(__name__)

_CREATE_EVENT = {ResourceKind.INSTANCE: AuditEventType.INSTANCE_CREATE, ResourceKind.VOLUME: AuditEventType.VOLUME_CREATE}
_DELETE_EVENT = {ResourceKind.INSTANCE: AuditEventType.INSTANCE_DELETE, ResourceKind.VOLUME: AuditEventType.VOLUME_DELETE}

# Cooldown key when both kinds share one timer
_SHARED = "shared"


class PoolAction(str, Enum):
    """What a maintenance pass decided to do."""

    NONE = "none"
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    COOLDOWN = "cooldown"
    AT_CAPACITY = "at_capacity"


@dataclass(frozen=True, slots=True)
class PassReport:
    """Outcome of one maintenance pass for one kind."""

    kind: ResourceKind
    counts: ResourceCounts
    action: PoolAction
    requested: int = 0
    succeeded: int = 0
    failed: int = 0


class ResourcePool:
    """Keeps the number of Free instances and volumes between min_free and max_free.

    Usage:
        pool = ResourcePool(cloud, ResourceQueryService(cloud), PoolConfig.production(),
                            golden_snapshot_id=snapshot_id)
        async with pool:
            ...  # maintenance runs in the background
    """

    def __init__(
        self,
        cloud: CloudControlPlane,
        queries: ResourceQueryService,
        config: PoolConfig | None = None,
        *,
        golden_snapshot_id: str | None = None,
        instance_spec: InstanceSpec | None = None,
        volume_size_gb: int = constants.DEFAULT_VOLUME_SIZE_GB,
        audit: AuditLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cloud = cloud
        self._queries = queries
        self._config = config or PoolConfig()
        self._golden_snapshot_id = golden_snapshot_id
        self._instance_spec = instance_spec or InstanceSpec()
        self._volume_size_gb = volume_size_gb
        self._audit = audit or AuditLog()
        self._clock = clock

        # Only state shared between the two passes and their tasks
        self._last_scale_down: dict[object, float] = {}
        self._cooldown_lock = asyncio.Lock()

        self._task: asyncio.Task[None] | None = None

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def golden_snapshot_id(self) -> str | None:
        return self._golden_snapshot_id

    @golden_snapshot_id.setter
    def golden_snapshot_id(self, value: str | None) -> None:
        self._golden_snapshot_id = value

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background maintenance task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="boxpool-maintenance")
        self._task.add_done_callback(log_task_exception)
        logger.info("Resource pool started", extra={"check_interval": self._config.check_interval})

    async def stop(self) -> None:
        """Stop the background maintenance task. An in-flight tick is cancelled."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Resource pool stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self._config.check_interval)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, _exc_type: type[BaseException] | None, _exc_val: BaseException | None, _exc_tb: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def tick(self) -> dict[ResourceKind, PassReport]:
        """Run one maintenance pass per kind. A failing pass never stops the other."""
        reports: dict[ResourceKind, PassReport] = {}
        for kind in (ResourceKind.INSTANCE, ResourceKind.VOLUME):
            try:
                reports[kind] = await self.maintain(kind)
            except Exception as e:  # noqa: BLE001 - retried next tick
                logger.error(
                    "Pool maintenance pass failed",
                    extra={"kind": kind.value, "error": str(e), "error_type": type(e).__name__},
                )
        return reports

    async def maintain(self, kind: ResourceKind) -> PassReport:
        """One maintenance pass for ``kind``.

        Raises:
            SnapshotSourceMissingError: Volumes need creating but no golden snapshot is set
        """
        counts = await self._queries.count_by_status(kind)
        limits = self._config.limits_for(kind)
        logger.debug(
            "Pool status",
            extra={"kind": kind.value, "free": counts.free, "busy": counts.busy, "total": counts.total},
        )

        if counts.free < limits.min_free:
            return await self._scale_up(kind, counts, limits.min_free - counts.free, limits.max_total)
        if counts.free > limits.max_free:
            return await self._scale_down(kind, counts, counts.free - limits.max_free)
        return PassReport(kind=kind, counts=counts, action=PoolAction.NONE)

    async def _scale_up(self, kind: ResourceKind, counts: ResourceCounts, shortfall: int, max_total: int) -> PassReport:
        if kind is ResourceKind.VOLUME and not self._golden_snapshot_id:
            raise SnapshotSourceMissingError("cannot create volumes without a golden snapshot", {"kind": kind.value})

        requested = shortfall
        if self._config.enforce_max_total:
            headroom = max(0, max_total - counts.total)
            if requested > headroom:
                logger.warning(
                    "Scale-up clamped by max_total",
                    extra={"kind": kind.value, "shortfall": shortfall, "headroom": headroom, "max_total": max_total},
                )
                requested = headroom
        if requested == 0:
            return PassReport(kind=kind, counts=counts, action=PoolAction.AT_CAPACITY)

        logger.info("Scaling up", extra={"kind": kind.value, "count": requested, "free": counts.free})
        outcomes = await gather_isolated(
            range(requested),
            lambda _: self._create(kind),
            limit=self._config.max_concurrent_operations,
            name=f"{kind.value} scale-up",
        )
        succeeded = sum(1 for o in outcomes if o.ok)
        return PassReport(
            kind=kind,
            counts=counts,
            action=PoolAction.SCALE_UP,
            requested=requested,
            succeeded=succeeded,
            failed=requested - succeeded,
        )

    async def _claim_scale_down(self, kind: ResourceKind) -> bool:
        """Take the scale-down slot if the cooldown has elapsed."""
        key: object = _SHARED if self._config.shared_scale_down_cooldown else kind
        async with self._cooldown_lock:
            now = self._clock()
            last = self._last_scale_down.get(key)
            if last is not None and now - last < self._config.scale_down_cooldown:
                return False
            self._last_scale_down[key] = now
            return True

    async def _scale_down(self, kind: ResourceKind, counts: ResourceCounts, excess: int) -> PassReport:
        if not await self._claim_scale_down(kind):
            logger.debug("Scale-down skipped, cooldown active", extra={"kind": kind.value, "excess": excess})
            return PassReport(kind=kind, counts=counts, action=PoolAction.COOLDOWN)

        candidates = await self._queries.oldest_free(kind, excess)
        logger.info(
            "Scaling down",
            extra={"kind": kind.value, "count": len(candidates), "free": counts.free},
        )
        outcomes = await gather_isolated(
            candidates,
            self._delete,
            limit=self._config.max_concurrent_operations,
            name=f"{kind.value} scale-down",
        )
        succeeded = sum(1 for o in outcomes if o.ok)
        return PassReport(
            kind=kind,
            counts=counts,
            action=PoolAction.SCALE_DOWN,
            requested=len(candidates),
            succeeded=succeeded,
            failed=len(candidates) - succeeded,
        )

    # ------------------------------------------------------------------
    # Per-item work
    # ------------------------------------------------------------------

    def _spec_for(self, kind: ResourceKind) -> InstanceSpec | VolumeSpec:
        if kind is ResourceKind.INSTANCE:
            return self._instance_spec
        if not self._golden_snapshot_id:
            raise SnapshotSourceMissingError("cannot create volumes without a golden snapshot")
        return VolumeSpec(source_snapshot_id=self._golden_snapshot_id, size_gb=self._volume_size_gb)

    async def _create(self, kind: ResourceKind) -> str:
        record = ResourceRecord.new_free(kind, str(uuid.uuid4()))
        tags = record.to_tags()
        resource_id = await self._cloud.create(kind, self._spec_for(kind), tags)
        # Not created until the index shows it; otherwise the next tick sees the old shortfall
        await self._queries.wait_until_visible(kind, resource_id, tags)
        logger.info("Resource created", extra={"kind": kind.value, "resource_id": resource_id})
        await self._audit.record(_CREATE_EVENT[kind], resource_id, status=record.status.value)
        return resource_id

    async def _delete(self, record: ResourceRecord) -> None:
        await self._cloud.delete(record.kind, record.resource_id)
        logger.info("Resource deleted", extra={"kind": record.kind.value, "resource_id": record.resource_id})
        await self._audit.record(_DELETE_EVENT[record.kind], record.resource_id)
