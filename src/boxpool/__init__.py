"""boxpool: pooled nested-VM sandboxes on a cloud control plane.

Keeps a pool of ready instances and golden-snapshot volumes, hands a matched
pair to a user session in seconds, and drives the nested guest over QMP.

Quick Start (pool maintenance):
    ```python
    from boxpool import PoolConfig, ResourcePool, ResourceQueryService, ensure_golden_snapshot

    snapshot_id = await ensure_golden_snapshot(cloud, builder, setup_script)
    queries = ResourceQueryService(cloud)
    async with ResourcePool(cloud, queries, PoolConfig.production(), golden_snapshot_id=snapshot_id):
        ...  # pool maintains itself in the background
    ```

Allocation:
    ```python
    from boxpool import LifecycleManager, QmpClient, ResourceAllocator, ResourceInventory, Settings, SshExecutor

    settings = Settings()
    executor = SshExecutor(key_path=settings.ssh_key_path)
    lifecycle = LifecycleManager(executor, QmpClient(executor, user=settings.admin_user), settings)
    allocator = ResourceAllocator(cloud, queries, ResourceInventory(cloud), lifecycle)

    resources = await allocator.allocate("user-42")
    ...
    await allocator.release(resources.instance_id, resources.volume_id)
    ```

The cloud control plane, audit store and golden-snapshot builder are
supplied by the caller (see ``boxpool.interfaces``).
"""

from boxpool.allocator import ResourceAllocator
from boxpool.audit import AuditLog
from boxpool.config import KindLimits, PoolConfig
from boxpool.exceptions import (
    AllocationError,
    BoxPoolError,
    GuestNotReadyError,
    GuestStartError,
    InvalidStateTransitionError,
    MigrationError,
    MigrationTimeoutError,
    NoFreeResourcesError,
    NoResponsesError,
    NoSuccessError,
    NotYetVisibleError,
    PermanentError,
    ProtocolError,
    QmpError,
    ReleaseError,
    RetryTimeoutError,
    SnapshotSourceMissingError,
    TransientError,
    TransportError,
)
from boxpool.golden import ensure_golden_snapshot, golden_snapshot_name
from boxpool.guest_lifecycle import LifecycleManager, build_qemu_command
from boxpool.interfaces import AuditSink, CloudControlPlane, RemoteExecutor, RemoteResult, SnapshotBuilder
from boxpool.inventory import ResourceInventory
from boxpool.migration_client import MigrationController, MigrationResult, next_poll_interval
from boxpool.models import (
    AllocatedResourceSet,
    AuditEvent,
    AuditEventType,
    GuestState,
    MigrationInfo,
    MigrationStatus,
    ResourceCounts,
    ResourceKind,
    ResourceRecord,
    ResourceStatus,
    TagKey,
)
from boxpool.pool import PassReport, PoolAction, ResourcePool
from boxpool.qmp_client import QmpClient
from boxpool.queries import ResourceQueryService
from boxpool.remote import SshExecutor
from boxpool.retry import retry_operation
from boxpool.settings import Settings

__all__ = [
    "AllocatedResourceSet",
    "AllocationError",
    "AuditEvent",
    "AuditEventType",
    "AuditLog",
    "AuditSink",
    "BoxPoolError",
    "CloudControlPlane",
    "GuestNotReadyError",
    "GuestStartError",
    "GuestState",
    "InvalidStateTransitionError",
    "KindLimits",
    "LifecycleManager",
    "MigrationController",
    "MigrationError",
    "MigrationInfo",
    "MigrationResult",
    "MigrationStatus",
    "MigrationTimeoutError",
    "NoFreeResourcesError",
    "NoResponsesError",
    "NoSuccessError",
    "NotYetVisibleError",
    "PassReport",
    "PermanentError",
    "PoolAction",
    "PoolConfig",
    "ProtocolError",
    "QmpClient",
    "QmpError",
    "ReleaseError",
    "RemoteExecutor",
    "RemoteResult",
    "ResourceAllocator",
    "ResourceCounts",
    "ResourceInventory",
    "ResourceKind",
    "ResourcePool",
    "ResourceQueryService",
    "ResourceRecord",
    "ResourceStatus",
    "RetryTimeoutError",
    "Settings",
    "SnapshotBuilder",
    "SnapshotSourceMissingError",
    "SshExecutor",
    "TagKey",
    "TransientError",
    "TransportError",
    "build_qemu_command",
    "ensure_golden_snapshot",
    "golden_snapshot_name",
    "next_poll_interval",
    "retry_operation",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("boxpool")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
