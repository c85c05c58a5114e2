"""Data models for boxpool.

Pool state is never held in process memory: every record below is read back
from the inventory index, where it lives as cloud-resource tags. The mapping
between typed records and tag maps is written out by hand in
``ResourceRecord.to_tags`` / ``ResourceRecord.from_tags`` so that the key
namespace stays a fixed, enumerated set.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from boxpool import constants


class ResourceKind(str, Enum):
    """Pooled resource kinds."""

    INSTANCE = "instance"
    VOLUME = "volume"


class ResourceStatus(str, Enum):
    """Lifecycle status tag values.

    Instances move Free <-> Connected, volumes move Free <-> Attached.
    """

    FREE = "free"
    CONNECTED = "connected"
    ATTACHED = "attached"


BUSY_STATUS: dict[ResourceKind, ResourceStatus] = {
    ResourceKind.INSTANCE: ResourceStatus.CONNECTED,
    ResourceKind.VOLUME: ResourceStatus.ATTACHED,
}
"""Status a resource of each kind carries while bound to a session."""


class TagKey(str, Enum):
    """Every tag key the pool reads or writes."""

    ROLE = f"{constants.TAG_PREFIX}role"
    STATUS = f"{constants.TAG_PREFIX}status"
    CREATED = f"{constants.TAG_PREFIX}created"
    LAST_USED = f"{constants.TAG_PREFIX}lastused"
    INSTANCE_ID = f"{constants.TAG_PREFIX}instance-id"
    VOLUME_ID = f"{constants.TAG_PREFIX}volume-id"
    USER = f"{constants.TAG_PREFIX}user"


ID_TAG: dict[ResourceKind, TagKey] = {
    ResourceKind.INSTANCE: TagKey.INSTANCE_ID,
    ResourceKind.VOLUME: TagKey.VOLUME_ID,
}

ROLE_FOR_KIND: dict[ResourceKind, str] = {
    ResourceKind.INSTANCE: constants.ROLE_INSTANCE,
    ResourceKind.VOLUME: constants.ROLE_VOLUME,
}


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an RFC 3339 UTC tag value."""
    return value.astimezone(UTC).strftime(constants.TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 tag value. Returns None for missing or malformed input."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def utcnow() -> datetime:
    """Current time in UTC, truncated to whole seconds (tag resolution)."""
    return datetime.now(UTC).replace(microsecond=0)


class ResourceRecord(BaseModel):
    """One pooled instance or volume as seen through the inventory index."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    resource_id: str = Field(min_length=1)
    status: ResourceStatus
    role: str
    created_at: datetime | None = None
    last_used_at: datetime | None = None
    owner_user_id: str | None = None

    def to_tags(self) -> dict[str, str]:
        """Encode as a cloud tag map."""
        tags = {
            TagKey.ROLE.value: self.role,
            TagKey.STATUS.value: self.status.value,
            ID_TAG[self.kind].value: self.resource_id,
        }
        if self.created_at is not None:
            tags[TagKey.CREATED.value] = format_timestamp(self.created_at)
        if self.last_used_at is not None:
            tags[TagKey.LAST_USED.value] = format_timestamp(self.last_used_at)
        if self.owner_user_id:
            tags[TagKey.USER.value] = self.owner_user_id
        return tags

    @classmethod
    def from_tags(cls, kind: ResourceKind, tags: dict[str, str]) -> ResourceRecord | None:
        """Decode a tag map. Returns None when the map lacks an id or a known status."""
        resource_id = tags.get(ID_TAG[kind].value)
        if not resource_id:
            return None
        try:
            status = ResourceStatus(tags.get(TagKey.STATUS.value, ""))
        except ValueError:
            return None
        return cls(
            kind=kind,
            resource_id=resource_id,
            status=status,
            role=tags.get(TagKey.ROLE.value, ROLE_FOR_KIND[kind]),
            created_at=parse_timestamp(tags.get(TagKey.CREATED.value)),
            last_used_at=parse_timestamp(tags.get(TagKey.LAST_USED.value)),
            owner_user_id=tags.get(TagKey.USER.value) or None,
        )

    @classmethod
    def new_free(cls, kind: ResourceKind, resource_id: str, now: datetime | None = None) -> ResourceRecord:
        """Record for a freshly created, unbound resource."""
        now = now or utcnow()
        return cls(
            kind=kind,
            resource_id=resource_id,
            status=ResourceStatus.FREE,
            role=ROLE_FOR_KIND[kind],
            created_at=now,
            last_used_at=now,
        )


class ResourceCounts(BaseModel):
    """Per-status counts for one resource kind."""

    free: int = 0
    connected: int = 0
    attached: int = 0
    total: int = 0

    @property
    def busy(self) -> int:
        return self.total - self.free


class AllocatedResourceSet(BaseModel):
    """Instance + volume bound to one user session. Held by the caller only."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    volume_id: str
    instance_address: str


class InstanceSpec(BaseModel):
    """Opaque creation parameters handed to the cloud control plane for instances."""

    model_config = ConfigDict(frozen=True)

    vm_size: str = "Standard_D8s_v3"
    admin_username: str = "boxpool"


class VolumeSpec(BaseModel):
    """Creation parameters for pooled volumes. Always a copy of the golden snapshot."""

    model_config = ConfigDict(frozen=True)

    source_snapshot_id: str = Field(min_length=1)
    size_gb: int = Field(default=constants.DEFAULT_VOLUME_SIZE_GB, ge=1)


class AuditEventType(str, Enum):
    INSTANCE_CREATE = "instance_create"
    INSTANCE_DELETE = "instance_delete"
    VOLUME_CREATE = "volume_create"
    VOLUME_DELETE = "volume_delete"
    ALLOCATE = "allocate"
    RELEASE = "release"


class AuditEvent(BaseModel):
    """One audit record. Partitioned by UTC date, ordered by timestamp within a day."""

    model_config = ConfigDict(frozen=True)

    event_type: AuditEventType
    resource_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    user_id: str | None = None
    details: dict[str, str] = Field(default_factory=dict)

    @property
    def partition_key(self) -> str:
        return self.timestamp.astimezone(UTC).strftime("%Y-%m-%d")

    @property
    def row_key(self) -> str:
        return f"{self.timestamp.astimezone(UTC).strftime('%Y%m%dT%H%M%S.%fZ')}_{self.event_type.value}"


# ============================================================================
# Guest execution state
# ============================================================================


class GuestState(str, Enum):
    """Nested guest execution state on one instance."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"


VALID_GUEST_TRANSITIONS: dict[GuestState, set[GuestState]] = {
    GuestState.STOPPED: {GuestState.STARTING},
    GuestState.STARTING: {GuestState.RUNNING, GuestState.STOPPED},
    GuestState.RUNNING: {GuestState.PAUSING, GuestState.STOPPED},
    GuestState.PAUSING: {GuestState.PAUSED, GuestState.STOPPED, GuestState.RUNNING},
    GuestState.PAUSED: {GuestState.STARTING, GuestState.STOPPED},
}


# ============================================================================
# Guest control protocol frames
# ============================================================================


class MigrationStatus(str, Enum):
    """Migration status values reported by query-migrate."""

    NONE = "none"
    SETUP = "setup"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QmpErrorInfo(BaseModel):
    """Body of an ``{"error": ...}`` frame."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    error_class: str = Field(default="", alias="class")
    desc: str = ""


class QmpFrame(BaseModel):
    """One JSON object from the control-socket response stream."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    return_value: Any = Field(default=None, alias="return")
    error: QmpErrorInfo | None = None
    event: str | None = None
    data: dict[str, Any] | None = None
    greeting: dict[str, Any] | None = Field(default=None, alias="QMP")

    @property
    def has_return(self) -> bool:
        """True when the frame carried a ``return`` key (even ``{}`` or null)."""
        return "return_value" in self.model_fields_set

    @property
    def is_greeting(self) -> bool:
        return self.greeting is not None


class RamStats(BaseModel):
    """RAM transfer counters from query-migrate."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transferred: int = 0
    remaining: int = 0
    total: int = 0
    mbps: float = 0.0
    dirty_sync_count: int = Field(default=0, alias="dirty-sync-count")


class MigrationInfo(BaseModel):
    """Parsed query-migrate return value. Durations are milliseconds."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str = MigrationStatus.NONE.value
    total_time: int | None = Field(default=None, alias="total-time")
    downtime: int | None = None
    expected_downtime: int | None = Field(default=None, alias="expected-downtime")
    setup_time: int | None = Field(default=None, alias="setup-time")
    error_desc: str | None = Field(default=None, alias="error-desc")
    ram: RamStats | None = None

    @property
    def progress_percent(self) -> float:
        if self.ram is None or self.ram.total <= 0:
            return 0.0
        return self.ram.transferred / self.ram.total * 100
