"""Constants for boxpool configuration and limits."""

from typing import Final

# ============================================================================
# Inventory tags
# ============================================================================

TAG_PREFIX: Final[str] = "boxpool:"
"""Namespace shared by every tag key written by the pool."""

ROLE_INSTANCE: Final[str] = "instance"
ROLE_VOLUME: Final[str] = "volume"

TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%dT%H:%M:%SZ"
"""RFC 3339 UTC timestamp format used for created/lastused tags."""

# ============================================================================
# Pool sizing presets
# ============================================================================

PRODUCTION_MIN_FREE_INSTANCES: Final[int] = 5
PRODUCTION_MAX_FREE_INSTANCES: Final[int] = 10
PRODUCTION_MAX_TOTAL_INSTANCES: Final[int] = 100
PRODUCTION_MIN_FREE_VOLUMES: Final[int] = 20
PRODUCTION_MAX_FREE_VOLUMES: Final[int] = 50
PRODUCTION_MAX_TOTAL_VOLUMES: Final[int] = 500
PRODUCTION_CHECK_INTERVAL_SECONDS: Final[float] = 60.0
PRODUCTION_SCALE_DOWN_COOLDOWN_SECONDS: Final[float] = 600.0

DEV_MIN_FREE_INSTANCES: Final[int] = 1
DEV_MAX_FREE_INSTANCES: Final[int] = 2
DEV_MAX_TOTAL_INSTANCES: Final[int] = 5
DEV_MIN_FREE_VOLUMES: Final[int] = 2
DEV_MAX_FREE_VOLUMES: Final[int] = 5
DEV_MAX_TOTAL_VOLUMES: Final[int] = 20
DEV_CHECK_INTERVAL_SECONDS: Final[float] = 30.0
DEV_SCALE_DOWN_COOLDOWN_SECONDS: Final[float] = 120.0

DEFAULT_MAX_CONCURRENT_OPERATIONS: Final[int] = 16
"""Upper bound on create/delete calls in flight during one maintenance pass."""

DEFAULT_VOLUME_SIZE_GB: Final[int] = 100

# ============================================================================
# Retry / inventory consistency
# ============================================================================

DEFAULT_RETRY_TIMEOUT_SECONDS: Final[float] = 120.0
DEFAULT_RETRY_INTERVAL_SECONDS: Final[float] = 5.0

VISIBILITY_TIMEOUT_SECONDS: Final[float] = 120.0
"""How long a fresh write may take to show up in the inventory index."""

VISIBILITY_POLL_INTERVAL_SECONDS: Final[float] = 5.0

# ============================================================================
# Guest control protocol (QMP)
# ============================================================================

QMP_HANDSHAKE_COMMAND: Final[str] = '{"execute": "qmp_capabilities"}'

QMP_INTER_COMMAND_DELAY_SECONDS: Final[float] = 0.1
"""Gap between commands piped to the control socket. Without it QEMU may read
the handshake and the payload as one malformed blob."""

DEFAULT_QMP_SOCKET: Final[str] = "/tmp/qemu-qmp.sock"

# ============================================================================
# Migration progress polling
# ============================================================================

MIGRATION_POLL_FAR_SECONDS: Final[float] = 0.5
"""Poll interval below 50% progress (and while status is none/setup)."""

MIGRATION_POLL_MID_SECONDS: Final[float] = 0.2
"""Poll interval for 50-75% progress."""

MIGRATION_POLL_NEAR_SECONDS: Final[float] = 0.1
"""Poll interval for 75-90% progress, and for active migrations without RAM stats."""

MIGRATION_POLL_FINAL_SECONDS: Final[float] = 0.05
"""Poll interval above 90% progress."""

MIGRATION_STALL_SECONDS: Final[float] = 5.0
"""Transferred-byte count unchanged for longer than this counts as a stalled check."""

MIGRATION_STALL_WARN_CHECKS: Final[int] = 3
"""Consecutive stalled checks before a warning is emitted."""

MIGRATION_PROGRESS_LOG_BYTES: Final[int] = 100 * 1024 * 1024
"""Log progress whenever this many bytes moved since the last progress line."""

DEFAULT_MIGRATION_TIMEOUT_SECONDS: Final[float] = 300.0

# ============================================================================
# Guest lifecycle
# ============================================================================

DEFAULT_GUEST_SSH_PORT: Final[int] = 2222
DEFAULT_DATA_DEVICE: Final[str] = "/dev/disk/azure/scsi1/lun0"
DEFAULT_MOUNT_POINT: Final[str] = "/mnt/userdata"
DEFAULT_SAVED_STATE_TAG: Final[str] = "ssh-ready"
QEMU_BINARY: Final[str] = "qemu-system-x86_64"

DEVICE_WAIT_TIMEOUT_SECONDS: Final[float] = 300.0
DEVICE_WAIT_INTERVAL_SECONDS: Final[float] = 2.0
GUEST_SSH_TIMEOUT_SECONDS: Final[float] = 300.0
GUEST_SSH_INTERVAL_SECONDS: Final[float] = 10.0
GUEST_LAUNCH_SETTLE_SECONDS: Final[float] = 2.0
"""Pause between detaching the guest process and the PID lookup."""

# ============================================================================
# Golden snapshot
# ============================================================================

GOLDEN_SNAPSHOT_PREFIX: Final[str] = "golden-qemu"
GOLDEN_SNAPSHOT_HASH_LENGTH: Final[int] = 12
