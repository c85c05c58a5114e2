"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from boxpool import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with BOXPOOL_ prefix.
    Example: BOXPOOL_GUEST_SSH_PORT=2222
    """

    model_config = SettingsConfigDict(
        env_prefix="BOXPOOL_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"

    # Remote execution
    admin_user: str = "boxpool"
    guest_user: str = "root"
    ssh_key_path: Path | None = None
    ssh_connect_timeout_seconds: int = 10
    guest_ssh_port: int = constants.DEFAULT_GUEST_SSH_PORT

    # Instance-side paths
    qmp_socket: str = constants.DEFAULT_QMP_SOCKET
    data_device: str = constants.DEFAULT_DATA_DEVICE
    mount_point: str = constants.DEFAULT_MOUNT_POINT
    guest_disk_name: str = "guest.qcow2"
    guest_log_name: str = "qemu.log"

    # Guest VM
    qemu_binary: str = constants.QEMU_BINARY
    guest_memory_mb: int = 4096
    guest_cpus: int = 2
    saved_state_tag: str = constants.DEFAULT_SAVED_STATE_TAG

    # Lifecycle timeouts
    device_wait_timeout_seconds: float = constants.DEVICE_WAIT_TIMEOUT_SECONDS
    device_wait_interval_seconds: float = constants.DEVICE_WAIT_INTERVAL_SECONDS
    guest_ssh_timeout_seconds: float = constants.GUEST_SSH_TIMEOUT_SECONDS
    guest_ssh_interval_seconds: float = constants.GUEST_SSH_INTERVAL_SECONDS
    migration_timeout_seconds: float = constants.DEFAULT_MIGRATION_TIMEOUT_SECONDS

    # Golden snapshot
    golden_volume_size_gb: int = constants.DEFAULT_VOLUME_SIZE_GB

    @property
    def guest_disk_path(self) -> str:
        return f"{self.mount_point}/{self.guest_disk_name}"

    @property
    def guest_log_path(self) -> str:
        return f"{self.mount_point}/{self.guest_log_name}"
