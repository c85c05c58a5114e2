"""Nested guest lifecycle on a pool instance.

Start/resume (Stopped -> Starting -> Running):
    1. Wait for the attached data disk's device node
    2. Mount it (idempotent)
    3. Launch QEMU detached and paused (-S), guest disk on the data volume,
       QMP on a unix socket, guest SSH forwarded to the instance
    4. PID lookup; on failure the QEMU log is surfaced in the error
    5. ``loadvm <tag>`` then ``cont`` over QMP
    6. SSH echo probe into the guest; failure is terminal for the start

Stop (Running -> Pausing -> Stopped): ``savevm <tag>`` + ``quit`` over QMP,
falling back to pkill. Never raises: session release must not block on an
uncooperative guest.

Suspend (Running -> Pausing -> Paused): serialize guest state to a file via
MigrationController.
"""

from __future__ import annotations

import asyncio
import shlex
from collections.abc import Awaitable, Callable

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.exceptions import (
    BoxPoolError,
    GuestNotReadyError,
    GuestStartError,
    InvalidStateTransitionError,
)
from boxpool.interfaces import RemoteExecutor
from boxpool.migration_client import MigrationController, MigrationResult
from boxpool.models import VALID_GUEST_TRANSITIONS, GuestState
from boxpool.qmp_client import QmpClient
from boxpool.retry import retry_operation
from boxpool.settings import Settings

logger = get_logger(__name__)


def build_qemu_command(settings: Settings) -> list[str]:
    """QEMU argv for a pooled guest. Starts paused; state is loaded over QMP."""
    return [
        settings.qemu_binary,
        "-enable-kvm",
        "-m",
        f"{settings.guest_memory_mb}M",
        "-smp",
        str(settings.guest_cpus),
        "-cpu",
        "host",
        "-drive",
        f"file={settings.guest_disk_path},format=qcow2",
        "-device",
        "virtio-rng-pci,rng=rng0",
        "-object",
        "rng-random,id=rng0,filename=/dev/urandom",
        "-nographic",
        "-S",
        "-qmp",
        f"unix:{settings.qmp_socket},server,nowait",
        "-nic",
        f"user,model=virtio,hostfwd=tcp::{settings.guest_ssh_port}-:22",
    ]


class LifecycleManager:
    """Starts, stops and suspends the nested guest on pool instances.

    Guest state is tracked per host. Transitions are validated against
    VALID_GUEST_TRANSITIONS under a lock.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        qmp: QmpClient,
        settings: Settings | None = None,
        *,
        migration: MigrationController | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._executor = executor
        self._qmp = qmp
        self._settings = settings or Settings()
        self._migration = migration or MigrationController(qmp, sleep=sleep)
        self._sleep = sleep
        self._states: dict[str, GuestState] = {}
        self._state_lock = asyncio.Lock()

    def state(self, host: str) -> GuestState:
        return self._states.get(host, GuestState.STOPPED)

    async def transition_state(self, host: str, new_state: GuestState) -> None:
        """Move the guest on ``host`` to ``new_state``.

        Raises:
            InvalidStateTransitionError: Transition not allowed from the current state
        """
        async with self._state_lock:
            current = self._states.get(host, GuestState.STOPPED)
            allowed = VALID_GUEST_TRANSITIONS.get(current, set())
            if new_state not in allowed:
                raise InvalidStateTransitionError(
                    f"Invalid guest state transition: {current.value} -> {new_state.value}",
                    context={
                        "host": host,
                        "current_state": current.value,
                        "target_state": new_state.value,
                        "allowed_transitions": sorted(s.value for s in allowed),
                    },
                )
            self._set_locked(host, new_state)
            logger.debug(
                "Guest state transition",
                extra={"host": host, "old_state": current.value, "new_state": new_state.value},
            )

    def _set_locked(self, host: str, state: GuestState) -> None:
        if state is GuestState.STOPPED:
            self._states.pop(host, None)
        else:
            self._states[host] = state

    async def _mark_stopped(self, host: str) -> None:
        async with self._state_lock:
            self._set_locked(host, GuestState.STOPPED)

    async def _run(self, host: str, command: str) -> tuple[bool, str]:
        result = await self._executor.run(host, self._settings.admin_user, command)
        return result.ok, result.output

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def _wait_for_device(self, host: str) -> None:
        device = self._settings.data_device

        async def _probe() -> None:
            ok, _ = await self._run(host, f"test -e {shlex.quote(device)}")
            if not ok:
                raise GuestNotReadyError(f"device {device} not present yet", {"host": host})

        await retry_operation(
            _probe,
            operation_name=f"data disk {device} on {host}",
            timeout=self._settings.device_wait_timeout_seconds,
            interval=self._settings.device_wait_interval_seconds,
        )

    async def _mount(self, host: str) -> None:
        mount_point = shlex.quote(self._settings.mount_point)
        device = shlex.quote(self._settings.data_device)
        ok, output = await self._run(
            host,
            f"mountpoint -q {mount_point} || (sudo mkdir -p {mount_point} && sudo mount {device} {mount_point})",
        )
        if not ok:
            raise GuestStartError(f"failed to mount {self._settings.data_device}: {output.strip()}", host)

    async def _launch(self, host: str) -> None:
        qemu = shlex.join(build_qemu_command(self._settings))
        log_path = shlex.quote(self._settings.guest_log_path)
        inner = f"nohup {qemu} > {log_path} 2>&1 < /dev/null &"
        ok, output = await self._run(host, f"sudo sh -c {shlex.quote(inner)}")
        if not ok:
            raise GuestStartError(f"failed to launch guest process: {output.strip()}", host)

        await self._sleep(constants.GUEST_LAUNCH_SETTLE_SECONDS)

        binary = shlex.quote(self._settings.qemu_binary)
        ok, output = await self._run(host, f"pgrep -f {binary}")
        if not ok:
            _, process_log = await self._run(host, f"sudo cat {log_path} 2>/dev/null || true")
            raise GuestStartError("guest process is not running after launch", host, process_log=process_log.strip())
        logger.debug("Guest process running", extra={"host": host, "pids": output.split()})

    async def _wait_for_ssh(self, host: str) -> None:
        async def _probe() -> None:
            result = await self._executor.run(
                host,
                self._settings.guest_user,
                "echo 'guest ssh ready'",
                port=self._settings.guest_ssh_port,
            )
            if not result.ok:
                raise GuestNotReadyError(f"guest SSH not ready: {result.output.strip()}", {"host": host})

        await retry_operation(
            _probe,
            operation_name=f"guest SSH on {host}",
            timeout=self._settings.guest_ssh_timeout_seconds,
            interval=self._settings.guest_ssh_interval_seconds,
        )

    async def start(self, host: str) -> None:
        """Start (resume) the guest on ``host`` from its saved state.

        Raises:
            InvalidStateTransitionError: Guest is not stopped or paused
            GuestStartError: Any start step failed; the guest is marked Stopped
        """
        was_paused = self.state(host) is GuestState.PAUSED
        await self.transition_state(host, GuestState.STARTING)
        logger.info("Starting guest", extra={"host": host, "resume_paused": was_paused})

        step = "wait_for_device"
        try:
            if was_paused:
                # Process is still alive after a suspend; only the vCPUs are stopped
                step = "resume"
                await self._qmp.execute(host, "cont")
            else:
                await self._wait_for_device(host)
                step = "mount"
                await self._mount(host)
                step = "launch"
                await self._launch(host)
                step = "load_state"
                await self._qmp.human_monitor(host, f"loadvm {self._settings.saved_state_tag}")
                await self._qmp.execute(host, "cont")
            step = "ssh_probe"
            await self._wait_for_ssh(host)
        except GuestStartError:
            await self._mark_stopped(host)
            raise
        except BoxPoolError as e:
            await self._mark_stopped(host)
            raise GuestStartError(f"guest start failed at {step}: {e}", host) from e
        except BaseException:
            await self._mark_stopped(host)
            raise

        await self.transition_state(host, GuestState.RUNNING)
        logger.info("Guest started", extra={"host": host})

    # ------------------------------------------------------------------
    # Stop / suspend
    # ------------------------------------------------------------------

    async def stop(self, host: str) -> None:
        """Save guest state and quit; kill the process if that fails. Never raises."""
        if self.state(host) is GuestState.RUNNING:
            await self.transition_state(host, GuestState.PAUSING)

        try:
            await self._qmp.execute_many(
                host,
                [
                    ("human-monitor-command", {"command-line": f"savevm {self._settings.saved_state_tag}"}),
                    ("quit", None),
                ],
            )
            logger.info("Guest state saved", extra={"host": host})
        except Exception as e:  # noqa: BLE001 - fall through to forced kill
            logger.warning("Guest save/quit failed, killing process", extra={"host": host, "error": str(e)})
            try:
                await self._run(host, f"sudo pkill -f {shlex.quote(self._settings.qemu_binary)} || true")
            except Exception as kill_error:  # noqa: BLE001 - stop is best effort
                logger.warning(
                    "Forced guest kill failed",
                    extra={"host": host, "error": str(kill_error)},
                )

        await self._mark_stopped(host)
        logger.info("Guest stopped", extra={"host": host})

    async def suspend_to_file(
        self,
        host: str,
        state_file: str,
        timeout: float | None = None,
    ) -> MigrationResult:
        """Pause the guest and serialize its state into ``state_file``.

        Raises:
            InvalidStateTransitionError: Guest is not running
            MigrationError: Migration failed, was cancelled or timed out
        """
        await self.transition_state(host, GuestState.PAUSING)
        try:
            await self._migration.snapshot_to_file(host, state_file)
            result = await self._migration.wait_for_completion(
                host,
                timeout=timeout if timeout is not None else self._settings.migration_timeout_seconds,
            )
        except BaseException:
            await self.transition_state(host, GuestState.RUNNING)
            raise
        await self.transition_state(host, GuestState.PAUSED)
        return result
