"""Guest state-to-file migration driven over QMP.

"Migration" here serializes the live guest (CPU + RAM + device state) into a
file on the instance through an ``exec:`` URI. It is not a network
migration. QEMU pauses the guest while it writes; the caller polls
``query-migrate`` until a terminal status.

Polling adapts to progress: slow while far from done, tight near the end so
a fast-closing transfer is noticed quickly:

    progress <50%    -> 500ms
    progress 50-75%  -> 200ms
    progress 75-90%  -> 100ms
    progress >90%    -> 50ms

A transferred-byte count that does not move for more than 5 seconds counts
as a stalled check; three stalled checks in a row log a warning. Stalls
never abort the migration; only the overall deadline does.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.exceptions import MigrationError, MigrationTimeoutError, QmpError, TransientError
from boxpool.models import MigrationInfo, MigrationStatus
from boxpool.qmp_client import QmpClient, find_return

logger = get_logger(__name__)

_MIB = 1024 * 1024


def next_poll_interval(progress_percent: float) -> float:
    """Seconds to wait before the next status query at this completion percentage."""
    if progress_percent > 90:
        return constants.MIGRATION_POLL_FINAL_SECONDS
    if progress_percent >= 75:
        return constants.MIGRATION_POLL_NEAR_SECONDS
    if progress_percent >= 50:
        return constants.MIGRATION_POLL_MID_SECONDS
    return constants.MIGRATION_POLL_FAR_SECONDS


class MigrationProgress:
    """Progress bookkeeping for one migration: stall detection and progress logs."""

    __slots__ = ("_clock", "_last_logged_bytes", "last_change_at", "last_transferred", "stall_count")

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._last_logged_bytes = 0
        self.last_transferred: int | None = None
        self.last_change_at = clock()
        self.stall_count = 0

    def observe(self, info: MigrationInfo) -> float:
        """Record one ``active`` status sample and return the next poll interval."""
        if info.ram is None:
            return constants.MIGRATION_POLL_NEAR_SECONDS

        now = self._clock()
        transferred = info.ram.transferred
        if transferred != self.last_transferred:
            self.last_transferred = transferred
            self.last_change_at = now
            self.stall_count = 0
        elif now - self.last_change_at > constants.MIGRATION_STALL_SECONDS:
            self.stall_count += 1
            if self.stall_count >= constants.MIGRATION_STALL_WARN_CHECKS:
                logger.warning(
                    "Migration progress stalled",
                    extra={
                        "transferred": transferred,
                        "remaining": info.ram.remaining,
                        "stall_seconds": round(now - self.last_change_at, 1),
                        "stall_count": self.stall_count,
                    },
                )

        if transferred - self._last_logged_bytes >= constants.MIGRATION_PROGRESS_LOG_BYTES:
            self._last_logged_bytes = transferred
            logger.debug(
                "Migration progress %.1f%%",
                info.progress_percent,
                extra={
                    "transferred_mb": round(transferred / _MIB, 1),
                    "remaining_mb": round(info.ram.remaining / _MIB, 1),
                    "mbps": info.ram.mbps,
                },
            )

        return next_poll_interval(info.progress_percent)


@dataclass(frozen=True, slots=True)
class MigrationResult:
    """Completed migration timings (milliseconds, as reported by QEMU)."""

    total_time_ms: int | None
    downtime_ms: int | None


class MigrationController:
    """Drives snapshot-to-file migrations for guests on pool instances.

    ``clock`` and ``sleep`` are injectable so tests can run the poll loop on
    virtual time.
    """

    __slots__ = ("_clock", "_qmp", "_sleep")

    def __init__(
        self,
        qmp: QmpClient,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._qmp = qmp
        self._clock = clock
        self._sleep = sleep

    async def snapshot_to_file(self, host: str, state_file: str) -> bool:
        """Start serializing guest state into ``state_file`` on the instance.

        Returns True when the response carried a STOP event (guest paused).
        A missing STOP event is not a failure as long as QEMU accepted the
        command.

        Raises:
            QmpError: QEMU rejected the command
            TransportError: Remote execution produced nothing
        """
        # The space after ">" is required by QEMU's exec: URI handling
        uri = f"exec:cat > {shlex.quote(state_file)}"
        frames = await self._qmp.execute(host, "migrate", {"uri": uri})
        paused = any(frame.event == "STOP" for frame in frames)
        logger.info(
            "Migration started",
            extra={"host": host, "state_file": state_file, "paused": paused},
        )
        return paused

    async def query(self, host: str) -> MigrationInfo:
        """Current migration state. An empty reply means no migration (status "none")."""
        frames = await self._qmp.execute(host, "query-migrate")
        value = find_return(frames)
        if not isinstance(value, dict):
            raise QmpError("migration info not found in response", {"host": host})
        info = MigrationInfo.model_validate(value)
        if not info.status:
            info = info.model_copy(update={"status": MigrationStatus.NONE.value})
        return info

    async def cancel(self, host: str) -> None:
        await self._qmp.execute(host, "migrate_cancel")

    async def wait_for_completion(
        self,
        host: str,
        timeout: float = constants.DEFAULT_MIGRATION_TIMEOUT_SECONDS,
    ) -> MigrationResult:
        """Poll until the migration reaches a terminal status.

        Query failures are tolerated (QEMU may be busy mid-transition); the
        loop just tries again after the current interval.

        Raises:
            MigrationError: Status became failed or cancelled
            MigrationTimeoutError: No terminal status within ``timeout``
        """
        started = self._clock()
        progress = MigrationProgress(self._clock)
        interval = constants.MIGRATION_POLL_NEAR_SECONDS
        last_status: str | None = None

        try:
            async with asyncio.timeout(timeout):
                while True:
                    if self._clock() - started > timeout:
                        raise MigrationTimeoutError(f"migration timeout after {timeout}s", status=last_status)

                    try:
                        info = await self.query(host)
                    except (QmpError, TransientError) as e:
                        logger.debug("Migration query failed, retrying", extra={"host": host, "error": str(e)})
                        await self._sleep(interval)
                        continue

                    if last_status is None:
                        logger.info("Initial migration status", extra={"host": host, "status": info.status})
                    last_status = info.status

                    if info.status == MigrationStatus.COMPLETED:
                        logger.info(
                            "Migration completed",
                            extra={"host": host, "total_time_ms": info.total_time, "downtime_ms": info.downtime},
                        )
                        return MigrationResult(total_time_ms=info.total_time, downtime_ms=info.downtime)
                    if info.status in (MigrationStatus.FAILED, MigrationStatus.CANCELLED):
                        detail = f": {info.error_desc}" if info.error_desc else ""
                        raise MigrationError(f"migration {info.status}{detail}", status=info.status)

                    if info.status == MigrationStatus.ACTIVE:
                        interval = progress.observe(info)
                    else:
                        # none / setup / anything QEMU adds later
                        interval = constants.MIGRATION_POLL_FAR_SECONDS

                    await self._sleep(interval)
        except TimeoutError as e:
            raise MigrationTimeoutError(f"migration timeout after {timeout}s", status=last_status) from e
