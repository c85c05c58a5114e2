"""Fire-and-forget audit trail.

Audit writes never fail the operation being audited: sink errors are logged
and dropped.
"""

from __future__ import annotations

from boxpool._logging import get_logger
from boxpool.interfaces import AuditSink
from boxpool.models import AuditEvent, AuditEventType

logger = get_logger(__name__)


class AuditLog:
    """Wraps an AuditSink. A None sink disables auditing."""

    def __init__(self, sink: AuditSink | None = None):
        self._sink = sink

    async def record(
        self,
        event_type: AuditEventType,
        resource_id: str,
        *,
        user_id: str | None = None,
        **details: str,
    ) -> None:
        if self._sink is None:
            return
        event = AuditEvent(event_type=event_type, resource_id=resource_id, user_id=user_id, details=details)
        try:
            await self._sink.write(event)
        except Exception as e:  # noqa: BLE001 - audit is best effort
            logger.warning(
                "Audit write failed",
                extra={"event_type": event_type.value, "resource_id": resource_id, "error": str(e)},
            )
