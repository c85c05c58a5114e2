"""Status-mutation primitives for pooled resources.

Only the allocator changes a resource's status; the pool creates and deletes
whole resources. Every status write also refreshes ``lastused`` so that
scale-down picks the least recently handed-out resources.
"""

from __future__ import annotations

from datetime import datetime

from boxpool._logging import get_logger
from boxpool.interfaces import CloudControlPlane
from boxpool.models import BUSY_STATUS, ResourceKind, ResourceStatus, TagKey, format_timestamp, utcnow

logger = get_logger(__name__)


class ResourceInventory:
    """Writes status/owner tags straight to the resource."""

    def __init__(self, cloud: CloudControlPlane):
        self._cloud = cloud

    async def mark(
        self,
        kind: ResourceKind,
        resource_id: str,
        status: ResourceStatus,
        user_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> dict[str, str]:
        """Set the status tag of one resource. Returns the tags written.

        Marking Free clears the owner tag. The status must be Free or the
        busy status of ``kind``.

        Raises:
            ValueError: Status does not apply to this kind
        """
        if status not in (ResourceStatus.FREE, BUSY_STATUS[kind]):
            raise ValueError(f"status {status.value!r} does not apply to a {kind.value}")

        tags = {
            TagKey.STATUS.value: status.value,
            TagKey.LAST_USED.value: format_timestamp(now or utcnow()),
            TagKey.USER.value: "" if status is ResourceStatus.FREE else (user_id or ""),
        }
        await self._cloud.update_tags(kind, resource_id, tags)
        logger.debug(
            "Resource status updated",
            extra={"kind": kind.value, "resource_id": resource_id, "status": status.value, "user_id": user_id},
        )
        return tags

    async def mark_instance(self, instance_id: str, status: ResourceStatus, user_id: str | None = None) -> None:
        await self.mark(ResourceKind.INSTANCE, instance_id, status, user_id)

    async def mark_volume(self, volume_id: str, status: ResourceStatus, user_id: str | None = None) -> None:
        await self.mark(ResourceKind.VOLUME, volume_id, status, user_id)
