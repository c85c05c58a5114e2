"""Read-only queries against the inventory index.

The index lags behind tag writes. Nothing here assumes read-your-writes;
callers that need it go through ``wait_until_visible``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.exceptions import NotYetVisibleError
from boxpool.interfaces import CloudControlPlane
from boxpool.models import (
    ID_TAG,
    ROLE_FOR_KIND,
    ResourceCounts,
    ResourceKind,
    ResourceRecord,
    ResourceStatus,
    TagKey,
)
from boxpool.retry import retry_operation

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class ResourceQueryService:
    """Counts and listings of pooled resources, read through the tag index."""

    def __init__(
        self,
        cloud: CloudControlPlane,
        *,
        visibility_timeout: float = constants.VISIBILITY_TIMEOUT_SECONDS,
        visibility_poll_interval: float = constants.VISIBILITY_POLL_INTERVAL_SECONDS,
    ):
        self._cloud = cloud
        self._visibility_timeout = visibility_timeout
        self._visibility_poll_interval = visibility_poll_interval

    async def _query(self, kind: ResourceKind, tag_filter: dict[str, str]) -> list[ResourceRecord]:
        tag_filter = {TagKey.ROLE.value: ROLE_FOR_KIND[kind], **tag_filter}
        records = []
        for tags in await self._cloud.list_by_tag(kind, tag_filter):
            record = ResourceRecord.from_tags(kind, tags)
            if record is None:
                logger.debug("Skipping resource with incomplete tags", extra={"kind": kind.value, "tags": tags})
                continue
            records.append(record)
        return records

    async def list_all(self, kind: ResourceKind) -> list[ResourceRecord]:
        return await self._query(kind, {})

    async def list_by_status(self, kind: ResourceKind, status: ResourceStatus) -> list[ResourceRecord]:
        """Resources of ``kind`` currently tagged ``status``, in index order."""
        return await self._query(kind, {TagKey.STATUS.value: status.value})

    async def count_by_status(self, kind: ResourceKind) -> ResourceCounts:
        counts = ResourceCounts()
        for record in await self.list_all(kind):
            counts.total += 1
            if record.status is ResourceStatus.FREE:
                counts.free += 1
            elif record.status is ResourceStatus.CONNECTED:
                counts.connected += 1
            elif record.status is ResourceStatus.ATTACHED:
                counts.attached += 1
        return counts

    async def oldest_free(self, kind: ResourceKind, limit: int) -> list[ResourceRecord]:
        """Up to ``limit`` Free resources, least recently used first.

        A resource with no usable lastused tag sorts as oldest.
        """
        if limit <= 0:
            return []
        free = await self.list_by_status(kind, ResourceStatus.FREE)
        free.sort(key=lambda r: (r.last_used_at or _EPOCH, r.resource_id))
        return free[:limit]

    async def wait_until_visible(
        self,
        kind: ResourceKind,
        resource_id: str,
        expected_tags: dict[str, str],
    ) -> ResourceRecord:
        """Block until the index shows ``resource_id`` carrying every expected tag.

        Raises:
            RetryTimeoutError: Index did not catch up within the visibility timeout
        """
        id_key = ID_TAG[kind].value
        status = expected_tags.get(TagKey.STATUS.value)

        async def _check() -> ResourceRecord:
            tag_filter = {TagKey.STATUS.value: status} if status else {}
            candidates = await self._cloud.list_by_tag(kind, {TagKey.ROLE.value: ROLE_FOR_KIND[kind], **tag_filter})
            for tags in candidates:
                if tags.get(id_key) != resource_id:
                    continue
                if all(tags.get(k) == v for k, v in expected_tags.items()):
                    record = ResourceRecord.from_tags(kind, tags)
                    if record is not None:
                        return record
            raise NotYetVisibleError(
                f"{kind.value} {resource_id} not yet visible in index (checked {len(candidates)} resources)"
            )

        record = await retry_operation(
            _check,
            operation_name=f"{kind.value} {resource_id} in inventory index",
            timeout=self._visibility_timeout,
            interval=self._visibility_poll_interval,
        )
        logger.info("Resource visible in inventory index", extra={"kind": kind.value, "resource_id": resource_id})
        return record
