"""Binding one Free instance and one Free volume to a user session.

Allocation is a fixed sequence of steps. Whatever a failed step leaves
behind is compensated before the error reaches the caller:

    mark_instance    instance -> Connected
    mark_volume      volume -> Attached          rollback: both back to Free
    attach_volume    cloud disk attach           rollback: both back to Free
    resolve_address  instance private IP         rollback: detach, both Free
    start_guest      LifecycleManager.start      rollback: detach, both Free

The allocator keeps no state between calls; the tags are the only record of
who holds what.
"""

from __future__ import annotations

from boxpool._logging import get_logger
from boxpool.audit import AuditLog
from boxpool.exceptions import AllocationError, NoFreeResourcesError, ReleaseError
from boxpool.guest_lifecycle import LifecycleManager
from boxpool.interfaces import CloudControlPlane
from boxpool.inventory import ResourceInventory
from boxpool.models import AllocatedResourceSet, AuditEventType, ResourceKind, ResourceStatus
from boxpool.queries import ResourceQueryService

logger = get_logger(__name__)


class _Rollback:
    """Compensation state accumulated while allocating."""

    __slots__ = ("attached", "instance_id", "instance_marked", "volume_id", "volume_marked")

    def __init__(self, instance_id: str, volume_id: str) -> None:
        self.instance_id = instance_id
        self.volume_id = volume_id
        self.instance_marked = False
        self.volume_marked = False
        self.attached = False


class ResourceAllocator:
    """Allocates and releases instance+volume pairs.

    Usage:
        allocator = ResourceAllocator(cloud, queries, inventory, lifecycle)
        resources = await allocator.allocate("user-42")
        ...
        await allocator.release(resources.instance_id, resources.volume_id)
    """

    def __init__(
        self,
        cloud: CloudControlPlane,
        queries: ResourceQueryService,
        inventory: ResourceInventory,
        lifecycle: LifecycleManager,
        *,
        audit: AuditLog | None = None,
    ) -> None:
        self._cloud = cloud
        self._queries = queries
        self._inventory = inventory
        self._lifecycle = lifecycle
        self._audit = audit or AuditLog()

    async def _find_free_pair(self) -> tuple[str, str]:
        instances = await self._queries.list_by_status(ResourceKind.INSTANCE, ResourceStatus.FREE)
        if not instances:
            raise NoFreeResourcesError("no free instances available", {"kind": ResourceKind.INSTANCE.value})
        volumes = await self._queries.list_by_status(ResourceKind.VOLUME, ResourceStatus.FREE)
        if not volumes:
            raise NoFreeResourcesError("no free volumes available", {"kind": ResourceKind.VOLUME.value})
        # First of each; index order, no placement heuristic
        return instances[0].resource_id, volumes[0].resource_id

    async def allocate(self, user_id: str) -> AllocatedResourceSet:
        """Bind a Free instance and a Free volume to ``user_id`` and start the guest.

        Raises:
            NoFreeResourcesError: Pool has no Free instance or no Free volume
            AllocationError: A step failed; everything done so far was rolled back
        """
        instance_id, volume_id = await self._find_free_pair()
        state = _Rollback(instance_id, volume_id)
        log_extra = {"instance_id": instance_id, "volume_id": volume_id, "user_id": user_id}

        step = "mark_instance"
        try:
            await self._inventory.mark_instance(instance_id, ResourceStatus.CONNECTED, user_id)
            state.instance_marked = True

            step = "mark_volume"
            # Set before the call: a failed write may still have landed
            state.volume_marked = True
            await self._inventory.mark_volume(volume_id, ResourceStatus.ATTACHED, user_id)

            step = "attach_volume"
            await self._cloud.attach_volume(instance_id, volume_id)
            state.attached = True

            step = "resolve_address"
            address = await self._cloud.get_private_address(instance_id)

            step = "start_guest"
            await self._lifecycle.start(address)
        except BaseException as e:
            logger.warning(
                "Allocation failed, rolling back",
                extra={**log_extra, "step": step, "error": str(e)},
            )
            await self._rollback(state)
            if isinstance(e, Exception):
                raise AllocationError(step, e, context=log_extra) from e
            raise

        logger.info("Resources allocated", extra={**log_extra, "address": address})
        await self._audit.record(AuditEventType.ALLOCATE, instance_id, user_id=user_id, volume_id=volume_id)
        return AllocatedResourceSet(instance_id=instance_id, volume_id=volume_id, instance_address=address)

    async def _rollback(self, state: _Rollback) -> None:
        """Undo an allocation in reverse order. Every step is best effort."""
        if state.attached:
            try:
                await self._cloud.detach_volume(state.instance_id, state.volume_id)
            except Exception as e:  # noqa: BLE001 - keep rolling back
                logger.warning(
                    "Rollback: failed to detach volume",
                    extra={"instance_id": state.instance_id, "volume_id": state.volume_id, "error": str(e)},
                )
        if state.instance_marked:
            try:
                await self._inventory.mark_instance(state.instance_id, ResourceStatus.FREE)
            except Exception as e:  # noqa: BLE001 - keep rolling back
                logger.warning(
                    "Rollback: failed to reset instance status",
                    extra={"instance_id": state.instance_id, "error": str(e)},
                )
        if state.volume_marked:
            try:
                await self._inventory.mark_volume(state.volume_id, ResourceStatus.FREE)
            except Exception as e:  # noqa: BLE001 - keep rolling back
                logger.warning(
                    "Rollback: failed to reset volume status",
                    extra={"volume_id": state.volume_id, "error": str(e)},
                )

    async def release(self, instance_id: str, volume_id: str) -> None:
        """Stop the guest and return both resources to the pool.

        Guest stop and disk detach are best effort. Both status resets are
        always attempted; their errors are collected.

        Raises:
            ReleaseError: One or both status resets failed
        """
        log_extra = {"instance_id": instance_id, "volume_id": volume_id}

        try:
            address = await self._cloud.get_private_address(instance_id)
        except Exception as e:  # noqa: BLE001 - release proceeds without a guest stop
            logger.warning("Failed to resolve instance address for guest stop", extra={**log_extra, "error": str(e)})
        else:
            await self._lifecycle.stop(address)

        try:
            await self._cloud.detach_volume(instance_id, volume_id)
        except Exception as e:  # noqa: BLE001 - detach is best effort
            logger.warning("Failed to detach volume during release", extra={**log_extra, "error": str(e)})

        errors: list[BaseException] = []
        try:
            await self._inventory.mark_instance(instance_id, ResourceStatus.FREE)
        except Exception as e:  # noqa: BLE001 - collected
            errors.append(e)
        try:
            await self._inventory.mark_volume(volume_id, ResourceStatus.FREE)
        except Exception as e:  # noqa: BLE001 - collected
            errors.append(e)

        if errors:
            raise ReleaseError(errors, context=log_extra)

        logger.info("Resources released", extra=log_extra)
        await self._audit.record(AuditEventType.RELEASE, instance_id, volume_id=volume_id)
