"""Pool configuration for boxpool.

PoolConfig drives the ResourcePool control loop: per-kind free/total limits
plus the shared tick and cooldown timers.

Example:
    ```python
    from boxpool import PoolConfig, ResourcePool

    # Preset sizing
    config = PoolConfig.production()

    # Custom sizing
    config = PoolConfig(
        instances=KindLimits(min_free=2, max_free=4, max_total=10),
        volumes=KindLimits(min_free=4, max_free=8, max_total=40),
        check_interval=15,
    )
    ```
"""

from __future__ import annotations

from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from boxpool import constants
from boxpool.models import ResourceKind


class KindLimits(BaseModel):
    """Free/total limits for one resource kind."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_free: int = Field(ge=0, description="Scale up when fewer than this many are Free")
    max_free: int = Field(ge=0, description="Scale down when more than this many are Free")
    max_total: int = Field(ge=1, description="Ceiling on resources of this kind")

    @model_validator(mode="after")
    def _check_ordering(self) -> Self:
        if self.min_free > self.max_free:
            raise ValueError(f"min_free ({self.min_free}) must not exceed max_free ({self.max_free})")
        if self.max_free > self.max_total:
            raise ValueError(f"max_free ({self.max_free}) must not exceed max_total ({self.max_total})")
        return self


class PoolConfig(BaseModel):
    """Configuration for ResourcePool.

    Attributes:
        instances: Limits for the instance pool.
        volumes: Limits for the volume pool.
        check_interval: Seconds between maintenance ticks.
        scale_down_cooldown: Minimum seconds between two scale-down batches.
        shared_scale_down_cooldown: One cooldown timer for both kinds (True) or
            one per kind (False).
        enforce_max_total: Clamp scale-up so a kind never exceeds max_total.
        max_concurrent_operations: Create/delete calls in flight per batch.
        visibility_timeout: Seconds to wait for a new resource to show up in
            the inventory index.
        visibility_poll_interval: Seconds between index lookups while waiting.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    instances: KindLimits = Field(
        default_factory=lambda: KindLimits(
            min_free=constants.DEV_MIN_FREE_INSTANCES,
            max_free=constants.DEV_MAX_FREE_INSTANCES,
            max_total=constants.DEV_MAX_TOTAL_INSTANCES,
        ),
        description="Instance pool limits",
    )
    volumes: KindLimits = Field(
        default_factory=lambda: KindLimits(
            min_free=constants.DEV_MIN_FREE_VOLUMES,
            max_free=constants.DEV_MAX_FREE_VOLUMES,
            max_total=constants.DEV_MAX_TOTAL_VOLUMES,
        ),
        description="Volume pool limits",
    )
    check_interval: float = Field(
        default=constants.DEV_CHECK_INTERVAL_SECONDS,
        gt=0,
        description="Seconds between maintenance ticks",
    )
    scale_down_cooldown: float = Field(
        default=constants.DEV_SCALE_DOWN_COOLDOWN_SECONDS,
        ge=0,
        description="Minimum seconds between scale-down batches",
    )
    shared_scale_down_cooldown: bool = Field(
        default=True,
        description="Share one scale-down cooldown timer across both kinds",
    )
    enforce_max_total: bool = Field(
        default=True,
        description="Clamp scale-up to max_total",
    )
    max_concurrent_operations: int = Field(
        default=constants.DEFAULT_MAX_CONCURRENT_OPERATIONS,
        ge=1,
        le=256,
        description="Concurrent create/delete calls per batch",
    )
    visibility_timeout: float = Field(
        default=constants.VISIBILITY_TIMEOUT_SECONDS,
        gt=0,
        description="Seconds to wait for a new resource to appear in the index",
    )
    visibility_poll_interval: float = Field(
        default=constants.VISIBILITY_POLL_INTERVAL_SECONDS,
        gt=0,
        description="Seconds between index lookups while waiting",
    )

    def limits_for(self, kind: ResourceKind) -> KindLimits:
        return self.instances if kind is ResourceKind.INSTANCE else self.volumes

    @classmethod
    def production(cls, **overrides: object) -> PoolConfig:
        """Sizing for a production deployment."""
        values: dict[str, object] = {
            "instances": KindLimits(
                min_free=constants.PRODUCTION_MIN_FREE_INSTANCES,
                max_free=constants.PRODUCTION_MAX_FREE_INSTANCES,
                max_total=constants.PRODUCTION_MAX_TOTAL_INSTANCES,
            ),
            "volumes": KindLimits(
                min_free=constants.PRODUCTION_MIN_FREE_VOLUMES,
                max_free=constants.PRODUCTION_MAX_FREE_VOLUMES,
                max_total=constants.PRODUCTION_MAX_TOTAL_VOLUMES,
            ),
            "check_interval": constants.PRODUCTION_CHECK_INTERVAL_SECONDS,
            "scale_down_cooldown": constants.PRODUCTION_SCALE_DOWN_COOLDOWN_SECONDS,
        }
        values.update(overrides)
        return cls.model_validate(values)

    @classmethod
    def development(cls, **overrides: object) -> PoolConfig:
        """Small pool for local development (the field defaults)."""
        return cls.model_validate(overrides)

    @classmethod
    def for_environment(cls, environment: Literal["development", "staging", "production"]) -> PoolConfig:
        # Staging runs with production sizing
        if environment == "development":
            return cls.development()
        return cls.production()
