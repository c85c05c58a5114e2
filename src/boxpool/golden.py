"""Golden snapshot lookup.

Volumes are always copies of one pre-baked snapshot. Its name is derived
from the content of the setup script that builds it, so an unchanged script
always resolves to the same snapshot and a changed script gets a new one.
"""

from __future__ import annotations

import hashlib

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.interfaces import CloudControlPlane, SnapshotBuilder

logger = get_logger(__name__)


def golden_snapshot_name(setup_script: str | bytes) -> str:
    """Content-addressed snapshot name, e.g. ``golden-qemu-3f2a9c01be77``."""
    data = setup_script.encode() if isinstance(setup_script, str) else setup_script
    digest = hashlib.sha256(data).hexdigest()[: constants.GOLDEN_SNAPSHOT_HASH_LENGTH]
    return f"{constants.GOLDEN_SNAPSHOT_PREFIX}-{digest}"


async def ensure_golden_snapshot(
    cloud: CloudControlPlane,
    builder: SnapshotBuilder,
    setup_script: str | bytes,
) -> str:
    """Return the id of the golden snapshot for ``setup_script``, building it if missing.

    Idempotent: a second call with the same script finds the snapshot the
    first call built.
    """
    name = golden_snapshot_name(setup_script)
    existing = await cloud.find_snapshot(name)
    if existing is not None:
        logger.info("Using existing golden snapshot", extra={"snapshot": name, "snapshot_id": existing})
        return existing

    logger.info("Building golden snapshot", extra={"snapshot": name})
    snapshot_id = await builder.build(name)
    logger.info("Golden snapshot built", extra={"snapshot": name, "snapshot_id": snapshot_id})
    return snapshot_id
