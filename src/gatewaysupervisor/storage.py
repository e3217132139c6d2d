from __future__ import annotations

import logging

from .config import StorageConfig
from .outcome import StepOutcome
from .sandbox.base import Sandbox


logger = logging.getLogger(__name__)


def mount_backing_storage(sandbox: Sandbox, storage: StorageConfig) -> StepOutcome:
    """Mount the persistence bucket into the sandbox (idempotent).

    Without bucket/credentials the gateway runs without persistence; that is reported as a
    successful "skipped" outcome. A failed mount is reported, not raised: the start script
    tolerates a missing mount.
    """
    step = "storage.mount"
    if not storage.configured:
        logger.info("Storage not configured; gateway data will not persist")
        return StepOutcome.success(step, detail="skipped")

    mount_path = storage.mount_path
    try:
        if sandbox.is_mounted(mount_path):
            return StepOutcome.success(step, detail="already_mounted")
    except Exception as e:
        logger.warning("Mount check for %s failed: %s", mount_path, e)

    credentials = {
        "access_key_id": storage.access_key_id,
        "secret_access_key": storage.secret_access_key,
    }
    try:
        sandbox.mount_bucket(str(storage.bucket), mount_path, endpoint=storage.endpoint, credentials=credentials)
    except Exception as e:
        # A concurrent mount may have won the race.
        try:
            if sandbox.is_mounted(mount_path):
                return StepOutcome.success(step, detail="already_mounted")
        except Exception:
            pass
        logger.error("Failed to mount bucket %s at %s: %s", storage.bucket, mount_path, e)
        return StepOutcome.failure(step, e)

    logger.info("Mounted bucket %s at %s", storage.bucket, mount_path)
    return StepOutcome.success(step, detail="mounted")
