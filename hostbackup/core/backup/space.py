from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from hostbackup.core.backup.models import SpaceEstimate
from hostbackup.core.errors import InsufficientSpace
from hostbackup.core.host.disk import DiskProbe
from hostbackup.core.logger import get_logger

MB = 1024 * 1024

PHASE_DOCKER_VOLUMES = "docker_volumes"
PHASE_DOCKER_IMAGES = "docker_images"
PHASE_COMPRESSION = "compression"


class SpaceGuard:
    """
    Re-evaluated before every phase:

        projected = current staging size + phase estimate + safety margin

    and raises InsufficientSpace when projected exceeds the free space of the
    staging filesystem. Estimates are never cached across phases.
    """

    def __init__(
        self,
        *,
        disk: DiskProbe,
        fallback_dir: str,
        safety_margin_bytes: int = 500 * MB,
        default_estimate_bytes: int = 100 * MB,
        volume_root: Optional[str] = None,
        image_usage: Optional[Callable[[], Optional[int]]] = None,
        logger=None,
        ops=None,
        run_id: str = "",
    ):
        self.disk = disk
        self.fallback_dir = fallback_dir
        self.safety_margin_bytes = int(safety_margin_bytes)
        self.default_estimate_bytes = int(default_estimate_bytes)
        self.volume_root = volume_root
        self.image_usage = image_usage
        self.logger = logger or get_logger()
        self.ops = ops
        self.run_id = run_id
        self._estimators: Dict[str, Callable[[int], int]] = {
            PHASE_DOCKER_VOLUMES: lambda _cur: self._volumes_estimate(),
            PHASE_DOCKER_IMAGES: lambda _cur: self._images_estimate(),
            PHASE_COMPRESSION: lambda cur: 2 * cur,
        }

    def _volumes_estimate(self) -> int:
        if not self.volume_root or not os.path.isdir(self.volume_root):
            return 0
        return int(self.disk.tree_size_bytes(self.volume_root))

    def _images_estimate(self) -> int:
        if self.image_usage is None:
            return 0
        try:
            usage = self.image_usage()
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Image disk usage unavailable, assuming 0: {e}")
            return 0
        if usage is None:
            self.logger.warning("Image disk usage unavailable (docker system df failed), assuming 0")
            return 0
        return max(int(usage), 0)

    def phase_estimate(self, phase: str, current_staging_bytes: int) -> int:
        est = self._estimators.get(phase)
        if est is None:
            return self.default_estimate_bytes
        return int(est(int(current_staging_bytes)))

    def estimate(self, phase: str, staging_path: str) -> SpaceEstimate:
        occupied = int(self.disk.tree_size_bytes(staging_path)) if os.path.isdir(staging_path) else 0
        probe = staging_path if os.path.isdir(staging_path) else self.fallback_dir
        available = int(self.disk.free_bytes(probe))
        return SpaceEstimate(
            phase=phase,
            occupied_bytes=occupied,
            projected_additional_bytes=self.phase_estimate(phase, occupied),
            safety_margin_bytes=self.safety_margin_bytes,
            available_bytes=available,
        )

    def check(self, phase: str, staging_path: str) -> SpaceEstimate:
        est = self.estimate(phase, staging_path)
        if self.ops is not None:
            self.ops.log(
                run_id=self.run_id,
                event="space.check",
                outcome="ok" if est.fits else "insufficient",
                details=est.model_dump() | {"projected_total_bytes": est.projected_total_bytes},
            )
        if not est.fits:
            raise InsufficientSpace(phase=phase, available_bytes=est.available_bytes, projected_bytes=est.projected_total_bytes)
        self.logger.info(
            f"Space check passed ({phase}): Available: {est.available_bytes // MB}MB, Estimated needed: {est.projected_total_bytes // MB}MB"
        )
        return est
