"""
Rasterize world points into an integer label volume.
"""

import logging

import numpy as np

from .fields import LabelVolume
from .grid import round_half_to_even

logger = logging.getLogger(__name__)


class FiberVoxelizer:
    """
    Write fiber points into a LabelVolume.

    Parameters
    ----------
    geometry : VolumeGeometry
        Grid of the label volume, normally copied from the tensor volume.
    label : int
        Value written into every hit voxel in overwrite mode.
    count_fibers : bool
        Increment the voxel by one per rasterized point instead of
        overwriting it with ``label``.
    """

    def __init__(self, geometry, label=1, count_fibers=False):
        self.volume = LabelVolume(geometry)
        self.label = int(label)
        self.count_fibers = count_fibers
        self.n_skipped = 0

    @property
    def geometry(self):
        return self.volume.geometry

    def voxel_index(self, point):
        """Voxel index a world point snaps to (round half to even per axis)."""
        return round_half_to_even(self.geometry.physical_to_continuous_index(point))

    def add_point(self, point):
        """
        Rasterize one world point.

        Returns
        -------
        bool
            False if the snapped index fell outside the volume and the point
            was skipped.
        """
        index = self.voxel_index(point)
        if not self.geometry.is_inside_index(index):
            self.n_skipped += 1
            logger.warning("Error index: %s not in image. Ignoring", tuple(index.tolist()))
            return False

        if self.count_fibers:
            self.volume.increment(index)
        else:
            self.volume.assign(index, self.label)
        return True

    def add_points(self, points):
        """Rasterize a sequence of world points; returns how many were written."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return sum(self.add_point(p) for p in points)
