import os
import sys
import logging

import numpy as np
import pytest

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from fiberprocess.fields import TensorField
from fiberprocess.grid import VolumeGeometry
from fiberprocess.voxelize import FiberVoxelizer


class TestFiberVoxelizer:
    """Rasterizing world points into a label volume"""

    def setup_method(self):
        self.geometry = VolumeGeometry((6, 6, 6))

    def test_overwrite_mode_is_idempotent(self):
        voxelizer = FiberVoxelizer(self.geometry, label=3)
        voxelizer.add_point([1.0, 2.0, 3.0])
        voxelizer.add_point([1.0, 2.0, 3.0])
        assert voxelizer.volume[(1, 2, 3)] == 3
        assert np.count_nonzero(voxelizer.volume.data) == 1

    def test_count_mode_increments(self):
        voxelizer = FiberVoxelizer(self.geometry, count_fibers=True)
        voxelizer.add_points([[1.0, 2.0, 3.0], [1.2, 1.9, 3.1]])
        assert voxelizer.volume[(1, 2, 3)] == 2

    def test_half_rounds_to_even(self):
        voxelizer = FiberVoxelizer(self.geometry)
        np.testing.assert_array_equal(voxelizer.voxel_index([2.5, 3.5, 0.5]), [2, 4, 0])
        voxelizer.add_point([2.5, 2.5, 2.5])
        voxelizer.add_point([3.5, 3.5, 3.5])
        assert voxelizer.volume[(2, 2, 2)] == 1
        assert voxelizer.volume[(4, 4, 4)] == 1
        assert voxelizer.volume[(3, 3, 3)] == 0

    def test_outside_points_skipped(self, caplog):
        caplog.set_level(logging.WARNING, logger="fiberprocess")
        voxelizer = FiberVoxelizer(self.geometry)
        written = voxelizer.add_points([[0, 0, 0], [6.0, 0, 0], [-0.6, 0, 0], [5.4, 5.4, 5.4]])

        assert written == 2
        assert voxelizer.n_skipped == 2
        assert voxelizer.volume[(5, 5, 5)] == 1
        messages = [r.getMessage() for r in caplog.records if "not in image" in r.getMessage()]
        assert len(messages) == 2

    def test_snap_inside_after_rounding(self):
        # -0.4 rounds to index 0, so the point is kept
        voxelizer = FiberVoxelizer(self.geometry)
        assert voxelizer.add_point([-0.4, 0.0, 0.0])
        assert voxelizer.volume[(0, 0, 0)] == 1

    def test_uses_geometry_of_reference(self):
        affine = np.diag([2.0, 2.0, 2.0, 1.0])
        affine[:3, 3] = [-4.0, 0.0, 0.0]
        tensors = TensorField.from_affine(np.zeros((4, 4, 4, 6)), affine)

        voxelizer = FiberVoxelizer(tensors.geometry)
        assert voxelizer.geometry == tensors.geometry
        np.testing.assert_allclose(voxelizer.volume.affine, affine)
        voxelizer.add_point([0.0, 2.0, 6.0])
        assert voxelizer.volume[(2, 1, 3)] == 1

    def test_volume_starts_empty(self):
        voxelizer = FiberVoxelizer(self.geometry)
        assert voxelizer.volume.data.dtype == np.int32
        assert voxelizer.volume.shape == (6, 6, 6)
        assert not voxelizer.volume.data.any()
