"""
Grid addressing for regularly sampled volumes.

Converts between world (RAS mm) coordinates, continuous voxel indices and
discrete voxel indices given a volume's origin, spacing and direction.
"""

import numpy as np


class VolumeGeometry:
    """
    Geometry of a regular 3D grid.

    Parameters
    ----------
    shape : tuple of int
        Number of voxels along each axis (x, y, z).
    origin : array-like
        World position of voxel (0, 0, 0) in mm.
    spacing : array-like
        Voxel size along each axis in mm. Must be strictly positive.
    direction : array-like, optional
        3x3 matrix whose columns are the unit direction cosines of the grid
        axes. Identity if omitted.
    """

    def __init__(self, shape, origin=(0.0, 0.0, 0.0), spacing=(1.0, 1.0, 1.0), direction=None):
        if len(shape) != 3:
            raise ValueError(f"shape must have 3 elements, got {shape}")
        self.shape = tuple(int(s) for s in shape)
        if any(s <= 0 for s in self.shape):
            raise ValueError(f"shape must be positive on each axis, got {self.shape}")

        self.origin = np.asarray(origin, dtype=np.float64).reshape(3)
        self.spacing = np.asarray(spacing, dtype=np.float64).reshape(3)
        if np.any(self.spacing <= 0):
            raise ValueError(f"spacing must be strictly positive, got {self.spacing}")

        if direction is None:
            direction = np.eye(3)
        self.direction = np.asarray(direction, dtype=np.float64).reshape(3, 3)
        if abs(np.linalg.det(self.direction)) < 1e-10:
            raise ValueError("direction matrix is singular")

        self._index_to_world = self.direction @ np.diag(self.spacing)
        self._world_to_index = np.linalg.inv(self._index_to_world)

    @classmethod
    def from_affine(cls, affine, shape):
        """
        Build a geometry from a 4x4 voxel-to-world affine (nibabel convention).

        The spacing is the column norm of the rotation/scale block and the
        direction is that block with its columns normalised.
        """
        affine = np.asarray(affine, dtype=np.float64)
        if affine.shape != (4, 4):
            raise ValueError(f"affine must be 4x4, got shape {affine.shape}")

        R = affine[:3, :3]
        spacing = np.sqrt(np.sum(R ** 2, axis=0))
        if np.any(spacing < 1e-10):
            raise ValueError(f"Degenerate affine matrix: voxel sizes {spacing} too small")

        return cls(shape[:3], origin=affine[:3, 3], spacing=spacing, direction=R / spacing)

    @property
    def affine(self):
        """4x4 voxel-to-world matrix."""
        A = np.eye(4, dtype=np.float64)
        A[:3, :3] = self._index_to_world
        A[:3, 3] = self.origin
        return A

    def physical_to_continuous_index(self, points):
        """Map world points, shape (3,) or (N, 3), to continuous indices."""
        points = np.asarray(points, dtype=np.float64)
        return (points - self.origin) @ self._world_to_index.T

    def continuous_index_to_physical(self, indices):
        """Map continuous indices, shape (3,) or (N, 3), to world points."""
        indices = np.asarray(indices, dtype=np.float64)
        return indices @ self._index_to_world.T + self.origin

    def is_inside(self, indices):
        """
        Bounds predicate for continuous indices.

        Returns a bool for a single index or a boolean mask for (N, 3) input.
        An index is inside iff every coordinate lies in [0, size - 1].
        """
        indices = np.asarray(indices, dtype=np.float64)
        upper = np.asarray(self.shape, dtype=np.float64) - 1
        inside = np.all((indices >= 0) & (indices <= upper), axis=-1)
        if inside.ndim == 0:
            return bool(inside)
        return inside

    def is_inside_index(self, indices):
        """Bounds predicate for discrete voxel indices."""
        return self.is_inside(np.asarray(indices, dtype=np.int64))

    def __eq__(self, other):
        if not isinstance(other, VolumeGeometry):
            return NotImplemented
        return (
            self.shape == other.shape
            and np.allclose(self.origin, other.origin)
            and np.allclose(self.spacing, other.spacing)
            and np.allclose(self.direction, other.direction)
        )

    def __repr__(self):
        return (
            f"VolumeGeometry(shape={self.shape}, origin={self.origin.tolist()}, "
            f"spacing={self.spacing.tolist()})"
        )


def round_half_to_even(indices):
    """
    Snap continuous indices to voxel indices, breaking .5 ties toward even.

    ``np.rint`` implements banker's rounding, so 2.5 -> 2 and 3.5 -> 4.
    """
    return np.rint(np.asarray(indices, dtype=np.float64)).astype(np.int64)
