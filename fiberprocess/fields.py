"""
Volume containers used by the pipeline: deformation fields, tensor volumes
and label volumes.
"""

import threading

import numpy as np

from .grid import VolumeGeometry
from .interpolation import trilinear_interpolate


class _SampledField:
    """Read-only regular grid of per-voxel values with world-space sampling."""

    n_components = None

    def __init__(self, data, geometry):
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 4 or data.shape[3] != self.n_components:
            raise ValueError(
                f"{type(self).__name__} data must have shape (X, Y, Z, {self.n_components}), "
                f"got {data.shape}"
            )
        if tuple(data.shape[:3]) != geometry.shape:
            raise ValueError(
                f"Data shape {data.shape[:3]} does not match geometry shape {geometry.shape}"
            )
        data = np.ascontiguousarray(data)
        data.flags.writeable = False
        self.data = data
        self.geometry = geometry

    @classmethod
    def from_affine(cls, data, affine):
        data = np.asarray(data)
        return cls(data, VolumeGeometry.from_affine(affine, data.shape[:3]))

    @property
    def shape(self):
        return self.geometry.shape

    def sample(self, points):
        """
        Interpolate the field at world points.

        Returns ``(values, inside)`` where ``inside`` is the boolean mask of
        points that fell within the grid. Rows of ``values`` for outside
        points are NaN; callers decide how to treat them.
        """
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        indices = self.geometry.physical_to_continuous_index(points)
        inside = np.atleast_1d(self.geometry.is_inside(indices))

        values = np.full((len(points), self.n_components), np.nan, dtype=np.float64)
        if np.any(inside):
            values[inside] = trilinear_interpolate(self.data, indices[inside])
        return values, inside


class VectorField(_SampledField):
    """Deformation field: one physical displacement vector (mm) per voxel."""

    n_components = 3


class TensorField(_SampledField):
    """Tensor volume: one symmetric tensor per voxel, slots (xx, xy, xz, yy, yz, zz)."""

    n_components = 6


class LabelVolume:
    """
    Integer label map sharing the geometry of a reference volume.

    All cells start at zero. Cell writes go through ``increment``/``assign``,
    which hold a lock so concurrent writers are serialised.
    """

    def __init__(self, geometry, dtype=np.int32):
        self.geometry = geometry
        self.data = np.zeros(geometry.shape, dtype=dtype)
        self._lock = threading.Lock()

    @property
    def shape(self):
        return self.geometry.shape

    @property
    def affine(self):
        return self.geometry.affine

    def __getitem__(self, index):
        return self.data[tuple(index)]

    def increment(self, index, amount=1):
        with self._lock:
            self.data[tuple(index)] += amount

    def assign(self, index, label):
        with self._lock:
            self.data[tuple(index)] = label
