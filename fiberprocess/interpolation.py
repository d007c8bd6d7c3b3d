"""
Trilinear sampling of vector- and tensor-valued fields at continuous indices.
"""

import itertools

import numpy as np
from scipy.ndimage import map_coordinates

from .validation import FiberProcessError


class OutOfBoundsError(FiberProcessError):
    """Raised when a field is sampled outside its grid."""
    pass


# Offsets of the 8 lattice cells enclosing a continuous index, x varying slowest
CORNER_OFFSETS = np.array(list(itertools.product((0, 1), repeat=3)), dtype=np.int64)


def trilinear_weights(fractions):
    """
    Blending weights of the 8 enclosing lattice cells.

    Parameters
    ----------
    fractions : array-like
        Fractional offsets inside the cell, shape (3,) or (N, 3), in [0, 1].

    Returns
    -------
    numpy.ndarray
        Weights of shape (8,) or (N, 8), ordered like ``CORNER_OFFSETS``.
        They sum to one.
    """
    fractions = np.asarray(fractions, dtype=np.float64)
    f = fractions[..., np.newaxis, :]
    per_axis = np.where(CORNER_OFFSETS == 1, f, 1.0 - f)
    return np.prod(per_axis, axis=-1)


def _check_inside(shape, indices):
    upper = np.asarray(shape[:3], dtype=np.float64) - 1
    inside = np.all((indices >= 0) & (indices <= upper), axis=1)
    if not np.all(inside):
        first = indices[np.argmin(inside)]
        raise OutOfBoundsError(
            f"Continuous index {first.tolist()} is outside grid of shape {tuple(shape[:3])}"
        )


def trilinear_interpolate(data, indices):
    """
    Interpolate a field at continuous indices.

    Every trailing component (3 for displacement vectors, 6 for tensors) is
    blended independently from the 8 enclosing lattice cells, so tensors are
    interpolated componentwise on their raw entries.

    Parameters
    ----------
    data : numpy.ndarray
        Field of shape (X, Y, Z) or (X, Y, Z, ...).
    indices : array-like
        Continuous indices, shape (3,) or (N, 3). Must lie inside the grid.

    Returns
    -------
    numpy.ndarray
        Interpolated values of shape ``data.shape[3:]`` for a single index or
        ``(N,) + data.shape[3:]`` for N indices.

    Raises
    ------
    OutOfBoundsError
        If any index lies outside [0, size - 1] on some axis.
    """
    indices = np.asarray(indices, dtype=np.float64)
    single = indices.ndim == 1
    indices = np.atleast_2d(indices)
    if indices.shape[-1] != 3:
        raise ValueError(f"indices must have 3 coordinates, got shape {indices.shape}")

    _check_inside(data.shape, indices)

    component_shape = data.shape[3:]
    flat = data.reshape(data.shape[:3] + (-1,))
    coords = indices.T

    # order=1 spline evaluation is exactly the 8-cell trilinear blend; 'nearest'
    # only matters for indices lying on the last lattice plane
    values = np.stack([
        map_coordinates(flat[..., c], coords, output=np.float64, order=1, mode='nearest')
        for c in range(flat.shape[-1])
    ], axis=-1)

    values = values.reshape((len(indices),) + component_shape)
    if single:
        return values[0]
    return values
