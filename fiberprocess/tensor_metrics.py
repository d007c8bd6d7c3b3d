"""
Scalar metrics of symmetric diffusion tensors.

Tensors are stored as 6 independent components in the fixed slot order
(xx, xy, xz, yy, yz, zz). Every function accepts a single tensor of shape
(6,) or a batch of shape (N, 6).
"""

import numpy as np
from dipy.reconst.dti import fractional_anisotropy as _dipy_fa

METRIC_NAMES = ("fa", "md", "fro", "l1", "l2", "l3")

# Positions of the 6 slots in a row-major 3x3 matrix, upper triangle
_UPPER_ROWS = np.array([0, 0, 0, 1, 1, 2])
_UPPER_COLS = np.array([0, 1, 2, 1, 2, 2])


def _as_tensors(tensor):
    tensor = np.asarray(tensor, dtype=np.float64)
    if tensor.shape[-1] != 6:
        raise ValueError(f"tensors must have 6 components, got shape {tensor.shape}")
    return tensor


def tensor_to_matrix(tensor):
    """Expand 6-slot tensors to symmetric 3x3 matrices."""
    tensor = _as_tensors(tensor)
    matrix = np.zeros(tensor.shape[:-1] + (3, 3), dtype=np.float64)
    matrix[..., _UPPER_ROWS, _UPPER_COLS] = tensor
    matrix[..., _UPPER_COLS, _UPPER_ROWS] = tensor
    return matrix


def matrix_to_tensor(matrix):
    """Pack symmetric 3x3 matrices into the 6-slot layout."""
    matrix = np.asarray(matrix, dtype=np.float64)
    return matrix[..., _UPPER_ROWS, _UPPER_COLS]


def eigenvalues(tensor):
    """Eigenvalues of each tensor, sorted ascending (smallest first)."""
    return np.linalg.eigvalsh(tensor_to_matrix(tensor))


def fractional_anisotropy(tensor):
    """
    Fractional anisotropy from the tensor eigenvalues.

    0 for isotropic tensors, approaching 1 for strongly anisotropic ones.
    An all-zero tensor has FA 0.
    """
    return _dipy_fa(eigenvalues(tensor))


def mean_diffusivity(tensor):
    """Trace / 3."""
    tensor = _as_tensors(tensor)
    return (tensor[..., 0] + tensor[..., 3] + tensor[..., 5]) / 3.0


def frobenius_norm(tensor):
    """
    Frobenius norm of the full symmetric matrix.

    Off-diagonal slots count twice: sqrt(xx² + 2xy² + 2xz² + yy² + 2yz² + zz²).
    """
    tensor = _as_tensors(tensor)
    xx, xy, xz, yy, yz, zz = np.moveaxis(tensor, -1, 0)
    return np.sqrt(xx ** 2 + 2 * xy ** 2 + 2 * xz ** 2 + yy ** 2 + 2 * yz ** 2 + zz ** 2)


def compute_tensor_metrics(tensor):
    """
    All per-point metrics attached to fibers.

    Returns
    -------
    dict
        Keys ``fa``, ``md``, ``fro``, ``l1``, ``l2``, ``l3``. Eigenvalues are
        ascending: ``l1 <= l2 <= l3``. Values are floats for a single tensor
        and arrays of shape (N,) for a batch. Tensors with a NaN or infinite
        component get NaN for every metric.
    """
    tensor = _as_tensors(tensor)
    batch = np.atleast_2d(tensor)
    finite = np.all(np.isfinite(batch), axis=-1)

    metrics = {name: np.full(len(batch), np.nan) for name in METRIC_NAMES}
    if np.any(finite):
        valid = batch[finite]
        evals = eigenvalues(valid)
        metrics["fa"][finite] = _dipy_fa(evals)
        metrics["md"][finite] = mean_diffusivity(valid)
        metrics["fro"][finite] = frobenius_norm(valid)
        metrics["l1"][finite] = evals[:, 0]
        metrics["l2"][finite] = evals[:, 1]
        metrics["l3"][finite] = evals[:, 2]

    if tensor.ndim == 1:
        return {name: float(values[0]) for name, values in metrics.items()}
    return metrics
