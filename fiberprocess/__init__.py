"""
Fiber Processing Package

Warp tractography fiber bundles through deformation fields, sample diffusion
tensor volumes along the fibers and rasterize fibers into label volumes.
"""

from .grid import VolumeGeometry, round_half_to_even
from .interpolation import trilinear_interpolate, trilinear_weights, OutOfBoundsError
from .fields import VectorField, TensorField, LabelVolume
from .tensor_metrics import (
    compute_tensor_metrics,
    eigenvalues,
    fractional_anisotropy,
    mean_diffusivity,
    frobenius_norm
)
from .fibers import (
    CoordinateSpace,
    ObjectKind,
    FiberPoint,
    Fiber,
    GeometryObject,
    FiberBundle
)
from .warp import FiberWarper, WarpedFiber
from .voxelize import FiberVoxelizer
from .io import (
    load_fiber_bundle,
    save_fiber_bundle,
    load_deformation_field,
    load_tensor_volume,
    save_label_volume
)
from .pipeline import FiberProcessConfig, ProcessResult, process_bundle, run
from .validation import (
    FiberProcessError,
    ConfigurationError,
    FiberIOError,
    ValidationError,
    setup_logging
)

__version__ = "1.0.0"
__author__ = "LINC Team"
__license__ = "MIT"

__all__ = [
    # Geometry and sampling
    'VolumeGeometry',
    'round_half_to_even',
    'trilinear_interpolate',
    'trilinear_weights',
    'OutOfBoundsError',
    'VectorField',
    'TensorField',
    'LabelVolume',

    # Tensor metrics
    'compute_tensor_metrics',
    'eigenvalues',
    'fractional_anisotropy',
    'mean_diffusivity',
    'frobenius_norm',

    # Fiber model
    'CoordinateSpace',
    'ObjectKind',
    'FiberPoint',
    'Fiber',
    'GeometryObject',
    'FiberBundle',

    # Processing
    'FiberWarper',
    'WarpedFiber',
    'FiberVoxelizer',
    'FiberProcessConfig',
    'ProcessResult',
    'process_bundle',
    'run',

    # File I/O
    'load_fiber_bundle',
    'save_fiber_bundle',
    'load_deformation_field',
    'load_tensor_volume',
    'save_label_volume',

    # Errors and logging
    'FiberProcessError',
    'ConfigurationError',
    'FiberIOError',
    'ValidationError',
    'setup_logging'
]
