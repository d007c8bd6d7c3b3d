#!/usr/bin/env python
"""
Error types, logging setup and input validation for the fiber processing pipeline
"""

import os
import logging
import warnings
from typing import Tuple, Dict, Any, Optional

import numpy as np
import nibabel as nib


class FiberProcessError(Exception):
    """Base class for all fiberprocess errors."""
    pass


class ConfigurationError(FiberProcessError):
    """Raised when the requested processing modes are missing required inputs."""
    pass


class FiberIOError(FiberProcessError):
    """Raised when a fiber or volume file cannot be read or written."""
    pass


class ValidationError(FiberProcessError):
    """Custom exception for validation errors."""
    pass


class ValidationWarning(UserWarning):
    """Custom warning for validation issues that don't require stopping."""
    pass


def setup_logging(log_level: str = 'WARNING') -> logging.Logger:
    """Set up logging for the pipeline and return the package logger."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger = logging.getLogger('fiberprocess')
    logger.setLevel(getattr(logging, log_level.upper()))
    return logger


def validate_file_exists(file_path: Optional[str], file_type: str = "file") -> str:
    """
    Validate that a file exists and is accessible.

    Args:
        file_path: Path to the file
        file_type: Type of file for error messages

    Returns:
        Absolute path to the file

    Raises:
        ValidationError: If file doesn't exist or isn't accessible
    """
    if not file_path:
        raise ValidationError(f"{file_type} path cannot be empty")

    abs_path = os.path.abspath(file_path)

    if not os.path.exists(abs_path):
        raise ValidationError(f"{file_type} not found: {abs_path}")

    if not os.path.isfile(abs_path):
        raise ValidationError(f"Path is not a file: {abs_path}")

    if not os.access(abs_path, os.R_OK):
        raise ValidationError(f"{file_type} is not readable: {abs_path}")

    return abs_path


def validate_output_path(file_path: str, create_if_missing: bool = True) -> str:
    """
    Validate that the directory of an output file exists and is writable.

    Args:
        file_path: Path of the file that will be written
        create_if_missing: Whether to create the parent directory if it doesn't exist

    Returns:
        Absolute path to the output file

    Raises:
        ValidationError: If directory issues cannot be resolved
    """
    if not file_path:
        raise ValidationError("Output path cannot be empty")

    abs_path = os.path.abspath(file_path)
    dir_path = os.path.dirname(abs_path)

    if not os.path.exists(dir_path):
        if create_if_missing:
            try:
                os.makedirs(dir_path, exist_ok=True)
            except OSError as e:
                raise ValidationError(f"Cannot create directory {dir_path}: {e}")
        else:
            raise ValidationError(f"Directory not found: {dir_path}")

    if not os.path.isdir(dir_path):
        raise ValidationError(f"Path is not a directory: {dir_path}")

    if not os.access(dir_path, os.W_OK):
        raise ValidationError(f"Directory is not writable: {dir_path}")

    return abs_path


def validate_field_image(
    nifti_path: str,
    n_components: int,
    file_type: str = "NIfTI file"
) -> Tuple[str, Dict[str, Any]]:
    """
    Validate a vector- or tensor-valued NIfTI image and extract its metadata.

    The trailing axis must hold ``n_components`` values, either as
    ``(X, Y, Z, n)`` or in the ITK layout ``(X, Y, Z, 1, n)``.

    Args:
        nifti_path: Path to NIfTI file
        n_components: Expected number of components per voxel (3 or 6)
        file_type: Type of file for error messages

    Returns:
        Tuple of (validated_path, metadata_dict)

    Raises:
        ValidationError: If the image is not a usable field
    """
    validated_path = validate_file_exists(nifti_path, file_type)

    try:
        img = nib.load(validated_path)
    except Exception as e:
        raise ValidationError(f"Failed to load {file_type} {validated_path}: {e}")

    shape = img.shape
    metadata = {
        'shape': shape,
        'ndim': len(shape),
        'voxel_sizes': img.header.get_zooms()[:3],
        'data_type': img.get_data_dtype(),
        'affine': img.affine,
        'orientation': nib.orientations.ornt2axcodes(
            nib.orientations.io_orientation(img.affine)
        ),
    }

    if len(shape) == 4:
        components = shape[3]
    elif len(shape) == 5 and shape[3] == 1:
        components = shape[4]
    else:
        raise ValidationError(
            f"{file_type} must have shape (X, Y, Z, {n_components}) or "
            f"(X, Y, Z, 1, {n_components}), got {shape}"
        )

    if components != n_components:
        raise ValidationError(
            f"{file_type} must have {n_components} components per voxel, got {components}"
        )

    voxel_sizes = metadata['voxel_sizes']
    if any(vs <= 0 for vs in voxel_sizes):
        raise ValidationError(f"Invalid voxel sizes: {voxel_sizes}")

    if abs(np.linalg.det(img.affine[:3, :3])) < 1e-12:
        raise ValidationError(f"Degenerate affine in {file_type}: {validated_path}")

    if any(vs > 10.0 for vs in voxel_sizes):  # > 10mm seems unrealistic
        warnings.warn(f"Large voxel sizes detected: {voxel_sizes} mm", ValidationWarning)

    return validated_path, metadata
