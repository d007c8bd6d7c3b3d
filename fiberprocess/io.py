"""
Readers and writers for fiber bundles, deformation fields, tensor volumes
and label volumes.

Fiber files go through ``nibabel.streamlines`` (.trk, .tck, ...), volumes
through NIfTI. Every failure of the underlying library is re-raised as
FiberIOError with the original exception chained.
"""

import os
import logging

import numpy as np
import nibabel as nib
from nibabel.streamlines import Field, Tractogram
from nibabel.streamlines.trk import MAX_NB_NAMED_SCALARS_PER_POINT

from .fibers import Fiber, FiberBundle, CoordinateSpace
from .fields import VectorField, TensorField
from .grid import VolumeGeometry
from .tensor_metrics import METRIC_NAMES
from .validation import FiberIOError, validate_field_image

logger = logging.getLogger(__name__)

DEFORMATION_KINDS = ("displacement", "hfield")

# Only TRK keeps data_per_point; other nibabel writers drop it
PER_POINT_FORMATS = (".trk",)

# Lower-triangular on-disk order (xx, xy, yy, xz, yz, zz), used by NIfTI
# SYMMATRIX intents and dipy, mapped to the internal (xx, xy, xz, yy, yz, zz)
LOWER_TO_UPPER = np.array([0, 1, 3, 2, 4, 5])

TENSOR_KEY = "tensor"
RADIUS_KEY = "radius"
COLORS_KEY = "colors"


def load_fiber_bundle(path):
    """
    Load a fiber bundle with nibabel.

    Streamlines are converted from RAS mm to continuous voxel indices of the
    file's reference grid, so the returned bundle is in INDEX space with the
    header's voxel-to-RAS matrix as its affine.

    Per-point data is mapped as follows: ``tensor`` (6 values) to fiber
    tensors, ``radius`` (1) to radii, ``colors`` (3) to colors and every other
    single-valued key to a named scalar field.
    """
    try:
        trk_obj = nib.streamlines.load(path)
    except Exception as exc:
        raise FiberIOError(f"Failed to load fiber file {path}: {exc}") from exc

    header = dict(trk_obj.header)
    affine = np.asarray(header.get(Field.VOXEL_TO_RASMM, np.eye(4)), dtype=np.float64)
    rasmm_to_vox = np.linalg.inv(affine)

    bundle = FiberBundle(affine=affine, space=CoordinateSpace.INDEX, header=header)
    spacing = bundle.spacing
    dropped = set()

    for i, item in enumerate(trk_obj.tractogram, start=1):
        points = np.asarray(item.streamline, dtype=np.float64)
        points = points @ rasmm_to_vox[:3, :3].T + rasmm_to_vox[:3, 3]

        kwargs = {"fields": {}}
        for key, values in item.data_for_points.items():
            values = np.asarray(values, dtype=np.float64).reshape(len(points), -1)
            if key == TENSOR_KEY and values.shape[1] == 6:
                kwargs["tensors"] = values
            elif key == RADIUS_KEY and values.shape[1] == 1:
                kwargs["radii"] = values[:, 0]
            elif key == COLORS_KEY and values.shape[1] == 3:
                kwargs["colors"] = values
            elif values.shape[1] == 1:
                kwargs["fields"][key] = values[:, 0]
            else:
                dropped.add(key)

        bundle.add_fiber(Fiber(id=i, points=points, spacing=spacing, **kwargs))

    if dropped:
        logger.warning("Ignoring unsupported per-point data: %s", ", ".join(sorted(dropped)))

    logger.info("Loaded %d fibers from %s", len(bundle), path)
    return bundle


def _common_field_names(fibers):
    names = set(fibers[0].fields)
    for fiber in fibers[1:]:
        names &= set(fiber.fields)
    ordered = [name for name in METRIC_NAMES if name in names]
    return ordered + sorted(names - set(ordered))


def per_point_names(fibers):
    """Keys ``save_fiber_bundle`` writes as per-point data for these fibers."""
    if not fibers:
        return []
    names = []
    if all(f.tensors is not None for f in fibers):
        names.append(TENSOR_KEY)
    if all(f.radii is not None for f in fibers):
        names.append(RADIUS_KEY)
    if all(f.colors is not None for f in fibers):
        names.append(COLORS_KEY)
    return names + _common_field_names(fibers)


def per_point_storage_error(path, names):
    """
    Why ``path`` cannot hold the per-point data ``names``, or None if it can.

    Only TRK stores per-point data, and at most
    ``MAX_NB_NAMED_SCALARS_PER_POINT`` named entries of it.
    """
    names = list(names)
    if not names:
        return None
    ext = os.path.splitext(str(path))[1].lower()
    if ext not in PER_POINT_FORMATS:
        return (
            f"Fiber output {path} cannot store per-point data ({', '.join(names)}); "
            f"use one of: {', '.join(PER_POINT_FORMATS)}"
        )
    if len(names) > MAX_NB_NAMED_SCALARS_PER_POINT:
        return (
            f"Fiber output {path} would need {len(names)} named per-point entries "
            f"({', '.join(names)}), TRK stores at most {MAX_NB_NAMED_SCALARS_PER_POINT}"
        )
    return None


def save_fiber_bundle(bundle, path, reference_header=None):
    """
    Write a fiber bundle with nibabel.

    Positions are written in RAS mm. Tensors, radii, colors and scalar fields
    are stored as per-point data when every fiber carries them. For .trk
    output, the header (reference grid) comes from ``reference_header`` or
    else from the header the bundle was read with.

    Raises FiberIOError rather than silently dropping per-point data the
    output format cannot hold.
    """
    fibers = bundle.fibers
    streamlines = [fiber.points.astype(np.float32) for fiber in fibers]

    names = per_point_names(fibers)
    error = per_point_storage_error(path, names)
    if error:
        raise FiberIOError(error)

    data_per_point = {}
    for name in names:
        if name == TENSOR_KEY:
            data_per_point[name] = [f.tensors.astype(np.float32) for f in fibers]
        elif name == RADIUS_KEY:
            data_per_point[name] = [f.radii[:, np.newaxis].astype(np.float32) for f in fibers]
        elif name == COLORS_KEY:
            data_per_point[name] = [f.colors.astype(np.float32) for f in fibers]
        else:
            data_per_point[name] = [f.fields[name][:, np.newaxis].astype(np.float32) for f in fibers]

    if bundle.space is CoordinateSpace.INDEX:
        affine_to_rasmm = bundle.affine
    else:
        affine_to_rasmm = np.eye(4)

    tractogram = Tractogram(
        streamlines,
        data_per_point=data_per_point or None,
        affine_to_rasmm=affine_to_rasmm,
    )

    header = None
    if os.path.splitext(str(path))[1].lower() == ".trk":
        source = reference_header if reference_header is not None else bundle.header
        required = (Field.VOXEL_TO_RASMM, Field.DIMENSIONS, Field.VOXEL_SIZES)
        if source is not None and all(key in source for key in required):
            header = {
                Field.VOXEL_TO_RASMM: np.asarray(source[Field.VOXEL_TO_RASMM], dtype=np.float32),
                Field.DIMENSIONS: np.asarray(source[Field.DIMENSIONS], dtype=np.int16),
                Field.VOXEL_SIZES: np.asarray(source[Field.VOXEL_SIZES], dtype=np.float32),
            }
            if Field.VOXEL_ORDER in source:
                header[Field.VOXEL_ORDER] = source[Field.VOXEL_ORDER]

    try:
        nib.streamlines.save(tractogram, str(path), header=header)
    except Exception as exc:
        raise FiberIOError(f"Failed to write fiber file {path}: {exc}") from exc

    logger.info("Saved %d fibers to %s", len(fibers), path)


def _load_components(path, n_components, file_type):
    validate_field_image(path, n_components, file_type)
    try:
        img = nib.load(path)
        data = np.asarray(img.get_fdata(), dtype=np.float64)
    except Exception as exc:
        raise FiberIOError(f"Failed to load {file_type} {path}: {exc}") from exc

    # ITK stores vector images as (X, Y, Z, 1, C)
    if data.ndim == 5:
        data = np.squeeze(data, 3)
    return data, img.affine


def grid_positions(geometry):
    """World position of every voxel center, shape (X, Y, Z, 3)."""
    grid = np.stack(np.meshgrid(*[np.arange(x) for x in geometry.shape], indexing='ij'), -1)
    return geometry.continuous_index_to_physical(grid.reshape(-1, 3)).reshape(geometry.shape + (3,))


def hfield_to_displacement(hfield, geometry):
    """Convert an absolute-position field (H-field) to a displacement field."""
    return np.asarray(hfield, dtype=np.float64) - grid_positions(geometry)


def load_deformation_field(path, kind="displacement", lps_to_ras=True):
    """
    Load a deformation field as a VectorField of world displacements.

    Parameters
    ----------
    path : str
        NIfTI vector image, (X, Y, Z, 3) or (X, Y, Z, 1, 3).
    kind : {'displacement', 'hfield'}
        Whether voxels hold displacements or absolute positions.
    lps_to_ras : bool
        Negate the first two vector components. ITK and ANTs write vectors
        in LPS while fibers and NIfTI affines are RAS.
    """
    if kind not in DEFORMATION_KINDS:
        raise ValueError(f"Unknown deformation field kind: {kind}")

    data, affine = _load_components(path, 3, "Deformation field")
    if lps_to_ras:
        data[..., :2] *= -1

    geometry = VolumeGeometry.from_affine(affine, data.shape[:3])
    if kind == "hfield":
        data = hfield_to_displacement(data, geometry)

    logger.info("Loaded %s field %s with shape %s", kind, path, geometry.shape)
    return VectorField(data, geometry)


def load_tensor_volume(path, component_order="lower"):
    """
    Load a tensor volume as a TensorField.

    Parameters
    ----------
    path : str
        NIfTI image with 6 components, (X, Y, Z, 6) or (X, Y, Z, 1, 6).
    component_order : {'lower', 'upper'}
        'lower' for the NIfTI/dipy order (xx, xy, yy, xz, yz, zz), 'upper'
        if the file already uses (xx, xy, xz, yy, yz, zz).
    """
    data, affine = _load_components(path, 6, "Tensor volume")
    if component_order == "lower":
        data = data[..., LOWER_TO_UPPER]
    elif component_order != "upper":
        raise ValueError(f"Unknown tensor component order: {component_order}")

    tensors = TensorField.from_affine(data, affine)
    logger.info("Loaded tensor volume %s with shape %s", path, tensors.shape)
    return tensors


def save_label_volume(volume, path):
    """Write a LabelVolume as an int32 NIfTI image on its own grid."""
    img = nib.Nifti1Image(volume.data.astype(np.int32), volume.affine)
    img.header.set_data_dtype(np.int32)
    img.header["descrip"] = b"fiber label map"
    try:
        nib.save(img, str(path))
    except Exception as exc:
        raise FiberIOError(f"Failed to write label volume {path}: {exc}") from exc
    logger.info("Saved label volume to %s", path)
