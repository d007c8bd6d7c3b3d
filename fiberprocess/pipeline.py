"""
Pipeline orchestration: configuration, the per-fiber processing loop and
the load -> process -> write sequence used by the command line.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from joblib import Parallel, delayed
from tqdm import tqdm

from .fibers import Fiber, FiberBundle
from .fields import LabelVolume
from .io import (
    RADIUS_KEY,
    TENSOR_KEY,
    load_fiber_bundle,
    load_deformation_field,
    load_tensor_volume,
    save_fiber_bundle,
    save_label_volume,
    per_point_names,
    per_point_storage_error,
)
from .tensor_metrics import METRIC_NAMES
from .validation import ConfigurationError, validate_file_exists, validate_output_path
from .voxelize import FiberVoxelizer
from .warp import FiberWarper

logger = logging.getLogger(__name__)


@dataclass
class FiberProcessConfig:
    """
    Validated configuration of one run.

    Attributes:
        fiber_input: Input fiber file.
        fiber_output: Output fiber file; tensor data is only attached when set.
        h_field: Deformation field holding absolute positions.
        displacement_field: Deformation field holding displacements.
        tensor_volume: Tensor volume to sample metrics from.
        no_warp: Keep original positions, only update data.
        no_data_change: Never attach tensor data.
        voxelize: Output label map path.
        voxelize_count_fibers: Count hits per voxel instead of writing a label.
        voxel_label: Label written in overwrite mode.
        tensor_point_radius: Radius given to points that receive tensor data.
        field_in_lps: Deformation vectors are stored in LPS (ITK/ANTs).
        tensor_component_order: 'lower' or 'upper' on-disk tensor order.
        n_jobs: Fibers warped in parallel (-1 for all CPUs).
        verbose: Log progress at INFO level and show a progress bar.
    """

    fiber_input: Optional[str] = None
    fiber_output: Optional[str] = None
    h_field: Optional[str] = None
    displacement_field: Optional[str] = None
    tensor_volume: Optional[str] = None
    no_warp: bool = False
    no_data_change: bool = False
    voxelize: Optional[str] = None
    voxelize_count_fibers: bool = False
    voxel_label: int = 1
    tensor_point_radius: float = 0.5
    field_in_lps: bool = True
    tensor_component_order: str = "lower"
    n_jobs: int = 1
    verbose: bool = False

    @property
    def deformation_path(self) -> Optional[str]:
        return self.h_field or self.displacement_field

    @property
    def deformation_kind(self) -> str:
        return "hfield" if self.h_field else "displacement"

    def validate(self) -> "FiberProcessConfig":
        """Check mode preconditions; raises ConfigurationError."""
        if not self.fiber_input:
            raise ConfigurationError("A fiber file has to be specified")
        if self.voxelize and not self.tensor_volume:
            raise ConfigurationError(
                "Must specify tensor file to copy image metadata for fiber voxelize"
            )
        if self.h_field and self.displacement_field:
            raise ConfigurationError("Specify either an h-field or a displacement field, not both")
        if self.tensor_component_order not in ("lower", "upper"):
            raise ConfigurationError(f"Unknown tensor component order: {self.tensor_component_order}")
        if self.n_jobs == 0 or self.n_jobs < -1:
            raise ConfigurationError(f"n_jobs must be positive or -1, got {self.n_jobs}")
        if self.fiber_output and self.tensor_volume and not self.no_data_change:
            error = per_point_storage_error(
                self.fiber_output, [TENSOR_KEY, RADIUS_KEY] + list(METRIC_NAMES)
            )
            if error:
                raise ConfigurationError(error)
        return self

    @classmethod
    def from_args(cls, args) -> "FiberProcessConfig":
        """Build a configuration from parsed command-line arguments."""
        return cls(
            fiber_input=args.fiber_file,
            fiber_output=args.fiber_output,
            h_field=args.h_field,
            displacement_field=args.displacement_field,
            tensor_volume=args.tensor_volume,
            no_warp=args.no_warp,
            no_data_change=args.no_data_change,
            voxelize=args.voxelize,
            voxelize_count_fibers=args.voxelize_count_fibers,
            voxel_label=args.voxel_label,
            field_in_lps=not args.ras_field,
            tensor_component_order=args.tensor_order,
            n_jobs=args.jobs,
            verbose=args.verbose,
        )


@dataclass
class ProcessResult:
    """Outputs of process_bundle."""

    bundle: FiberBundle
    label_volume: Optional[LabelVolume] = None
    n_outside_deformation: int = 0
    n_outside_tensor: int = 0
    n_invalid_tensor: int = 0
    n_voxels_skipped: int = 0


def process_bundle(bundle, deformation=None, tensor_field=None, config=None):
    """
    Warp, resample and optionally voxelize every fiber of a bundle.

    The same warped world points feed both the rebuilt fiber and the
    voxelizer. Fibers may be warped in parallel (``config.n_jobs``), but
    voxelization is applied afterwards in fiber order from this thread only.

    Parameters
    ----------
    bundle : FiberBundle
        Input bundle; not modified.
    deformation : VectorField, optional
    tensor_field : TensorField, optional
    config : FiberProcessConfig, optional
        Mode flags. ``config.voxelize`` requests a label volume and
        ``config.fiber_output`` requests tensor data on the output fibers.

    Returns
    -------
    ProcessResult

    Raises
    ------
    ConfigurationError
        If voxelization is requested without a tensor volume.
    """
    if config is None:
        config = FiberProcessConfig()
    if config.voxelize and tensor_field is None:
        raise ConfigurationError(
            "Must specify tensor file to copy image metadata for fiber voxelize"
        )

    warper = FiberWarper(
        deformation=deformation,
        tensor_field=tensor_field,
        no_warp=config.no_warp,
        no_data_change=config.no_data_change,
        attach_tensor_data=bool(config.fiber_output),
        tensor_point_radius=config.tensor_point_radius,
    )

    voxelizer = None
    if config.voxelize:
        voxelizer = FiberVoxelizer(
            tensor_field.geometry,
            label=config.voxel_label,
            count_fibers=config.voxelize_count_fibers,
        )

    for obj in bundle.objects:
        if not isinstance(obj, Fiber):
            logger.warning("Skipping unsupported spatial object %s of kind '%s'", obj.id, obj.kind.value)

    output = warper.output_bundle(bundle)
    spacing = output.spacing
    fibers = tqdm(bundle.fibers, desc="Processing fibers", unit="fiber", disable=not config.verbose)

    logger.info("Starting loop")
    if config.n_jobs == 1:
        results = (
            warper.warp_fiber(fiber, bundle.to_world, new_id, spacing)
            for new_id, fiber in enumerate(fibers, start=1)
        )
    else:
        # Fields are read-only, so threads share them without copies
        results = Parallel(n_jobs=config.n_jobs, prefer="threads")(
            delayed(warper.warp_fiber)(fiber, bundle.to_world, new_id, spacing)
            for new_id, fiber in enumerate(fibers, start=1)
        )

    result = ProcessResult(bundle=output)
    for warped in results:
        if voxelizer is not None:
            voxelizer.add_points(warped.world_points)
        output.add_fiber(warped.fiber)
        result.n_outside_deformation += warped.n_outside_deformation
        result.n_outside_tensor += warped.n_outside_tensor
        result.n_invalid_tensor += warped.n_invalid_tensor
    logger.info("Ending loop")

    if voxelizer is not None:
        result.label_volume = voxelizer.volume
        result.n_voxels_skipped = voxelizer.n_skipped

    if result.n_outside_deformation:
        logger.info("%d points were outside the deformation field", result.n_outside_deformation)
    if result.n_voxels_skipped:
        logger.info("%d points were outside the label volume", result.n_voxels_skipped)

    return result


def _output_point_names(bundle, config):
    """Per-point keys the output fibers will carry."""
    names = per_point_names(bundle.fibers)
    if config.tensor_volume and not config.no_data_change:
        names += [TENSOR_KEY, RADIUS_KEY] + list(METRIC_NAMES)
    return list(dict.fromkeys(names))


def run(config):
    """
    Execute a full run: validate, load inputs, process, write outputs.

    Nothing is written, and no output directory created, unless every input
    loaded and processing finished.

    Returns
    -------
    ProcessResult
    """
    config.validate()

    validate_file_exists(config.fiber_input, "Fiber file")
    if config.deformation_path:
        validate_file_exists(config.deformation_path, "Deformation field")
    if config.tensor_volume:
        validate_file_exists(config.tensor_volume, "Tensor volume")

    bundle = load_fiber_bundle(config.fiber_input)

    if config.fiber_output:
        error = per_point_storage_error(config.fiber_output, _output_point_names(bundle, config))
        if error:
            raise ConfigurationError(error)

    deformation = None
    if config.deformation_path:
        deformation = load_deformation_field(
            config.deformation_path,
            kind=config.deformation_kind,
            lps_to_ras=config.field_in_lps,
        )

    tensor_field = None
    if config.tensor_volume:
        tensor_field = load_tensor_volume(
            config.tensor_volume, component_order=config.tensor_component_order
        )

    logger.info("Group Spacing: %s", ", ".join(f"{s:g}" for s in bundle.spacing))
    logger.info("Group Offset: %s", ", ".join(f"{o:g}" for o in bundle.offset))
    if deformation is not None:
        logger.info("Deformation field: '%s' (%s)", config.deformation_path, config.deformation_kind)

    result = process_bundle(bundle, deformation, tensor_field, config)

    if config.fiber_output:
        logger.info("Output: %s", config.fiber_output)
        validate_output_path(config.fiber_output)
        save_fiber_bundle(result.bundle, config.fiber_output, reference_header=bundle.header)

    if config.voxelize:
        validate_output_path(config.voxelize)
        save_label_volume(result.label_volume, config.voxelize)

    return result
