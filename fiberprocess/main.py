"""
Command-line entry point for fiberprocess.
"""

import sys
import argparse
import logging

from . import __version__
from .pipeline import FiberProcessConfig, run
from .validation import FiberProcessError, setup_logging

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="fiberprocess",
        description="Warp fiber bundles through a deformation field, attach tensor "
                    "data and rasterize them into a label volume.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Warp fibers with an ANTs displacement field
  fiberprocess fibers.trk --displacement-field warp.nii.gz -o warped.trk

  # Attach tensor metrics without moving the fibers
  fiberprocess fibers.trk -n -T dti.nii.gz -o with_tensors.trk

  # Count fiber points per voxel on the tensor grid
  fiberprocess fibers.trk -T dti.nii.gz -V density.nii.gz --voxelize-count-fibers
        """
    )

    parser.add_argument("fiber_file", help="Input fiber file (.trk, .tck, ...)")
    parser.add_argument("-o", "--fiber-output", dest="fiber_output", default=None,
                        help="Output fiber file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    warp_group = parser.add_argument_group("Deformation")
    warp_group.add_argument("-H", "--h-field", dest="h_field", default=None,
                            help="Deformation field holding absolute positions (H-field)")
    warp_group.add_argument("--displacement-field", dest="displacement_field", default=None,
                            help="Deformation field holding displacements")
    warp_group.add_argument("-n", "--no-warp", dest="no_warp", action="store_true",
                            help="Do not warp the fibers, only update their data")
    warp_group.add_argument("--ras-field", dest="ras_field", action="store_true",
                            help="Field vectors are already RAS (default assumes ITK/ANTs LPS)")

    tensor_group = parser.add_argument_group("Tensor data")
    tensor_group.add_argument("-T", "--tensor-volume", dest="tensor_volume", default=None,
                              help="Tensor volume to sample along the fibers")
    tensor_group.add_argument("--tensor-order", dest="tensor_order", choices=["lower", "upper"],
                              default="lower",
                              help="Component order of the tensor volume (default: lower, NIfTI/dipy)")
    tensor_group.add_argument("--no-data-change", dest="no_data_change", action="store_true",
                              help="Do not attach tensor data to the output fibers")

    voxel_group = parser.add_argument_group("Voxelization")
    voxel_group.add_argument("-V", "--voxelize", dest="voxelize", default=None,
                             help="Write a label volume on the tensor volume grid")
    voxel_group.add_argument("--voxelize-count-fibers", dest="voxelize_count_fibers",
                             action="store_true",
                             help="Count fiber points per voxel instead of writing a label")
    voxel_group.add_argument("-l", "--voxel-label", dest="voxel_label", type=int, default=1,
                             help="Label written into fiber voxels (default: 1)")

    parser.add_argument("--jobs", type=int, default=1,
                        help="Number of parallel jobs (-1 for all CPUs).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def main(argv=None):
    """Main entry point for the fiberprocess console script."""
    args = build_parser().parse_args(argv)
    setup_logging("INFO" if args.verbose else "WARNING")

    try:
        config = FiberProcessConfig.from_args(args)
        result = run(config)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130
    except FiberProcessError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    logger.info("Processed %d fibers", len(result.bundle))
    return 0


if __name__ == "__main__":
    sys.exit(main())
