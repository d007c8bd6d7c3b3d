"""
Fiber warp engine.

Maps every fiber point through a deformation field (physical-space
displacement added to the world position), then optionally resamples a
tensor volume at the warped location and attaches the tensor and its
metrics to the rebuilt point. The input bundle is never modified.
"""

import logging
from dataclasses import dataclass

import numpy as np

from .fibers import Fiber, FiberBundle, CoordinateSpace
from .tensor_metrics import compute_tensor_metrics

logger = logging.getLogger(__name__)


@dataclass
class WarpedFiber:
    """A rebuilt fiber plus the world points it was built from."""

    fiber: Fiber
    world_points: np.ndarray
    n_outside_deformation: int = 0
    n_outside_tensor: int = 0
    n_invalid_tensor: int = 0


class FiberWarper:
    """
    Rebuild fibers with deformation-corrected positions and tensor data.

    Parameters
    ----------
    deformation : VectorField, optional
        Displacement field in world (RAS mm) units. Without one, positions
        pass through unchanged.
    tensor_field : TensorField, optional
        Tensor volume sampled at the (possibly warped) points.
    no_warp : bool
        Skip displacement entirely; output positions are the input positions
        and tensor sampling uses the unwarped world location.
    no_data_change : bool
        Never attach tensor data; copy tensors and fields through.
    attach_tensor_data : bool
        Whether an output bundle was requested. Tensor data is only sampled
        when this is set.
    tensor_point_radius : float
        Radius given to points that receive tensor data.
    """

    def __init__(self, deformation=None, tensor_field=None, no_warp=False,
                 no_data_change=False, attach_tensor_data=True, tensor_point_radius=0.5):
        self.deformation = deformation
        self.tensor_field = tensor_field
        self.no_warp = bool(no_warp) or deformation is None
        self.no_data_change = no_data_change
        self.attach_tensor_data = attach_tensor_data
        self.tensor_point_radius = tensor_point_radius

    @property
    def samples_tensors(self):
        return (
            self.tensor_field is not None
            and self.attach_tensor_data
            and not self.no_data_change
        )

    def output_bundle(self, bundle):
        """Empty bundle carrying the frame the warped fibers will live in."""
        if self.no_warp:
            return FiberBundle(affine=bundle.affine.copy(), space=bundle.space, header=bundle.header)
        return FiberBundle(affine=np.eye(4), space=CoordinateSpace.WORLD, header=bundle.header)

    def displace(self, world_points):
        """
        Apply the deformation field to world points.

        Points outside the field keep their original position and produce one
        warning each.

        Returns
        -------
        tuple
            (warped world points, number of points outside the field)
        """
        world_points = np.asarray(world_points, dtype=np.float64).reshape(-1, 3)
        if self.no_warp or len(world_points) == 0:
            return world_points.copy(), 0

        displacement, inside = self.deformation.sample(world_points)
        warped = world_points.copy()
        warped[inside] += displacement[inside]

        for point in world_points[~inside]:
            logger.warning(
                "Fiber point %s is outside deformation field image. Deformation field "
                "has to be in the fiber space. Original position will be used",
                np.array2string(point, precision=3),
            )
        return warped, int(np.count_nonzero(~inside))

    def _attach_tensor_data(self, world_points, fields):
        tensors, inside = self.tensor_field.sample(world_points)
        invalid = inside & ~np.all(np.isfinite(tensors), axis=1)

        for point in world_points[~inside]:
            logger.warning(
                "Fiber point %s is outside tensor volume, tensor data set to NaN",
                np.array2string(point, precision=3),
            )
        for point in world_points[invalid]:
            logger.warning(
                "Fiber point %s samples a non-finite tensor, metrics set to NaN",
                np.array2string(point, precision=3),
            )

        # Outside rows are NaN already, so their metrics come back NaN
        fields = dict(fields)
        fields.update(compute_tensor_metrics(tensors))
        return tensors, fields, int(np.count_nonzero(~inside)), int(np.count_nonzero(invalid))

    def warp_fiber(self, fiber, to_world, new_id, spacing=(1.0, 1.0, 1.0)):
        """
        Rebuild one fiber.

        Parameters
        ----------
        fiber : Fiber
            Input fiber; left untouched.
        to_world : callable
            Maps the fiber's stored positions to world coordinates.
        new_id : int
            Id of the rebuilt fiber.
        spacing : tuple
            Spacing of the output bundle, given to the rebuilt fiber.

        Returns
        -------
        WarpedFiber
        """
        world = to_world(fiber.points)
        warped, n_outside_def = self.displace(world)

        radii = None if fiber.radii is None else fiber.radii.copy()
        colors = None if fiber.colors is None else fiber.colors.copy()
        tensors = None if fiber.tensors is None else fiber.tensors.copy()
        fields = {name: values.copy() for name, values in fiber.fields.items()}
        n_outside_tensor = n_invalid_tensor = 0

        if self.samples_tensors and len(fiber) > 0:
            tensors, fields, n_outside_tensor, n_invalid_tensor = self._attach_tensor_data(warped, fields)
            radii = np.full(len(fiber), self.tensor_point_radius, dtype=np.float64)

        positions = fiber.points.copy() if self.no_warp else warped

        new_fiber = Fiber(
            id=new_id,
            points=positions,
            spacing=tuple(spacing),
            radii=radii,
            colors=colors,
            tensors=tensors,
            fields=fields,
        )
        return WarpedFiber(new_fiber, warped, n_outside_def, n_outside_tensor, n_invalid_tensor)

    def warp_bundle(self, bundle):
        """Rebuild every fiber of ``bundle`` into a new bundle; ids start at 1."""
        output = self.output_bundle(bundle)
        for new_id, fiber in enumerate(bundle.fibers, start=1):
            output.add_fiber(self.warp_fiber(fiber, bundle.to_world, new_id, output.spacing).fiber)
        return output
