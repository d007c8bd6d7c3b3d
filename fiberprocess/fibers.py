"""
Fiber bundle data model.

A bundle holds spatial objects that share one object-to-world affine. Fibers
(tube objects) store their per-point attributes column-wise as numpy arrays,
the same way nibabel keeps ``data_per_point``; iterating a fiber yields
``FiberPoint`` records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union, Iterator

import numpy as np
from numpy.typing import NDArray


class CoordinateSpace(Enum):
    """What fiber point positions are expressed in."""

    INDEX = "index"  # continuous indices, mapped to world by the bundle affine
    WORLD = "world"  # RAS mm


class ObjectKind(Enum):
    """Kinds of spatial objects a bundle may carry."""

    TUBE = "tube"
    LINE = "line"
    SURFACE = "surface"
    LANDMARK = "landmark"


@dataclass
class FiberPoint:
    """A single point of a fiber."""

    position: NDArray[np.float64]
    radius: Optional[float] = None
    color: Optional[Tuple[float, float, float]] = None
    tensor: Optional[NDArray[np.float64]] = None
    fields: Dict[str, float] = field(default_factory=dict)


@dataclass
class Fiber:
    """
    An ordered polyline with per-point attributes.

    Attributes:
        id: Fiber identifier.
        points: Positions, shape (N, 3). Consecutive points form segments.
        spacing: Spacing vector inherited from the bundle.
        radii: Optional per-point radius, shape (N,).
        colors: Optional per-point RGB, shape (N, 3).
        tensors: Optional per-point tensor, shape (N, 6), slots
            (xx, xy, xz, yy, yz, zz).
        fields: Named per-point scalars, each of shape (N,).
    """

    id: int
    points: NDArray[np.float64]
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    radii: Optional[NDArray[np.float64]] = None
    colors: Optional[NDArray[np.float64]] = None
    tensors: Optional[NDArray[np.float64]] = None
    fields: Dict[str, NDArray[np.float64]] = field(default_factory=dict)

    kind = ObjectKind.TUBE

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        n = len(self.points)

        if self.radii is not None:
            self.radii = np.asarray(self.radii, dtype=np.float64).reshape(n)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=np.float64).reshape(n, 3)
        if self.tensors is not None:
            self.tensors = np.asarray(self.tensors, dtype=np.float64).reshape(n, 6)
        self.fields = {
            name: np.asarray(values, dtype=np.float64).reshape(n)
            for name, values in self.fields.items()
        }

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[FiberPoint]:
        for i in range(len(self)):
            yield self.point(i)

    def point(self, i: int) -> FiberPoint:
        """Materialise point ``i`` as a FiberPoint record."""
        return FiberPoint(
            position=self.points[i].copy(),
            radius=None if self.radii is None else float(self.radii[i]),
            color=None if self.colors is None else tuple(self.colors[i].tolist()),
            tensor=None if self.tensors is None else self.tensors[i].copy(),
            fields={name: float(values[i]) for name, values in self.fields.items()},
        )


@dataclass
class GeometryObject:
    """A non-fiber spatial object; carried in a bundle but never processed."""

    kind: ObjectKind
    id: int = 0
    points: Optional[NDArray[np.float64]] = None


SpatialObject = Union[Fiber, GeometryObject]


@dataclass
class FiberBundle:
    """
    Ordered set of spatial objects sharing an object-to-world affine.

    Attributes:
        objects: Fibers and any other spatial objects, in file order.
        affine: 4x4 object-to-world matrix. Its column norms are the bundle
            spacing and its translation the object-to-parent offset.
        space: Whether positions are continuous indices or world coordinates.
        header: Header of the file the bundle was read from, if any.
    """

    objects: List[SpatialObject] = field(default_factory=list)
    affine: NDArray[np.float64] = field(default_factory=lambda: np.eye(4))
    space: CoordinateSpace = CoordinateSpace.INDEX
    header: Optional[dict] = None

    def __post_init__(self):
        self.affine = np.asarray(self.affine, dtype=np.float64)
        if self.affine.shape != (4, 4):
            raise ValueError(f"Affine must be 4x4, got {self.affine.shape}")

    @property
    def fibers(self) -> List[Fiber]:
        return [obj for obj in self.objects if isinstance(obj, Fiber)]

    @property
    def spacing(self) -> Tuple[float, float, float]:
        return tuple(np.sqrt(np.sum(self.affine[:3, :3] ** 2, axis=0)).tolist())

    @property
    def offset(self) -> NDArray[np.float64]:
        return self.affine[:3, 3].copy()

    def __len__(self) -> int:
        return len(self.fibers)

    def add_fiber(self, fiber: Fiber) -> None:
        self.objects.append(fiber)

    def to_world(self, points: NDArray[np.float64]) -> NDArray[np.float64]:
        """Map positions stored in this bundle to world coordinates."""
        points = np.asarray(points, dtype=np.float64)
        if self.space is CoordinateSpace.WORLD:
            return points.copy()
        return points @ self.affine[:3, :3].T + self.affine[:3, 3]
