"""
Finite-volume element geometry of the box method and a structured reference grid.

The box method attaches one sub-control volume (SCV) to every vertex of an
element. SCVs of the same element share internal sub-control volume faces,
SCVs on the domain boundary additionally own boundary faces. Every face carries
the values and gradients of all element shape functions at its integration point.
"""

import itertools
import typing

import attrs
import numpy as np

from boxflow._precision import get_dtype
from boxflow.errors import ValidationError
from boxflow.types import Vector


__all__ = [
    "SubControlVolume",
    "SubControlVolumeFace",
    "BoundaryFace",
    "FVElementGeometry",
    "Element",
    "Grid",
    "StructuredGrid",
]


@attrs.frozen(slots=True, eq=False)
class SubControlVolume:
    """Vertex-attached part of an element."""

    local_index: int
    """Index of the vertex within its element."""
    dof_index: int
    """Global degree-of-freedom (vertex) index."""
    volume: float
    """Volume of the sub-control volume (m³)."""
    position: Vector
    """Position of the vertex the sub-control volume belongs to."""


@attrs.frozen(slots=True, eq=False)
class SubControlVolumeFace:
    """Internal face shared by the sub-control volumes `i` and `j` of an element."""

    i: int
    """Local index of the sub-control volume the normal points away from."""
    j: int
    """Local index of the sub-control volume the normal points into."""
    normal: Vector
    """Area-scaled face normal pointing from `i` to `j`."""
    ip_position: Vector
    """Position of the integration point."""
    shape_values: np.typing.NDArray[np.floating]
    """Values of all element shape functions at the integration point, shape (num_vertices,)."""
    shape_gradients: np.typing.NDArray[np.floating]
    """Gradients of all element shape functions at the integration point, shape (num_vertices, dimension)."""

    @property
    def area(self) -> float:
        return float(np.linalg.norm(self.normal))

    def reversed(self) -> "SubControlVolumeFace":
        """The same face seen from `j`, i.e. with swapped sides and negated normal."""
        return attrs.evolve(self, i=self.j, j=self.i, normal=-self.normal)


@attrs.frozen(slots=True, eq=False)
class BoundaryFace:
    """Face of a sub-control volume on the domain boundary."""

    scv_index: int
    """Local index of the sub-control volume owning the face."""
    normal: Vector
    """Area-scaled outward face normal."""
    ip_position: Vector
    """Position of the integration point."""
    shape_values: np.typing.NDArray[np.floating]
    shape_gradients: np.typing.NDArray[np.floating]

    @property
    def area(self) -> float:
        return float(np.linalg.norm(self.normal))


@attrs.frozen(slots=True, eq=False)
class FVElementGeometry:
    """Sub-control volumes, internal faces and boundary faces of one element."""

    scvs: typing.Tuple[SubControlVolume, ...]
    faces: typing.Tuple[SubControlVolumeFace, ...]
    boundary_faces: typing.Tuple[BoundaryFace, ...] = ()

    @property
    def num_vertices(self) -> int:
        return len(self.scvs)


@attrs.frozen(slots=True, eq=False)
class Element:
    """A mesh cell and its box-method geometry."""

    index: int
    vertex_indices: typing.Tuple[int, ...]
    """Global vertex (dof) indices in local vertex order."""
    geometry: FVElementGeometry

    @property
    def num_vertices(self) -> int:
        return len(self.vertex_indices)

    @property
    def center(self) -> Vector:
        return np.mean([scv.position for scv in self.geometry.scvs], axis=0)


@typing.runtime_checkable
class Grid(typing.Protocol):
    """Mesh interface consumed (read-only) by the discretization."""

    @property
    def dimension(self) -> int: ...

    @property
    def num_vertices(self) -> int: ...

    @property
    def vertex_positions(self) -> np.typing.NDArray[np.floating]: ...

    def elements(self) -> typing.Sequence[Element]: ...


def _segment_shape(xi: float, h: float) -> typing.Tuple[np.ndarray, np.ndarray]:
    values = np.array([1.0 - xi, xi], dtype=get_dtype())
    gradients = np.array([[-1.0 / h], [1.0 / h]], dtype=get_dtype())
    return values, gradients


def _rectangle_shape(
    xi: float, eta: float, hx: float, hy: float
) -> typing.Tuple[np.ndarray, np.ndarray]:
    # local vertex order: (x0, y0), (x1, y0), (x0, y1), (x1, y1)
    values = np.array(
        [(1 - xi) * (1 - eta), xi * (1 - eta), (1 - xi) * eta, xi * eta],
        dtype=get_dtype(),
    )
    gradients = np.array(
        [
            [-(1 - eta) / hx, -(1 - xi) / hy],
            [(1 - eta) / hx, -xi / hy],
            [-eta / hx, (1 - xi) / hy],
            [eta / hx, xi / hy],
        ],
        dtype=get_dtype(),
    )
    return values, gradients


@attrs.define
class StructuredGrid:
    """
    Axis-aligned structured grid of segments (1D) or rectangles (2D) with
    box-method geometry.

    In 1D, `thickness` is the cross-sectional area of the column, in 2D the
    extent in the third direction. Vertices are numbered lexicographically
    (x fastest).

    ```python
    column = StructuredGrid(lower=(0.0,), upper=(10.0,), cells=(10,))
    domain = StructuredGrid(lower=(0.0, 0.0), upper=(40.0, 40.0), cells=(20, 20))
    ```
    """

    lower: typing.Tuple[float, ...] = attrs.field(converter=tuple)
    upper: typing.Tuple[float, ...] = attrs.field(converter=tuple)
    cells: typing.Tuple[int, ...] = attrs.field(converter=tuple)
    thickness: float = 1.0

    _elements: typing.List[Element] = attrs.field(init=False, factory=list)
    _vertex_positions: np.ndarray = attrs.field(init=False, default=None)

    def __attrs_post_init__(self) -> None:
        if not (len(self.lower) == len(self.upper) == len(self.cells)):
            raise ValidationError(
                "`lower`, `upper` and `cells` must have the same length."
            )
        if len(self.cells) not in (1, 2):
            raise ValidationError(
                f"Only 1D and 2D structured grids are supported, got dimension {len(self.cells)}"
            )
        if any(n < 1 for n in self.cells):
            raise ValidationError("Each direction needs at least one cell.")
        if any(hi <= lo for lo, hi in zip(self.lower, self.upper)):
            raise ValidationError("`upper` must be greater than `lower` in every direction.")
        if self.thickness <= 0.0:
            raise ValidationError("`thickness` must be positive.")

        axes = [
            np.linspace(lo, hi, n + 1, dtype=get_dtype())
            for lo, hi, n in zip(self.lower, self.upper, self.cells)
        ]
        if self.dimension == 1:
            self._vertex_positions = axes[0].reshape(-1, 1)
            self._elements = self._build_segments(axes[0])
        else:
            xs, ys = axes
            self._vertex_positions = np.array(
                [(x, y) for y in ys for x in xs], dtype=get_dtype()
            )
            self._elements = self._build_rectangles(xs, ys)

    @property
    def dimension(self) -> int:
        return len(self.cells)

    @property
    def num_vertices(self) -> int:
        return int(np.prod([n + 1 for n in self.cells]))

    @property
    def num_elements(self) -> int:
        return len(self._elements)

    @property
    def vertex_positions(self) -> np.ndarray:
        return self._vertex_positions

    def elements(self) -> typing.Sequence[Element]:
        return self._elements

    def _build_segments(self, xs: np.ndarray) -> typing.List[Element]:
        area = self.thickness
        num_cells = self.cells[0]
        elements = []
        for e in range(num_cells):
            x0, x1 = float(xs[e]), float(xs[e + 1])
            h = x1 - x0
            scvs = (
                SubControlVolume(0, e, 0.5 * h * area, np.array([x0])),
                SubControlVolume(1, e + 1, 0.5 * h * area, np.array([x1])),
            )
            values, gradients = _segment_shape(0.5, h)
            faces = (
                SubControlVolumeFace(
                    i=0,
                    j=1,
                    normal=np.array([area]),
                    ip_position=np.array([0.5 * (x0 + x1)]),
                    shape_values=values,
                    shape_gradients=gradients,
                ),
            )
            boundary_faces = []
            if e == 0:
                values, gradients = _segment_shape(0.0, h)
                boundary_faces.append(
                    BoundaryFace(0, np.array([-area]), np.array([x0]), values, gradients)
                )
            if e == num_cells - 1:
                values, gradients = _segment_shape(1.0, h)
                boundary_faces.append(
                    BoundaryFace(1, np.array([area]), np.array([x1]), values, gradients)
                )
            geometry = FVElementGeometry(scvs, faces, tuple(boundary_faces))
            elements.append(Element(e, (e, e + 1), geometry))
        return elements

    def _build_rectangles(self, xs: np.ndarray, ys: np.ndarray) -> typing.List[Element]:
        nx, ny = self.cells
        depth = self.thickness
        elements = []
        for j, i in itertools.product(range(ny), range(nx)):
            x0, x1 = float(xs[i]), float(xs[i + 1])
            y0, y1 = float(ys[j]), float(ys[j + 1])
            hx, hy = x1 - x0, y1 - y0
            vertex_indices = (
                i + j * (nx + 1),
                i + 1 + j * (nx + 1),
                i + (j + 1) * (nx + 1),
                i + 1 + (j + 1) * (nx + 1),
            )
            corners = [(x0, y0), (x1, y0), (x0, y1), (x1, y1)]
            scv_volume = 0.25 * hx * hy * depth
            scvs = tuple(
                SubControlVolume(local, dof, scv_volume, np.array(corner))
                for local, (dof, corner) in enumerate(zip(vertex_indices, corners))
            )

            def face(a: int, b: int, xi: float, eta: float, normal: typing.Tuple[float, float]):
                values, gradients = _rectangle_shape(xi, eta, hx, hy)
                return SubControlVolumeFace(
                    i=a,
                    j=b,
                    normal=np.array(normal) * depth,
                    ip_position=np.array([x0 + xi * hx, y0 + eta * hy]),
                    shape_values=values,
                    shape_gradients=gradients,
                )

            faces = (
                face(0, 1, 0.5, 0.25, (0.5 * hy, 0.0)),
                face(2, 3, 0.5, 0.75, (0.5 * hy, 0.0)),
                face(0, 2, 0.25, 0.5, (0.0, 0.5 * hx)),
                face(1, 3, 0.75, 0.5, (0.0, 0.5 * hx)),
            )

            boundary_faces = []

            def boundary_face(scv: int, xi: float, eta: float, normal: typing.Tuple[float, float]):
                values, gradients = _rectangle_shape(xi, eta, hx, hy)
                boundary_faces.append(
                    BoundaryFace(
                        scv_index=scv,
                        normal=np.array(normal) * depth,
                        ip_position=np.array([x0 + xi * hx, y0 + eta * hy]),
                        shape_values=values,
                        shape_gradients=gradients,
                    )
                )

            if j == 0:
                boundary_face(0, 0.25, 0.0, (0.0, -0.5 * hx))
                boundary_face(1, 0.75, 0.0, (0.0, -0.5 * hx))
            if j == ny - 1:
                boundary_face(2, 0.25, 1.0, (0.0, 0.5 * hx))
                boundary_face(3, 0.75, 1.0, (0.0, 0.5 * hx))
            if i == 0:
                boundary_face(0, 0.0, 0.25, (-0.5 * hy, 0.0))
                boundary_face(2, 0.0, 0.75, (-0.5 * hy, 0.0))
            if i == nx - 1:
                boundary_face(1, 1.0, 0.25, (0.5 * hy, 0.0))
                boundary_face(3, 1.0, 0.75, (0.5 * hy, 0.0))

            geometry = FVElementGeometry(scvs, faces, tuple(boundary_faces))
            elements.append(Element(len(elements), vertex_indices, geometry))
        return elements
