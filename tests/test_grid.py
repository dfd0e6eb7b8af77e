import numpy as np
import pytest

from boxflow.errors import ValidationError
from boxflow.grid import Grid, StructuredGrid


class TestSegmentGrid:
    def test_counts_and_positions(self):
        grid = StructuredGrid(lower=(0.0,), upper=(10.0,), cells=(5,))
        assert grid.dimension == 1
        assert grid.num_vertices == 6
        assert grid.num_elements == 5
        np.testing.assert_allclose(grid.vertex_positions[:, 0], np.linspace(0.0, 10.0, 6))
        assert isinstance(grid, Grid)

    def test_sub_control_volumes_fill_the_domain(self):
        grid = StructuredGrid(lower=(0.0,), upper=(10.0,), cells=(5,), thickness=2.0)
        total = sum(scv.volume for element in grid.elements() for scv in element.geometry.scvs)
        assert total == pytest.approx(20.0)

    def test_faces(self):
        grid = StructuredGrid(lower=(0.0,), upper=(10.0,), cells=(5,))
        elements = grid.elements()
        face = elements[2].geometry.faces[0]
        assert (face.i, face.j) == (0, 1)
        np.testing.assert_allclose(face.normal, [1.0])
        np.testing.assert_allclose(face.ip_position, [5.0])
        np.testing.assert_allclose(face.shape_values, [0.5, 0.5])

        assert len(elements[0].geometry.boundary_faces) == 1
        assert len(elements[2].geometry.boundary_faces) == 0
        left = elements[0].geometry.boundary_faces[0]
        right = elements[-1].geometry.boundary_faces[0]
        np.testing.assert_allclose(left.normal, [-1.0])
        np.testing.assert_allclose(right.normal, [1.0])
        assert right.scv_index == 1


class TestRectangleGrid:
    def test_vertex_numbering_is_lexicographic(self):
        grid = StructuredGrid(lower=(0.0, 0.0), upper=(2.0, 1.0), cells=(2, 1))
        np.testing.assert_allclose(
            grid.vertex_positions,
            [[0, 0], [1, 0], [2, 0], [0, 1], [1, 1], [2, 1]],
        )
        assert grid.elements()[1].vertex_indices == (1, 2, 4, 5)

    def test_volumes_and_boundary_area(self):
        grid = StructuredGrid(lower=(0.0, 0.0), upper=(4.0, 6.0), cells=(2, 3), thickness=0.5)
        volume = sum(scv.volume for element in grid.elements() for scv in element.geometry.scvs)
        assert volume == pytest.approx(4.0 * 6.0 * 0.5)

        boundary_faces = [f for element in grid.elements() for f in element.geometry.boundary_faces]
        assert len(boundary_faces) == 2 * (2 * 2 + 2 * 3)
        assert sum(f.area for f in boundary_faces) == pytest.approx(2 * (4.0 + 6.0) * 0.5)

    def test_closed_sub_control_volume_surfaces(self):
        grid = StructuredGrid(lower=(0.0, 0.0), upper=(3.0, 2.0), cells=(3, 2))
        closure = np.zeros((grid.num_vertices, 2))
        for element in grid.elements():
            dofs = element.vertex_indices
            for face in element.geometry.faces:
                closure[dofs[face.i]] += face.normal
                closure[dofs[face.j]] -= face.normal
            for face in element.geometry.boundary_faces:
                closure[dofs[face.scv_index]] += face.normal
        np.testing.assert_allclose(closure, 0.0, atol=1e-12)

    def test_shape_functions_at_integration_points(self):
        grid = StructuredGrid(lower=(0.0, 0.0), upper=(2.0, 2.0), cells=(2, 2))
        for element in grid.elements():
            for face in element.geometry.faces + element.geometry.boundary_faces:
                assert face.shape_values.sum() == pytest.approx(1.0)
                np.testing.assert_allclose(face.shape_gradients.sum(axis=0), 0.0, atol=1e-12)

    def test_reversed_face(self):
        grid = StructuredGrid(lower=(0.0, 0.0), upper=(1.0, 1.0), cells=(1, 1))
        face = grid.elements()[0].geometry.faces[0]
        reverse = face.reversed()
        assert (reverse.i, reverse.j) == (face.j, face.i)
        np.testing.assert_array_equal(reverse.normal, -face.normal)
        np.testing.assert_array_equal(reverse.shape_gradients, face.shape_gradients)
        assert reverse.area == face.area


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(lower=(0.0,), upper=(1.0, 1.0), cells=(1,)),
        dict(lower=(0.0, 0.0, 0.0), upper=(1.0, 1.0, 1.0), cells=(1, 1, 1)),
        dict(lower=(0.0,), upper=(1.0,), cells=(0,)),
        dict(lower=(1.0,), upper=(1.0,), cells=(2,)),
        dict(lower=(0.0,), upper=(1.0,), cells=(2,), thickness=0.0),
    ],
)
def test_invalid_structured_grid(kwargs):
    with pytest.raises(ValidationError):
        StructuredGrid(**kwargs)
