"""Tests for eems.habitat — outline reading and containment."""

import numpy as np
import pytest

from eems.habitat import Habitat
from eems.rng import create_rng


class TestHabitatConstruction:
    def test_rectangle_extents(self, habitat):
        assert habitat.xmin == 0.0 and habitat.xmax == 6.0
        assert habitat.ymin == 0.0 and habitat.ymax == 4.0
        assert habitat.xspan == 6.0
        assert habitat.yspan == 4.0
        assert habitat.area == pytest.approx(24.0)

    def test_clockwise_outline_accepted(self):
        h = Habitat(np.array([[0, 0], [0, 1], [1, 1], [1, 0]]))
        assert h.area == pytest.approx(1.0)

    def test_from_file_with_closing_vertex(self, tmp_path):
        path = tmp_path / "demo.outer"
        np.savetxt(path, [[0, 0], [2, 0], [2, 1], [0, 1], [0, 0]])
        h = Habitat.from_file(path)
        assert h.area == pytest.approx(2.0)

    def test_too_few_vertices(self):
        with pytest.raises(ValueError, match="at least 3"):
            Habitat(np.array([[0, 0], [1, 1]]))

    def test_self_intersecting(self):
        bowtie = np.array([[0, 0], [1, 1], [1, 0], [0, 1]])
        with pytest.raises(ValueError, match="simple polygon"):
            Habitat(bowtie)

    def test_bad_file(self, tmp_path):
        path = tmp_path / "bad.outer"
        path.write_text("0 0 0\n1 1 1\n2 2 2\n")
        with pytest.raises(ValueError, match="two coordinates per row"):
            Habitat.from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Habitat.from_file(tmp_path / "missing.outer")


class TestContainment:
    def test_interior_and_exterior(self, habitat):
        assert habitat.in_point(3.0, 2.0)
        assert not habitat.in_point(6.5, 2.0)
        assert not habitat.in_point(-0.1, 0.0)

    def test_boundary_counts_as_inside(self, habitat):
        assert habitat.in_point(0.0, 0.0)
        assert habitat.in_point(6.0, 2.0)
        assert habitat.in_point(3.0, 4.0)

    def test_concave_outline(self):
        # L-shape: the upper right quadrant is missing
        h = Habitat(np.array([[0, 0], [2, 0], [2, 1], [1, 1], [1, 2], [0, 2]]))
        assert h.in_point(0.5, 1.5)
        assert not h.in_point(1.5, 1.5)

    def test_vectorized_matches_scalar(self, habitat):
        xy = np.array([[1.0, 1.0], [7.0, 1.0], [6.0, 4.0], [3.0, -1.0]])
        expected = [habitat.in_point(x, y) for x, y in xy]
        np.testing.assert_array_equal(habitat.in_points(xy), expected)

    def test_random_points_inside(self):
        h = Habitat(np.array([[0, 0], [2, 0], [2, 1], [1, 1], [1, 2], [0, 2]]))
        pts = h.random_points(create_rng(3), 200)
        assert pts.shape == (200, 2)
        assert h.in_points(pts).all()

    def test_random_points_reproducible(self, habitat):
        a = habitat.random_points(create_rng(11), 10)
        b = habitat.random_points(create_rng(11), 10)
        np.testing.assert_array_equal(a, b)
