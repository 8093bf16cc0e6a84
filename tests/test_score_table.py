"""Tests for score table loading and lookup."""

import logging

import numpy as np
import pandas as pd
import pytest

from pynblast.errors import InvalidScoreTableError
from pynblast.score_table import ScoreTable, find_bins, load_score_table, lookup


@pytest.fixture
def numbered_table():
    """5 distance bins x 10 dot bins holding their own linear index."""
    dists = [10.0, 20.0, 30.0, 40.0, 50.0]
    dots = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0]
    return load_score_table(dists, dots, np.arange(50, dtype=np.float64))


@pytest.fixture
def small_table():
    """2 x 2 table."""
    return load_score_table([1.0, 2.0], [0.5, 1.0], [[0.0, 1.0], [2.0, 3.0]])


class TestFindBins:
    """Tests for bin search."""

    def test_bins(self):
        """Test values map to the bin whose upper bound exceeds them."""
        dots = np.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0])
        assert find_bins(0.0, dots) == 0
        assert find_bins(0.15, dots) == 1
        assert find_bins(0.95, dots) == 9

    def test_value_on_bound_goes_up(self):
        """Test a value equal to an upper bound belongs to the next bin."""
        dots = np.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0])
        assert find_bins(0.1, dots) == 1

    def test_out_of_range_clamps(self):
        """Test values outside the table use the first or last bin."""
        dots = np.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0])
        assert find_bins(-10.0, dots) == 0
        assert find_bins(10.0, dots) == 9


class TestLookup:
    """Tests for score lookup."""

    def test_cells(self, numbered_table):
        """Test lookups pick the containing cell."""
        assert lookup(numbered_table, 0.0, 0.0) == 0.0
        assert lookup(numbered_table, 0.0, 0.1) == 1.0
        assert lookup(numbered_table, 11.0, 0.0) == 10.0
        assert lookup(numbered_table, 15.0, 0.15) == 11.0

    def test_clamps_beyond_table(self, numbered_table):
        """Test distances past the last bin and dots above 1 are clamped."""
        assert lookup(numbered_table, 55.0, 0.0) == 40.0
        assert lookup(numbered_table, 55.0, 10.0) == 49.0
        assert lookup(numbered_table, 1e9, 1.0) == 49.0

    def test_negative_inputs_clamp(self, numbered_table):
        """Test negative dots and distances fall in the first bins."""
        assert lookup(numbered_table, -1.0, -0.5) == 0.0

    def test_returns_float_for_scalars(self, small_table):
        """Test scalar lookups give plain floats."""
        assert isinstance(small_table.lookup(0.5, 0.9), float)

    def test_vectorised(self, small_table):
        """Test array lookups match scalar ones."""
        dists = np.array([0.0, 1.5, 3.0, 0.5])
        dots = np.array([1.0, 0.2, 0.9, 0.4])
        scores = small_table.lookup(dists, dots)
        np.testing.assert_array_equal(scores, [1.0, 2.0, 3.0, 0.0])
        for d, t, s in zip(dists, dots, scores):
            assert lookup(small_table, d, t) == s


class TestLoadScoreTable:
    """Tests for table validation."""

    def test_flat_and_square_cells_agree(self):
        """Test flat dot-major cells equal the 2D layout."""
        flat = load_score_table([1.0, 2.0], [0.5, 1.0], [1.0, 2.0, 4.0, 8.0])
        square = load_score_table([1.0, 2.0], [0.5, 1.0], [[1.0, 2.0], [4.0, 8.0]])
        np.testing.assert_array_equal(flat.cells, square.cells)
        assert flat.shape == (2, 2)

    def test_immutable(self, small_table):
        """Test table arrays are read-only."""
        assert not small_table.cells.flags.writeable
        assert not small_table.dist_bounds.flags.writeable

    def test_copies_input(self):
        """Test later changes to the input do not affect the table."""
        cells = np.array([[0.0, 1.0], [2.0, 3.0]])
        table = load_score_table([1.0, 2.0], [0.5, 1.0], cells)
        cells[0, 0] = 100.0
        assert table.cells[0, 0] == 0.0

    @pytest.mark.parametrize(
        "dists, dots, cells",
        [
            ([2.0, 1.0], [0.5, 1.0], [[0, 1], [2, 3]]),  # decreasing distances
            ([1.0, 1.0], [0.5, 1.0], [[0, 1], [2, 3]]),  # repeated bound
            ([1.0, 2.0], [0.5, 1.5], [[0, 1], [2, 3]]),  # dot above 1
            ([0.0, 2.0], [0.5, 1.0], [[0, 1], [2, 3]]),  # zero upper bound
            ([1.0, 2.0], [0.5, 1.0], [[0, 1, 2], [2, 3, 4]]),  # wrong cell shape
            ([1.0, 2.0], [0.5, 1.0], [[0, 1], [2, np.nan]]),  # non-finite cell
            ([], [0.5, 1.0], []),  # no distance bins
        ],
    )
    def test_invalid_tables(self, dists, dots, cells):
        """Test malformed tables are rejected."""
        with pytest.raises(InvalidScoreTableError):
            load_score_table(dists, dots, cells)

    def test_open_ended_last_distance(self):
        """Test the last distance bound may be infinite."""
        table = load_score_table([1.0, np.inf], [1.0], [[5.0], [-1.0]])
        assert table.lookup(1e12, 0.5) == -1.0
        assert table.max_distance == 1.0

    def test_distance_monotonicity(self, small_table):
        """Test detection of tables whose scores never rise with distance."""
        assert not small_table.is_distance_non_increasing()
        falling = load_score_table([1.0, 2.0], [0.5, 1.0], [[2.0, 3.0], [0.0, 1.0]])
        assert falling.is_distance_non_increasing()


class TestInterpolation:
    """Tests for interpolated lookups."""

    def test_between_centres(self, small_table):
        """Test bilinear interpolation between bin centres."""
        table = load_score_table(
            small_table.dist_bounds, small_table.dot_bounds, small_table.cells,
            interpolate=True,
        )
        # Centres are (0.5, 1.5) for distance and (0.25, 0.75) for dot
        assert table.lookup(1.0, 0.5) == pytest.approx(1.5)
        assert table.lookup(0.5, 0.25) == pytest.approx(0.0)

    def test_clamps_to_outer_centres(self, small_table):
        """Test interpolation does not extrapolate."""
        table = load_score_table(
            small_table.dist_bounds, small_table.dot_bounds, small_table.cells,
            interpolate=True,
        )
        assert table.lookup(0.0, 0.0) == pytest.approx(0.0)
        assert table.lookup(100.0, 1.0) == pytest.approx(3.0)

    def test_vectorised(self, small_table):
        """Test interpolated array lookups keep the input shape."""
        table = load_score_table(
            small_table.dist_bounds, small_table.dot_bounds, small_table.cells,
            interpolate=True,
        )
        scores = table.lookup(np.array([0.5, 1.5]), np.array([0.75, 0.75]))
        np.testing.assert_allclose(scores, [1.0, 3.0])

    def test_single_bin_rejected(self):
        """Test interpolation needs two bins per axis."""
        with pytest.raises(InvalidScoreTableError, match="two bins"):
            load_score_table([1.0], [0.5, 1.0], [[0.0, 1.0]], interpolate=True)


class TestFromDataFrame:
    """Tests for loading labelled tables."""

    @pytest.fixture
    def interval_frame(self):
        return pd.DataFrame(
            [[4.0, 9.0], [1.0, 3.0], [-1.0, -0.5]],
            index=["(0,0.75]", "(0.75,1.5]", "(1.5,Inf]"],
            columns=["(0,0.5]", "(0.5,1]"],
        )

    def test_interval_labels(self, interval_frame):
        """Test upper bounds are parsed from interval labels."""
        table = ScoreTable.from_dataframe(interval_frame)
        np.testing.assert_array_equal(table.dist_bounds, [0.75, 1.5, np.inf])
        np.testing.assert_array_equal(table.dot_bounds, [0.5, 1.0])
        assert table.lookup(0.1, 0.9) == 9.0
        assert table.lookup(100.0, 0.9) == -0.5

    def test_numeric_labels(self):
        """Test numeric labels are taken as upper bounds."""
        df = pd.DataFrame([[1.0, 2.0], [3.0, 4.0]], index=[5.0, 10.0], columns=[0.5, 1.0])
        table = ScoreTable.from_dataframe(df)
        np.testing.assert_array_equal(table.dist_bounds, [5.0, 10.0])

    def test_bad_label(self):
        """Test unparseable labels raise."""
        df = pd.DataFrame([[1.0]], index=["near"], columns=["(0,1]"])
        with pytest.raises(InvalidScoreTableError, match="near"):
            ScoreTable.from_dataframe(df)

    def test_csv(self, interval_frame, tmp_path, caplog):
        """Test loading a table from CSV."""
        path = tmp_path / "smat.csv"
        interval_frame.to_csv(path)

        with caplog.at_level(logging.INFO, logger="pynblast.score_table"):
            table = ScoreTable.from_csv(path)
        np.testing.assert_array_equal(table.cells, interval_frame.to_numpy())
        assert table.max_distance == 1.5
        assert "distances binned up to 1.5" in caplog.text

    def test_to_dataframe(self, small_table):
        """Test exporting to a labelled DataFrame and back."""
        df = small_table.to_dataframe()
        assert list(df.index) == ["(0,1]", "(1,2]"]
        restored = ScoreTable.from_dataframe(df)
        np.testing.assert_array_equal(restored.cells, small_table.cells)
