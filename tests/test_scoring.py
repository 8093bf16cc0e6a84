"""Tests for pairwise NBLAST scoring."""

import math

import numpy as np
import pytest

from pynblast.dotprops import DotProp, build_dotprop
from pynblast.errors import EmptyDotPropError
from pynblast.score_table import load_score_table
from pynblast.scoring import (
    combine_scores,
    dist_dots,
    pairwise_score,
    raw_score,
    self_score,
    symmetric_score,
)
from pynblast.spatial import BruteForceIndex


def make_points(offset, step, count):
    """Evenly spaced points along a line."""
    return np.asarray(offset, dtype=np.float64) + np.outer(
        np.arange(count), np.asarray(step, dtype=np.float64)
    )


@pytest.fixture
def falling_table():
    """Scores fall with distance and rise with alignment."""
    dists = [1.0, 2.0, 4.0, 8.0, np.inf]
    dots = [0.25, 0.5, 0.75, 1.0]
    cells = np.array(
        [
            [4.0, 5.0, 6.0, 8.0],
            [2.0, 3.0, 4.0, 5.0],
            [0.0, 1.0, 1.5, 2.0],
            [-1.0, -0.5, 0.0, 0.5],
            [-2.0, -2.0, -2.0, -2.0],
        ]
    )
    return load_score_table(dists, dots, cells)


@pytest.fixture
def query():
    """Ten points along the x axis."""
    return build_dotprop(make_points([0.0, 0.0, 0.0], [1.0, 0.0, 0.0], 10), k=3)


@pytest.fixture
def target():
    """A shifted, stretched copy of the query line."""
    return build_dotprop(make_points([0.5, 0.0, 0.0], [1.1, 0.0, 0.0], 10), k=3)


@pytest.fixture
def random_dotprops():
    """Several random clouds around the origin."""
    rng = np.random.default_rng(11)
    return [
        build_dotprop(rng.normal(scale=3.0, size=(n, 3)), k=5) for n in (20, 35, 50)
    ]


class TestDistDots:
    """Tests for nearest-neighbour distance and alignment."""

    def test_self_match(self, query):
        """Test a DotProp matches itself at zero distance and full alignment."""
        dists, dots = dist_dots(query, query)
        np.testing.assert_array_equal(dists, 0.0)
        np.testing.assert_allclose(dots, 1.0)

    def test_sign_invariant(self, query):
        """Test flipping target tangents does not change alignment."""
        flipped = DotProp.from_tangents(query.points, -query.tangents)
        _, dots = dist_dots(query, query)
        _, flipped_dots = dist_dots(query, flipped)
        np.testing.assert_array_equal(dots, flipped_dots)

    def test_alpha_weighting(self):
        """Test alpha scales alignment by sqrt(alpha_q * alpha_t)."""
        dp = DotProp.from_tangents(
            [[0.0, 0.0, 0.0]], [[1.0, 0.0, 0.0]], alpha=[0.25]
        )
        _, dots = dist_dots(dp, dp, use_alpha=True)
        assert dots[0] == pytest.approx(0.25)

    def test_alpha_required(self):
        """Test alpha weighting needs alpha on both DotProps."""
        dp = DotProp.from_tangents([[0.0, 0.0, 0.0]], [[1.0, 0.0, 0.0]])
        with pytest.raises(ValueError, match="alpha"):
            dist_dots(dp, dp, use_alpha=True)


class TestPairwiseScore:
    """Tests for pairwise_score and related functions."""

    def test_single_point_scenario(self):
        """Test identical single-point DotProps score the (0, 1) cell."""
        table = load_score_table([1.0, 2.0], [0.5, 1.0], [[0.0, 10.0], [0.0, 0.0]])
        a = DotProp.from_tangents([[0.0, 0.0, 0.0]], [[1.0, 0.0, 0.0]])
        b = DotProp.from_tangents([[0.0, 0.0, 0.0]], [[1.0, 0.0, 0.0]])

        assert pairwise_score(a, b, table) == 10.0
        assert pairwise_score(a, b, table, normalize=True) == 1.0

    def test_self_hit(self, query):
        """Test self score is the (0, 1) cell times the point count."""
        table = load_score_table([1.0, 2.0], [0.5, 1.0], [1.0, 2.0, 4.0, 8.0])
        assert self_score(query, table) == pytest.approx(20.0)

    def test_query_constructions_agree(self, target):
        """Test DotProps over different index types score the same."""
        table = load_score_table([1.0, 2.0], [0.5, 1.0], [1.0, 2.0, 4.0, 8.0])
        points = make_points([0.0, 0.0, 0.0], [1.0, 0.0, 0.0], 10)
        kd = build_dotprop(points, k=3)
        bf = build_dotprop(points, k=3, index_factory=BruteForceIndex)

        assert raw_score(kd, target, table) == pytest.approx(raw_score(bf, target, table))
        assert raw_score(kd, bf, table) == pytest.approx(self_score(kd, table))

    def test_normalized_self_is_one(self, random_dotprops, falling_table):
        """Test a DotProp normalised against itself scores exactly 1."""
        for dp in random_dotprops:
            assert pairwise_score(dp, dp, falling_table, normalize=True) == 1.0

    def test_normalized_is_ratio(self, query, target, falling_table):
        """Test normalisation divides by the query's self score."""
        raw = pairwise_score(query, target, falling_table)
        norm = pairwise_score(query, target, falling_table, normalize=True)
        assert norm == pytest.approx(raw / self_score(query, falling_table))

    def test_self_score_is_maximum(self, random_dotprops, query, target, falling_table):
        """Test no target beats the self score for a falling table."""
        assert falling_table.is_distance_non_increasing()
        candidates = [*random_dotprops, query, target]
        for q in candidates:
            best = self_score(q, falling_table)
            for t in candidates:
                assert pairwise_score(q, t, falling_table) <= best

    def test_asymmetric(self):
        """Test forward and reverse scores differ for unequal point counts."""
        table = load_score_table([1.0, np.inf], [1.0], [[5.0], [-1.0]])
        a = build_dotprop(make_points([0.0, 0.0, 0.0], [1.0, 0.0, 0.0], 5), k=3)
        b = build_dotprop(make_points([100.0, 0.0, 0.0], [0.0, 1.0, 0.0], 20), k=3)

        forward = pairwise_score(a, b, table)
        reverse = pairwise_score(b, a, table)
        assert forward == -5.0
        assert reverse == -20.0
        assert symmetric_score(a, b, table) == pytest.approx((forward + reverse) / 2)

    def test_symmetric_is_order_independent(self, query, target, falling_table):
        """Test the symmetric score does not depend on argument order."""
        assert symmetric_score(query, target, falling_table) == symmetric_score(
            target, query, falling_table
        )
        assert symmetric_score(
            query, target, falling_table, normalize=True
        ) == symmetric_score(target, query, falling_table, normalize=True)

    def test_empty_query_raises(self, query, falling_table):
        """Test an empty query DotProp is rejected."""
        empty = DotProp.from_tangents(np.empty((0, 3)), np.empty((0, 3)))
        with pytest.raises(EmptyDotPropError):
            pairwise_score(empty, query, falling_table)

    def test_empty_target_raises(self, query, falling_table):
        """Test an empty target DotProp is rejected."""
        empty = DotProp.from_tangents(np.empty((0, 3)), np.empty((0, 3)))
        with pytest.raises(EmptyDotPropError):
            pairwise_score(query, empty, falling_table)

    def test_zero_self_score_gives_nan(self, query, target):
        """Test normalising by a zero self score gives nan."""
        table = load_score_table([1.0, 2.0], [0.5, 1.0], np.zeros((2, 2)))
        assert math.isnan(pairwise_score(query, target, table, normalize=True))

    def test_alpha_with_unit_alpha_matches_plain(self, falling_table):
        """Test alpha weighting is a no-op when all alpha are 1."""
        points = make_points([0.0, 0.0, 0.0], [1.0, 0.0, 0.0], 10)
        dp = build_dotprop(points, k=3)
        ones = DotProp.from_tangents(dp.points, dp.tangents, alpha=np.ones(len(dp)))
        assert pairwise_score(ones, ones, falling_table, use_alpha=True) == pytest.approx(
            pairwise_score(ones, ones, falling_table)
        )


class TestCombineScores:
    """Tests for reducing two directional scores."""

    @pytest.mark.parametrize(
        "kind, expected",
        [("forward", 2.0), ("mean", 3.0), ("min", 2.0), ("max", 4.0)],
    )
    def test_kinds(self, kind, expected):
        """Test each reduction."""
        assert combine_scores(2.0, 4.0, kind) == expected

    def test_unknown_kind(self):
        """Test unknown reductions raise."""
        with pytest.raises(ValueError, match="scores must be one of"):
            combine_scores(1.0, 2.0, "median")
