"""
Unit tests for linkage strategies.

Tests the LinkageStrategy class including:
- Name resolution
- Lance-Williams updates against raw recomputation
- Metric compatibility of centroid and Ward linkage
"""

import pytest
import numpy as np
from emotion_clustering.core.dissimilarity import DissimilarityMatrix
from emotion_clustering.core.linkage import LinkageStrategy
from emotion_clustering.schemas.data_models import LinkageMethod
from emotion_clustering.utils.error_handling import InvalidInputError


ALL_LINKAGES = ["single", "complete", "average", "centroid", "ward"]


@pytest.mark.unit
class TestLinkageResolution:
    """Test suite for resolving linkage names."""

    @pytest.mark.parametrize("name", ALL_LINKAGES)
    def test_resolve_by_name(self, name):
        """Test resolving every supported name."""
        strategy = LinkageStrategy.resolve(name)
        assert strategy.name == name
        assert str(strategy) == name

    def test_resolve_enum_and_instance(self):
        """Test resolving enum members and existing strategies."""
        strategy = LinkageStrategy.resolve(LinkageMethod.WARD)
        assert strategy.method is LinkageMethod.WARD
        assert LinkageStrategy.resolve(strategy) is strategy

    def test_resolve_case_insensitive(self):
        """Test that names are matched without case."""
        assert LinkageStrategy.resolve("Complete").method is LinkageMethod.COMPLETE

    def test_unknown_linkage(self):
        """Test that unknown names raise."""
        with pytest.raises(InvalidInputError, match="Unsupported linkage"):
            LinkageStrategy.resolve("median")

    def test_geometric_flags(self):
        """Test which linkages work on squared distances."""
        assert LinkageStrategy.resolve("ward").uses_squared_distances
        assert LinkageStrategy.resolve("centroid").requires_features
        assert not LinkageStrategy.resolve("average").uses_squared_distances
        assert not LinkageStrategy.resolve("centroid").is_monotonic
        assert LinkageStrategy.resolve("single").is_monotonic


@pytest.mark.unit
class TestLanceWilliamsUpdate:
    """Test suite for the merge update rule."""

    @pytest.fixture
    def geometry(self, random_matrix):
        """Three disjoint clusters i, j, k over the random matrix."""
        dm = DissimilarityMatrix.compute(random_matrix)
        clusters = {
            "i": np.array([0, 3, 5]),
            "j": np.array([1, 7]),
            "k": np.array([2, 4, 9, 11]),
        }
        return random_matrix, dm, clusters

    @pytest.mark.parametrize("name", ALL_LINKAGES)
    def test_update_matches_recomputation(self, name, geometry):
        """Test that d(k, i+j) from the recurrence equals the raw definition."""
        features, dm, c = geometry
        strategy = LinkageStrategy.resolve(name)

        def working(a, b):
            d = strategy.distance(a, b, dm.values, features)
            if name == "ward":
                return 2.0 * d
            return d ** 2 if strategy.uses_squared_distances else d

        updated = strategy.update_after_merge(
            np.array([working(c["k"], c["i"])]),
            np.array([working(c["k"], c["j"])]),
            working(c["i"], c["j"]),
            len(c["i"]),
            len(c["j"]),
            np.array([len(c["k"])]),
        )

        union = np.concatenate([c["i"], c["j"]])
        expected = strategy.distance(c["k"], union, dm.values, features)
        assert strategy.height(updated[0]) == pytest.approx(expected, rel=1e-9)

    def test_single_and_complete_are_exact(self):
        """Test that single and complete reduce to min and max."""
        d_ki = np.array([1.0, 5.0])
        d_kj = np.array([3.0, 2.0])
        single = LinkageStrategy.resolve("single").update_after_merge(
            d_ki, d_kj, 4.0, 1, 1, np.array([1, 1])
        )
        complete = LinkageStrategy.resolve("complete").update_after_merge(
            d_ki, d_kj, 4.0, 1, 1, np.array([1, 1])
        )
        np.testing.assert_array_equal(single, [1.0, 2.0])
        np.testing.assert_array_equal(complete, [3.0, 5.0])

    def test_average_weights_by_size(self):
        """Test that average linkage weights by cluster size."""
        updated = LinkageStrategy.resolve("average").update_after_merge(
            np.array([2.0]), np.array([8.0]), 1.0, 3, 1, np.array([1])
        )
        assert updated[0] == pytest.approx((3 * 2.0 + 1 * 8.0) / 4)

    def test_ward_distance_is_sse_increase(self, four_points):
        """Test that Ward distance is the rise in within-cluster sum of squares."""
        dm = DissimilarityMatrix.compute(four_points)
        ward = LinkageStrategy.resolve("ward")

        # Singletons one unit apart: SSE goes from 0 to 2 * 0.5^2
        d = ward.distance(np.array([0]), np.array([1]), dm.values, four_points)
        assert d == pytest.approx(0.5)

        # Two pairs with SSE 0.5 each; the union has SSE 101
        pairs = ward.distance(np.array([0, 1]), np.array([2, 3]), dm.values, four_points)
        assert pairs == pytest.approx(101.0 - 0.5 - 0.5)

    def test_ward_height_halves_working_value(self):
        """Test that Ward heights undo the doubled recurrence scale."""
        ward = LinkageStrategy.resolve("ward")
        assert ward.height(1.0) == pytest.approx(0.5)
        assert ward.height(-1e-15) == 0.0

    def test_recompute_needs_features(self, four_points):
        """Test that centroid recomputation without features raises."""
        dm = DissimilarityMatrix.compute(four_points)
        with pytest.raises(InvalidInputError, match="feature matrix"):
            LinkageStrategy.resolve("centroid").distance(
                np.array([0]), np.array([1]), dm.values
            )


@pytest.mark.unit
class TestMetricCompatibility:
    """Test suite for linkage/metric compatibility."""

    @pytest.mark.parametrize("name", ["centroid", "ward"])
    def test_geometric_rejects_manhattan(self, name):
        """Test that centroid and Ward refuse non-Euclidean distances."""
        with pytest.raises(InvalidInputError, match="Euclidean"):
            LinkageStrategy.resolve(name).check_compatible("manhattan")

    @pytest.mark.parametrize("name", ["centroid", "ward"])
    def test_geometric_accepts_euclidean(self, name):
        """Test that Euclidean and precomputed distances are accepted."""
        strategy = LinkageStrategy.resolve(name)
        strategy.check_compatible("euclidean")
        strategy.check_compatible("precomputed")

    @pytest.mark.parametrize("name", ["single", "complete", "average"])
    def test_graph_linkages_accept_any_metric(self, name):
        """Test that the distance-only linkages accept every metric."""
        LinkageStrategy.resolve(name).check_compatible("manhattan")
