"""
Unit tests for ClusteringEngine orchestration layer.

Tests the ClusteringEngine class including:
- Algorithm selection and instantiation
- Parameter validation
- Optimal k estimation
- Full analyses and their export
"""

import pytest
import logging
import logging.handlers
import numpy as np
import structlog
from emotion_clustering.config.settings_loader import (
    HierarchicalSettings,
    KMeansSettings,
    Settings,
    ValiditySettings,
    reload_config,
)
from emotion_clustering.core.clustering_engine import ClusteringAnalysis, ClusteringEngine
from emotion_clustering.schemas.data_models import ClusterAlgorithm
from emotion_clustering.utils.error_handling import InvalidInputError


def _same_partition(a, b):
    a, b = np.asarray(a), np.asarray(b)
    return bool(((a[:, None] == a[None, :]) == (b[:, None] == b[None, :])).all())


@pytest.mark.unit
class TestClusteringEngine:
    """Test suite for ClusteringEngine."""

    def test_init(self):
        """Test ClusteringEngine initialization."""
        engine = ClusteringEngine()
        assert engine is not None
        assert engine.settings.kmeans.n_init == 10

    def test_algorithm_registry(self):
        """Test that all algorithms are registered."""
        engine = ClusteringEngine()

        for alg in ["kmeans", "agglomerative"]:
            assert alg in engine.ALGORITHMS
        assert set(engine.ALGORITHMS) == set(ClusterAlgorithm)

    def test_cluster_with_enum_member(self, four_points):
        """Test that algorithms can be selected by enum member."""
        result = ClusteringEngine().cluster(
            four_points, algorithm=ClusterAlgorithm.AGGLOMERATIVE, algorithm_params={"n_clusters": 2}
        )
        assert result.n_clusters == 2
        assert result.labels.tolist() == [1, 1, 2, 2]

    def test_cluster_kmeans(self, clustered_matrix):
        """Test clustering with K-Means algorithm."""
        values, truth = clustered_matrix
        engine = ClusteringEngine()

        result = engine.cluster(
            values,
            algorithm="kmeans",
            algorithm_params={"n_clusters": 3, "n_init": 30}
        )

        assert result.n_clusters == 3
        assert len(result.labels) == len(values)
        assert _same_partition(result.labels, truth)

    def test_cluster_agglomerative(self, clustered_matrix):
        """Test clustering with Agglomerative algorithm."""
        values, truth = clustered_matrix
        engine = ClusteringEngine()

        result = engine.cluster(
            values,
            algorithm="agglomerative",
            algorithm_params={"n_clusters": 3}
        )

        assert result.n_clusters == 3
        assert _same_partition(result.labels, truth)

    def test_cluster_defaults_from_settings(self, clustered_matrix):
        """Test that missing parameters come from the settings."""
        values, _ = clustered_matrix
        settings = Settings(hierarchical=HierarchicalSettings(linkage="ward", n_clusters=2))
        engine = ClusteringEngine(settings)

        result = engine.cluster(values, algorithm="agglomerative")

        assert result.n_clusters == 2
        assert result.details.linkage == "ward"

    def test_case_insensitive_algorithm_name(self, four_points):
        """Test that algorithm names are case-insensitive."""
        engine = ClusteringEngine()

        for alg_name in ["KMeans", "KMEANS", "kmeans"]:
            result = engine.cluster(four_points, algorithm=alg_name, algorithm_params={"n_clusters": 2})
            assert result.n_clusters == 2

    def test_unsupported_algorithm(self, four_points):
        """Test that unsupported algorithm raises error."""
        engine = ClusteringEngine()

        with pytest.raises(InvalidInputError, match="Unsupported algorithm"):
            engine.cluster(four_points, algorithm="hdbscan", algorithm_params={})

    def test_invalid_params_raise(self, four_points):
        """Test that invalid parameters are refused before clustering."""
        engine = ClusteringEngine()

        with pytest.raises(InvalidInputError, match="Invalid kmeans configuration"):
            engine.cluster(four_points, algorithm="kmeans", algorithm_params={"n_clusters": 0})

    def test_entity_labels(self, four_points):
        """Test that labels are carried into the result."""
        engine = ClusteringEngine()
        result = engine.cluster(
            four_points,
            algorithm="agglomerative",
            algorithm_params={"n_clusters": 2, "linkage": "complete"},
            labels=["calm", "serene", "rage", "fury"],
        )
        assert result.clustering.groups() == {1: ["calm", "serene"], 2: ["rage", "fury"]}

    def test_result_to_dict(self, four_points):
        """Test the result summary."""
        result = ClusteringEngine().cluster(
            four_points, algorithm="agglomerative", algorithm_params={"n_clusters": 2}
        )
        data = result.to_dict()

        assert data["n_clusters"] == 2
        assert data["total_items"] == 4
        assert data["cluster_sizes"] == {1: 2, 2: 2}
        assert data["source"] == "hierarchical:average"


@pytest.mark.unit
class TestClusteringEngineValidation:
    """Test suite for validate_clustering_config."""

    def test_valid_kmeans(self):
        """Test that a valid k-means configuration passes."""
        errors = ClusteringEngine().validate_clustering_config(
            "kmeans", {"n_clusters": 3, "n_init": 5}
        )
        assert errors == {}

    def test_invalid_kmeans(self):
        """Test that bad k-means parameters are reported."""
        errors = ClusteringEngine().validate_clustering_config(
            "kmeans", {"n_clusters": 0, "max_iter": -1}
        )
        assert set(errors) == {"n_clusters", "max_iter"}

    def test_numpy_integers_accepted(self):
        """Test that numpy integer parameters count as integers."""
        engine = ClusteringEngine()

        assert engine.validate_clustering_config(
            "kmeans", {"n_clusters": np.int64(3), "n_init": np.int32(5), "max_iter": np.int64(50)}
        ) == {}
        assert engine.validate_clustering_config(
            "agglomerative", {"n_clusters": np.int64(2)}
        ) == {}

    def test_bool_not_an_integer(self):
        """Test that booleans are not taken for cluster counts."""
        errors = ClusteringEngine().validate_clustering_config("kmeans", {"n_clusters": True})
        assert set(errors) == {"n_clusters"}

    def test_agglomerative_needs_stopping_rule(self):
        """Test that agglomerative needs n_clusters or distance_threshold."""
        errors = ClusteringEngine().validate_clustering_config("agglomerative", {})
        assert "config" in errors

    def test_agglomerative_incompatible_metric(self):
        """Test that Ward with Manhattan distances is reported."""
        errors = ClusteringEngine().validate_clustering_config(
            "agglomerative", {"n_clusters": 2, "linkage": "ward", "metric": "manhattan"}
        )
        assert "linkage" in errors

    def test_unknown_algorithm(self):
        """Test that unknown algorithms are reported."""
        errors = ClusteringEngine().validate_clustering_config("dbscan", {})
        assert "algorithm" in errors


@pytest.mark.unit
class TestClusteringEngineAnalysis:
    """Test suite for estimate_optimal_k and analyze."""

    def test_estimate_optimal_k(self, clustered_matrix, fast_settings):
        """Test the elbow estimate on three clear groups."""
        values, _ = clustered_matrix
        engine = ClusteringEngine(fast_settings.model_copy(
            update={"kmeans": KMeansSettings(n_init=20, random_state=0)}
        ))

        assert engine.estimate_optimal_k(values, min_k=1, max_k=6) == 3
        assert engine.estimate_optimal_k(values, min_k=2, max_k=6, method="silhouette") == 3

    def test_estimate_caps_max_k(self, four_points):
        """Test that max_k is capped at the number of entities."""
        engine = ClusteringEngine()
        k = engine.estimate_optimal_k(four_points, min_k=2, max_k=50, method="silhouette")
        assert k == 2

    def test_analyze(self, clustered_matrix, emotion_words):
        """Test a full analysis with automatic k."""
        values, truth = clustered_matrix
        settings = Settings(
            hierarchical=HierarchicalSettings(linkage="ward"),
            kmeans=KMeansSettings(n_init=20, random_state=0),
            validity=ValiditySettings(k_max=6, n_references=10),
        )
        analysis = ClusteringEngine(settings).analyze(
            values, labels=emotion_words, analysis_id="test-analysis"
        )

        assert isinstance(analysis, ClusteringAnalysis)
        assert analysis.analysis_id == "test-analysis"
        assert analysis.n_clusters == 3
        assert analysis.selected_by == "silhouette"
        assert set(analysis.validity) == {"wss", "silhouette", "gap", "hartigan"}
        assert _same_partition(analysis.hierarchical.labels, truth)
        assert _same_partition(analysis.kmeans.labels, truth)
        assert analysis.agreement() == pytest.approx(1.0)
        assert analysis.hierarchical.groups()[1][:2] == ["joy", "delight"]

    def test_analyze_fixed_k(self, four_points):
        """Test that an explicit k skips selection."""
        analysis = ClusteringEngine().analyze(
            four_points, n_clusters=2, linkage="complete", methods=["silhouette"]
        )

        assert analysis.n_clusters == 2
        assert analysis.selected_by is None
        assert analysis.hierarchical.labels.tolist() == [1, 1, 2, 2]
        assert analysis.kmeans.inertia == pytest.approx(1.0)
        assert analysis.validity["silhouette"].k_values == [1, 2, 3, 4]

    def test_analyze_without_methods_needs_k(self, four_points):
        """Test that no validity methods and no k is an error."""
        with pytest.raises(InvalidInputError, match="n_clusters"):
            ClusteringEngine().analyze(four_points, methods=[])

    def test_analyze_to_model(self, four_points):
        """Test export of a whole analysis."""
        analysis = ClusteringEngine().analyze(
            four_points, n_clusters=2, methods=["wss", "silhouette"]
        )
        model = analysis.to_model()

        assert model.dendrogram.n_entities == 4
        assert model.hierarchical.n_clusters == 2
        assert model.kmeans.n_clusters == 2
        assert set(model.validity) == {"wss", "silhouette"}
        assert model.metadata["n_entities"] == 4
        assert model.metadata["rand_agreement"] == pytest.approx(1.0)

    def test_analyze_each(self, four_points):
        """Test one analysis per matrix, e.g. imputed datasets."""
        shifted = four_points + 0.1
        analyses = ClusteringEngine().analyze_each(
            [four_points, shifted], n_clusters=2, methods=["wss"], analysis_id="mi"
        )

        assert [a.analysis_id for a in analyses] == ["mi-0", "mi-1"]
        for analysis in analyses:
            assert analysis.hierarchical.labels.tolist() == [1, 1, 2, 2]

    def test_from_settings(self, settings_file):
        """Test building an engine from the global settings."""
        reload_config(settings_file("hierarchical:\n  linkage: single\n"))
        engine = ClusteringEngine.from_settings()
        assert engine.settings.hierarchical.linkage == "single"

    def test_from_settings_configures_logging(self, settings_file, tmp_path):
        """Test that the logging section sets up the log file handler."""
        log_file = tmp_path / "logs" / "engine.log"
        reload_config(settings_file(
            "logging:\n"
            "  level: warning\n"
            "  format: json\n"
            "  file:\n"
            "    enabled: true\n"
            f"    path: {log_file}\n"
        ))

        try:
            ClusteringEngine.from_settings()

            handlers = [
                h for h in logging.root.handlers
                if isinstance(h, logging.handlers.RotatingFileHandler)
            ]
            assert [h.baseFilename for h in handlers] == [str(log_file)]
            assert handlers[0].level == logging.WARNING
        finally:
            for handler in list(logging.root.handlers):
                if isinstance(handler, logging.handlers.RotatingFileHandler):
                    logging.root.removeHandler(handler)
                    handler.close()
            structlog.reset_defaults()

    def test_analyze_single_entity_rejected(self):
        """Test that an analysis needs at least two entities."""
        with pytest.raises(InvalidInputError):
            ClusteringEngine().analyze([[1.0, 2.0]], n_clusters=1)
