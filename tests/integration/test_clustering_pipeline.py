"""
Integration tests for the full analysis pipeline.

Tests the workflow from feature matrix to exported summary including:
- Labelled and DataFrame-like input
- Dendrogram, flat clusterings and validity reports from one call
- YAML configuration driving the engine
- JSON export of the whole analysis
"""

import pytest
import numpy as np
from emotion_clustering.config.settings_loader import Settings, ValiditySettings, reload_config
from emotion_clustering.core.clustering_engine import ClusteringEngine
from emotion_clustering.schemas.data_models import AnalysisSummaryModel


class _Frame:
    """Minimal DataFrame stand-in: row index plus to_numpy()."""

    def __init__(self, values, index):
        self._values = np.asarray(values)
        self.index = list(index)

    def to_numpy(self):
        return self._values


def _same_partition(a, b):
    a, b = np.asarray(a), np.asarray(b)
    return bool(((a[:, None] == a[None, :]) == (b[:, None] == b[None, :])).all())


@pytest.mark.integration
class TestClusteringPipeline:
    """Integration tests for ClusteringEngine.analyze."""

    def test_four_points_end_to_end(self, four_points):
        """Test dendrogram, k-means and validity on two tight pairs."""
        analysis = ClusteringEngine().analyze(
            four_points,
            labels=["calm", "serene", "rage", "fury"],
            linkage="complete",
            methods=["wss", "silhouette"],
        )

        merges = analysis.dendrogram.merges
        assert [(m.left, m.right) for m in merges] == [(0, 1), (2, 3), (4, 5)]
        assert merges[0].height == pytest.approx(1.0)
        assert merges[-1].height == pytest.approx(np.sqrt(101.0))

        assert analysis.n_clusters == 2
        assert analysis.selected_by == "silhouette"
        assert analysis.hierarchical.groups() == {1: ["calm", "serene"], 2: ["rage", "fury"]}
        assert analysis.kmeans.inertia == pytest.approx(1.0)
        np.testing.assert_allclose(
            analysis.kmeans.centroids, [[0.0, 0.5], [10.0, 0.5]]
        )

    def test_dataframe_like_input(self, clustered_matrix, emotion_words):
        """Test that a frame's index becomes the entity labels."""
        values, truth = clustered_matrix
        frame = _Frame(values, emotion_words)

        analysis = ClusteringEngine().analyze(
            frame, n_clusters=3, linkage="average", methods=["silhouette"]
        )

        assert analysis.features.labels == tuple(emotion_words)
        assert _same_partition(analysis.hierarchical.labels, truth)
        groups = analysis.hierarchical.groups()
        assert groups[1][0] == "joy"
        assert "rage" in groups[2] and "fear" in groups[3]

    @pytest.mark.parametrize("linkage", ["single", "complete", "average", "centroid", "ward"])
    def test_every_linkage_recovers_groups(self, clustered_matrix, linkage):
        """Test that all linkages separate well-spaced groups."""
        values, truth = clustered_matrix
        analysis = ClusteringEngine().analyze(
            values, n_clusters=3, linkage=linkage, methods=[]
        )

        assert analysis.dendrogram.linkage == linkage
        assert _same_partition(analysis.hierarchical.labels, truth)

    def test_yaml_config_drives_engine(self, settings_file, four_points):
        """Test that a settings file selects metric, linkage and methods."""
        reload_config(settings_file(
            "dissimilarity:\n"
            "  metric: manhattan\n"
            "hierarchical:\n"
            "  linkage: single\n"
            "validity:\n"
            "  methods: [wss, hartigan]\n"
            "  k_max: 3\n"
        ))
        analysis = ClusteringEngine.from_settings().analyze(four_points)

        assert analysis.dissimilarity.metric == "manhattan"
        assert analysis.dissimilarity[0, 3] == pytest.approx(11.0)
        assert analysis.dendrogram.linkage == "single"
        assert set(analysis.validity) == {"wss", "hartigan"}
        assert analysis.validity["wss"].k_values == [1, 2, 3]

    def test_export_round_trip(self, four_points):
        """Test that the exported summary survives JSON."""
        analysis = ClusteringEngine().analyze(
            four_points, linkage="ward", methods=["wss", "silhouette"], analysis_id="export"
        )
        model = analysis.to_model()
        restored = AnalysisSummaryModel.model_validate_json(model.model_dump_json())

        assert restored == model
        assert restored.metadata["analysis_id"] == "export"
        assert restored.dendrogram.merges[-1].height == pytest.approx(100.0)
        assert restored.validity["silhouette"].scores[0].score is None

        data = model.model_dump()
        assert data["hierarchical"]["labels"] == [1, 1, 2, 2]
        assert data["kmeans"]["clustering"]["labels"] == [1, 1, 2, 2]

    def test_repeated_analyses_are_reproducible(self, clustered_matrix):
        """Test that a fixed random state gives identical results."""
        values, _ = clustered_matrix
        settings = Settings(validity=ValiditySettings(k_max=4, n_references=10))
        first = ClusteringEngine(settings).analyze(values, methods=["gap"])
        second = ClusteringEngine(settings).analyze(values, methods=["gap"])

        np.testing.assert_array_equal(first.validity["gap"].values, second.validity["gap"].values)
        np.testing.assert_array_equal(first.kmeans.labels, second.kmeans.labels)
        assert first.n_clusters == second.n_clusters
