"""
Base Clustering Definitions.

Defines the data containers shared by every clustering path (feature matrix,
flat clustering, result) and the contract for pluggable algorithms.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from emotion_clustering.utils.error_handling import InvalidInputError


# =============================================================================
# Feature Matrix
# =============================================================================


def validate_feature_matrix(data: Any, min_entities: int = 1) -> np.ndarray:
    """
    Validate raw input and return a read-only float64 copy (N x D).

    Args:
        data: Array-like of N rows with D numeric features each
        min_entities: Minimum number of rows required

    Returns:
        Read-only 2-D array

    Raises:
        InvalidInputError: Ragged rows, wrong shape, non-numeric or
            non-finite values, or fewer than min_entities rows
    """
    if not isinstance(data, np.ndarray) and isinstance(data, (list, tuple)):
        lengths = {len(row) if hasattr(row, "__len__") else -1 for row in data}
        if len(lengths) > 1:
            raise InvalidInputError(
                "Feature matrix rows have inconsistent length",
                details={"row_lengths": sorted(lengths)},
            )

    try:
        values = np.array(data, dtype=np.float64, copy=True)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Feature matrix is not numeric: {e}") from e

    if values.ndim != 2:
        raise InvalidInputError(
            f"Feature matrix must be 2-dimensional, got shape {values.shape}",
            details={"shape": list(values.shape)},
        )

    n_entities, n_features = values.shape
    if n_entities < min_entities:
        raise InvalidInputError(
            f"Need at least {min_entities} entities, got {n_entities}",
            details={"n_entities": n_entities},
        )
    if n_features < 1:
        raise InvalidInputError("Feature matrix has no features")

    finite = np.isfinite(values)
    if not finite.all():
        bad_rows = np.unique(np.nonzero(~finite)[0])
        raise InvalidInputError(
            f"Feature matrix contains {int((~finite).sum())} non-finite values",
            details={"rows": bad_rows.tolist()},
        )

    values.setflags(write=False)
    return values


class FeatureMatrix:
    """
    N entities x D numeric features with optional entity labels.

    The values are copied on construction and kept read-only, so the engine
    never mutates caller data.
    """

    def __init__(
        self,
        values: Any,
        labels: Optional[Sequence[Any]] = None,
        min_entities: int = 1,
    ):
        self.values = validate_feature_matrix(values, min_entities=min_entities)

        if labels is not None:
            labels = tuple(str(label) for label in labels)
            if len(labels) != self.values.shape[0]:
                raise InvalidInputError(
                    f"Got {len(labels)} labels for {self.values.shape[0]} entities"
                )
            if len(set(labels)) != len(labels):
                seen, duplicates = set(), []
                for label in labels:
                    if label in seen:
                        duplicates.append(label)
                    seen.add(label)
                raise InvalidInputError(
                    "Entity labels must be unique",
                    details={"duplicates": sorted(set(duplicates))},
                )
        self.labels: Optional[Tuple[str, ...]] = labels

    @classmethod
    def coerce(
        cls,
        data: Any,
        labels: Optional[Sequence[Any]] = None,
        min_entities: int = 1,
    ) -> "FeatureMatrix":
        """
        Build a FeatureMatrix from any supported input.

        A DataFrame-like object (has `to_numpy` and `index`) contributes its
        index as entity labels when none are given.
        """
        if isinstance(data, FeatureMatrix):
            if data.n_entities < min_entities:
                raise InvalidInputError(
                    f"Need at least {min_entities} entities, got {data.n_entities}"
                )
            if labels is None:
                return data
            return cls(data.values, labels, min_entities)

        if labels is None and hasattr(data, "to_numpy") and hasattr(data, "index"):
            labels = list(data.index)
            data = data.to_numpy()

        return cls(data, labels, min_entities)

    @property
    def n_entities(self) -> int:
        return self.values.shape[0]

    @property
    def n_features(self) -> int:
        return self.values.shape[1]

    def __len__(self) -> int:
        return self.n_entities

    def __repr__(self) -> str:
        return f"FeatureMatrix(n_entities={self.n_entities}, n_features={self.n_features})"


# =============================================================================
# Numeric helpers
# =============================================================================


def cluster_centroids(values: np.ndarray, labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Mean feature vector of every cluster.

    Returns:
        Tuple of (sorted cluster ids, centroid array with one row per id)
    """
    ids = np.unique(labels)
    centroids = np.vstack([values[labels == cid].mean(axis=0) for cid in ids])
    return ids, centroids


def within_cluster_sum_of_squares(values: np.ndarray, labels: np.ndarray) -> float:
    """
    Total squared distance of every entity to its cluster mean.

    Deviations are taken from each cluster's own mean (two-pass) rather than
    from sum(x^2) - n * mean^2, which loses precision for tight clusters.
    """
    values = np.asarray(values, dtype=np.float64)
    labels = np.asarray(labels)
    if labels.shape[0] != values.shape[0]:
        raise InvalidInputError(
            f"Got {labels.shape[0]} labels for {values.shape[0]} entities"
        )

    total = 0.0
    for cid in np.unique(labels):
        members = values[labels == cid]
        deviations = members - members.mean(axis=0)
        total += float(np.einsum("ij,ij->", deviations, deviations))
    return total


# =============================================================================
# Flat Clustering
# =============================================================================


@dataclass(frozen=True, eq=False)
class FlatClustering:
    """
    Entity index -> cluster id (1..k).

    Ids carry no semantic order beyond being numbered by the lowest entity
    index of each cluster, which keeps them reproducible.
    """

    labels: np.ndarray
    source: str = "unknown"
    entity_labels: Optional[Tuple[str, ...]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_assignments(
        cls,
        assignments: Any,
        source: str = "unknown",
        entity_labels: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "FlatClustering":
        """Renumber arbitrary integer assignments to 1..k by first appearance."""
        assignments = np.asarray(assignments)
        if assignments.ndim != 1 or assignments.size == 0:
            raise InvalidInputError("Assignments must be a non-empty 1-D sequence")

        _, first_index, inverse = np.unique(
            assignments, return_index=True, return_inverse=True
        )
        rank = np.empty(len(first_index), dtype=np.int64)
        rank[np.argsort(first_index, kind="stable")] = np.arange(len(first_index))
        labels = rank[inverse.reshape(-1)] + 1
        labels.setflags(write=False)

        return cls(
            labels=labels,
            source=source,
            entity_labels=tuple(entity_labels) if entity_labels is not None else None,
            metadata=dict(metadata or {}),
        )

    @property
    def n_clusters(self) -> int:
        return int(np.unique(self.labels).size)

    @property
    def n_entities(self) -> int:
        return int(self.labels.shape[0])

    @property
    def cluster_ids(self) -> List[int]:
        return np.unique(self.labels).tolist()

    def members(self, cluster_id: int) -> np.ndarray:
        """Entity indices assigned to cluster_id."""
        return np.flatnonzero(self.labels == cluster_id)

    def cluster_sizes(self) -> Dict[int, int]:
        ids, counts = np.unique(self.labels, return_counts=True)
        return dict(zip(ids.tolist(), counts.tolist()))

    def groups(self) -> Dict[int, List[Union[str, int]]]:
        """Cluster id -> entity labels (or indices when unlabeled)."""
        result: Dict[int, List[Union[str, int]]] = {}
        for cid in self.cluster_ids:
            idx = self.members(cid).tolist()
            if self.entity_labels is not None:
                result[cid] = [self.entity_labels[i] for i in idx]
            else:
                result[cid] = idx
        return result

    def to_model(self):
        from emotion_clustering.schemas.data_models import FlatClusteringModel

        return FlatClusteringModel(
            n_clusters=self.n_clusters,
            labels=self.labels.tolist(),
            entity_labels=list(self.entity_labels) if self.entity_labels else None,
            source=self.source,
        )

    def __repr__(self) -> str:
        return (
            f"FlatClustering(source={self.source}, n_clusters={self.n_clusters}, "
            f"sizes={self.cluster_sizes()})"
        )


# =============================================================================
# Algorithm contract
# =============================================================================


@dataclass
class ClusteringConfig:
    """Configuration for clustering algorithms."""

    algorithm_name: str
    params: Dict[str, Any]


class ClusteringResult:
    """Results from a clustering operation run through the facade."""

    def __init__(
        self,
        clustering: FlatClustering,
        quality_metrics: Dict[str, float],
        centroids: Optional[np.ndarray] = None,
        details: Optional[Any] = None,
    ):
        self.clustering = clustering
        self.n_clusters = clustering.n_clusters
        self.quality_metrics = quality_metrics
        self.centroids = centroids
        self.details = details

    @property
    def labels(self) -> np.ndarray:
        return self.clustering.labels

    @property
    def cluster_centroids(self) -> Optional[Dict[int, np.ndarray]]:
        """Return centroids as dict mapping cluster_id -> centroid_vector."""
        if self.centroids is None:
            return None
        return {i + 1: self.centroids[i] for i in range(len(self.centroids))}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.clustering.source,
            "n_clusters": self.n_clusters,
            "quality_metrics": self.quality_metrics,
            "total_items": self.clustering.n_entities,
            "cluster_sizes": self.clustering.cluster_sizes(),
        }


class BaseClusteringAlgorithm(ABC):
    """
    Abstract base class for clustering algorithms.

    K-means and agglomerative clustering inherit from this class and
    implement cluster().
    """

    def __init__(self, config: ClusteringConfig):
        """
        Initialize clustering algorithm.

        Args:
            config: Clustering configuration
        """
        self.config = config
        self.name = config.algorithm_name

    @abstractmethod
    def cluster(
        self,
        matrix: Any,
        labels: Optional[Sequence[str]] = None,
    ) -> ClusteringResult:
        """
        Partition the entities of a feature matrix.

        Args:
            matrix: Feature matrix (N x D)
            labels: Optional entity labels

        Returns:
            ClusteringResult with flat clustering and metrics
        """
        pass

    def _calculate_quality_metrics(
        self,
        values: np.ndarray,
        labels: np.ndarray,
        dissimilarity: Optional[Any] = None,
    ) -> Dict[str, float]:
        """
        Calculate clustering quality metrics.

        Args:
            values: Feature values (N x D)
            labels: Cluster ids
            dissimilarity: Optional precomputed DissimilarityMatrix used for
                the silhouette

        Returns:
            Dictionary of quality metrics
        """
        from sklearn.metrics import calinski_harabasz_score, davies_bouldin_score

        from emotion_clustering.core.dissimilarity import compute_dissimilarity
        from emotion_clustering.core.validity import silhouette_score

        metrics = {"wss": within_cluster_sum_of_squares(values, labels)}

        n_entities = values.shape[0]
        n_clusters = int(np.unique(labels).size)
        metrics["n_clusters"] = float(n_clusters)

        # Silhouette and the scikit-learn indices are undefined outside 2..N-1
        if 2 <= n_clusters <= n_entities - 1:
            if dissimilarity is None:
                dissimilarity = compute_dissimilarity(values, "euclidean")
            metrics["silhouette_score"] = silhouette_score(dissimilarity, labels)
            metrics["davies_bouldin_index"] = float(davies_bouldin_score(values, labels))
            metrics["calinski_harabasz_index"] = float(
                calinski_harabasz_score(values, labels)
            )

        return metrics
