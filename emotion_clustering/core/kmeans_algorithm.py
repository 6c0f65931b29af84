"""
K-Means Clustering Algorithm Implementation.

Lloyd's algorithm with several random restarts. K-Means is ideal for:
- Partitioning when the number of clusters is known or being scanned
- Compact, roughly spherical groups of entities
- Feeding cluster-count validity metrics (WSS, gap, Hartigan)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed

from emotion_clustering.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringConfig,
    ClusteringResult,
    FeatureMatrix,
    FlatClustering,
)
from emotion_clustering.utils.error_handling import (
    ConvergenceWarning,
    DegenerateClusterWarning,
    InvalidInputError,
    warn_and_log,
)

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class KMeansResult:
    """
    Best of all restarts.

    Cluster id c (1..k) corresponds to centroids[c - 1]. Ids are numbered by
    the lowest entity index of each cluster; centroids that ended with no
    members come last.

    empty_cluster_events counts empty clusters seen across all restarts,
    not just the one kept.
    """

    labels: np.ndarray
    centroids: np.ndarray
    inertia: float
    n_iter: int
    converged: bool
    inertia_history: List[float]
    restart_inertias: List[float]
    best_restart: int
    empty_cluster_events: int = 0
    entity_labels: Optional[Tuple[str, ...]] = None
    seed: Optional[int] = None

    @property
    def n_clusters(self) -> int:
        return int(self.centroids.shape[0])

    @property
    def final_inertia(self) -> float:
        return self.inertia

    @property
    def clustering(self) -> FlatClustering:
        return FlatClustering.from_assignments(
            self.labels,
            source="kmeans",
            entity_labels=self.entity_labels,
            metadata={"n_clusters": self.n_clusters, "inertia": self.inertia},
        )

    def to_model(self):
        from emotion_clustering.schemas.data_models import KMeansSummaryModel

        return KMeansSummaryModel(
            n_clusters=self.n_clusters,
            inertia=self.inertia,
            n_iter=self.n_iter,
            converged=self.converged,
            restart_inertias=self.restart_inertias,
            empty_cluster_events=self.empty_cluster_events,
            centroids=self.centroids.tolist(),
            clustering=self.clustering.to_model(),
        )

    def __repr__(self) -> str:
        return (
            f"KMeansResult(n_clusters={self.n_clusters}, inertia={self.inertia:.4f}, "
            f"n_iter={self.n_iter}, converged={self.converged})"
        )


@dataclass
class _Run:
    assignments: np.ndarray
    centroids: np.ndarray
    inertia: float
    n_iter: int
    converged: bool
    history: List[float] = field(default_factory=list)
    empty_events: int = 0


def _squared_distances(values: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """N x K squared Euclidean distances, from differences to avoid cancellation."""
    diff = values[:, np.newaxis, :] - centroids[np.newaxis, :, :]
    return np.einsum("nkd,nkd->nk", diff, diff)


def _assign(values: np.ndarray, centroids: np.ndarray) -> Tuple[np.ndarray, float]:
    sq = _squared_distances(values, centroids)
    # argmin returns the first minimum: ties go to the lowest centroid index
    assignments = np.argmin(sq, axis=1)
    inertia = float(sq[np.arange(values.shape[0]), assignments].sum())
    return assignments, inertia


def _update(
    values: np.ndarray, assignments: np.ndarray, centroids: np.ndarray
) -> Tuple[np.ndarray, int]:
    """Move centroids to member means. Empty centroids keep their position."""
    updated = centroids.copy()
    empty = 0
    for c in range(centroids.shape[0]):
        mask = assignments == c
        if mask.any():
            updated[c] = values[mask].mean(axis=0)
        else:
            empty += 1
    return updated, empty


def _lloyd(values: np.ndarray, initial: np.ndarray, max_iter: int) -> _Run:
    centroids = initial.astype(np.float64, copy=True)
    assignments, inertia = _assign(values, centroids)
    history = [inertia]
    empty_events = 0
    converged = False

    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        centroids, empty = _update(values, assignments, centroids)
        empty_events += empty
        new_assignments, inertia = _assign(values, centroids)
        history.append(inertia)
        if np.array_equal(new_assignments, assignments):
            converged = True
            break
        assignments = new_assignments

    return _Run(
        assignments=assignments,
        centroids=centroids,
        inertia=inertia,
        n_iter=n_iter,
        converged=converged,
        history=history,
        empty_events=empty_events,
    )


def _single_restart(
    values: np.ndarray,
    n_clusters: int,
    max_iter: int,
    seed_sequence: np.random.SeedSequence,
) -> _Run:
    rng = np.random.default_rng(seed_sequence)
    initial_idx = rng.choice(values.shape[0], size=n_clusters, replace=False)
    return _lloyd(values, values[initial_idx], max_iter)


def _canonicalize(assignments: np.ndarray, centroids: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Renumber clusters by lowest member index; empty centroids go last."""
    k = centroids.shape[0]
    order: List[int] = []
    for c in assignments.tolist():
        if c not in order:
            order.append(c)
    order.extend(c for c in range(k) if c not in order)

    position = np.empty(k, dtype=np.int64)
    position[np.asarray(order)] = np.arange(k)
    return position[assignments] + 1, centroids[np.asarray(order)]


def _check_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
        raise InvalidInputError(
            f"{name} must be a positive integer, got {value!r}",
            details={name: repr(value)},
        )
    return int(value)


class KMeansClusterer:
    """
    Lloyd's k-means with uniform random initialization and restarts.

    Every restart samples k distinct entities as initial centroids using its
    own seed derived from `random_state`, so a fixed seed gives identical
    results whether restarts run sequentially or in parallel.
    """

    def __init__(
        self,
        n_clusters: int,
        n_init: int = 10,
        max_iter: int = 300,
        random_state: Optional[int] = 42,
        n_jobs: Optional[int] = 1,
    ):
        self.n_clusters = _check_positive_int("n_clusters", n_clusters)
        self.n_init = _check_positive_int("n_init", n_init)
        self.max_iter = _check_positive_int("max_iter", max_iter)
        self.random_state = random_state
        self.n_jobs = n_jobs

    def run(self, matrix: Any, labels: Optional[Sequence[str]] = None) -> KMeansResult:
        """
        Run all restarts and keep the one with the lowest inertia.

        Args:
            matrix: Feature matrix (N x D)
            labels: Optional entity labels

        Returns:
            KMeansResult

        Raises:
            InvalidInputError: n_clusters > N or a malformed matrix
        """
        features = FeatureMatrix.coerce(matrix, labels)
        values = features.values
        n_entities = values.shape[0]

        if self.n_clusters > n_entities:
            raise InvalidInputError(
                f"Cannot form {self.n_clusters} clusters from {n_entities} entities",
                details={"n_clusters": self.n_clusters, "n_entities": n_entities},
            )

        seeds = np.random.SeedSequence(self.random_state).spawn(self.n_init)
        if self.n_jobs is None or self.n_jobs == 1:
            runs = [
                _single_restart(values, self.n_clusters, self.max_iter, s) for s in seeds
            ]
        else:
            # Results come back in submission order, so selection stays deterministic
            runs = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(_single_restart)(values, self.n_clusters, self.max_iter, s)
                for s in seeds
            )

        best_idx = min(range(len(runs)), key=lambda r: (runs[r].inertia, r))
        best = runs[best_idx]
        cluster_ids, centroids = _canonicalize(best.assignments, best.centroids)

        logger.debug(
            f"K-Means k={self.n_clusters}: best restart {best_idx} of {self.n_init}, "
            f"inertia={best.inertia:.6g}, iterations={best.n_iter}"
        )

        empty_events = sum(run.empty_events for run in runs)
        if empty_events:
            warn_and_log(
                "kmeans_empty_cluster",
                f"{empty_events} empty-cluster events over {self.n_init} k-means restarts "
                f"(k={self.n_clusters}); empty centroids kept their position",
                category=DegenerateClusterWarning,
                n_clusters=self.n_clusters,
                restarts_affected=[r for r, run in enumerate(runs) if run.empty_events],
                best_restart=best_idx,
            )
        if not best.converged:
            warn_and_log(
                "kmeans_not_converged",
                f"K-means (k={self.n_clusters}) did not converge within "
                f"{self.max_iter} iterations",
                category=ConvergenceWarning,
                n_clusters=self.n_clusters,
                max_iter=self.max_iter,
            )

        return KMeansResult(
            labels=cluster_ids,
            centroids=centroids,
            inertia=best.inertia,
            n_iter=best.n_iter,
            converged=best.converged,
            inertia_history=best.history,
            restart_inertias=[run.inertia for run in runs],
            best_restart=best_idx,
            empty_cluster_events=empty_events,
            entity_labels=features.labels,
            seed=self.random_state,
        )


def run_kmeans(
    matrix: Any,
    k: int,
    restarts: int = 10,
    max_iterations: int = 300,
    seed: Optional[int] = 42,
    n_jobs: Optional[int] = 1,
) -> KMeansResult:
    """Run k-means with `restarts` random initializations."""
    return KMeansClusterer(
        n_clusters=k,
        n_init=restarts,
        max_iter=max_iterations,
        random_state=seed,
        n_jobs=n_jobs,
    ).run(matrix)


class KMeansAlgorithm(BaseClusteringAlgorithm):
    """
    K-Means clustering through the engine interface.

    Best for: Scanning many cluster counts quickly
    Strengths: Fast, simple, centroids summarise each group
    Weaknesses: Requires k, assumes spherical clusters, sensitive to outliers
    """

    def __init__(self, config: ClusteringConfig):
        """
        Initialize K-Means algorithm.

        Args:
            config: Clustering configuration
        """
        super().__init__(config)

        self.clusterer = KMeansClusterer(
            n_clusters=config.params.get("n_clusters", 2),
            n_init=config.params.get("n_init", 10),
            max_iter=config.params.get("max_iter", 300),
            random_state=config.params.get("random_state", 42),
            n_jobs=config.params.get("n_jobs", 1),
        )
        self.n_clusters = self.clusterer.n_clusters

        logger.info(
            f"Initialized K-Means: n_clusters={self.n_clusters}, "
            f"n_init={self.clusterer.n_init}, max_iter={self.clusterer.max_iter}"
        )

    def cluster(
        self,
        matrix: Any,
        labels: Optional[Sequence[str]] = None,
        dissimilarity: Optional[Any] = None,
    ) -> ClusteringResult:
        """
        Perform K-Means clustering.

        Args:
            matrix: Feature matrix (N x D)
            labels: Optional entity labels
            dissimilarity: Precomputed distances reused for the silhouette

        Returns:
            ClusteringResult with the flat clustering, metrics and the
            KMeansResult in `details`
        """
        features = FeatureMatrix.coerce(matrix, labels)
        logger.info(f"Starting K-Means clustering on {features.n_entities} entities")

        result = self.clusterer.run(features)

        quality_metrics = self._calculate_quality_metrics(
            features.values, result.labels, dissimilarity
        )
        quality_metrics["inertia"] = result.inertia
        quality_metrics["iterations"] = float(result.n_iter)

        logger.info(f"K-Means created {result.clustering.n_clusters} clusters")

        return ClusteringResult(
            clustering=result.clustering,
            quality_metrics=quality_metrics,
            centroids=result.centroids,
            details=result,
        )
