"""
Agglomerative Hierarchical Clustering.

Builds a dendrogram by greedily merging the closest pair of clusters until
one cluster remains, then cuts it into flat clusterings. Agglomerative
clustering is ideal for:
- Small to medium sets of entities (emotion words, survey items)
- When the merge hierarchy itself is of interest
- Choosing the number of clusters after the fact

The tree is stored as an arena: node ids 0..N-1 are the entities, id N+s is
the cluster created by merge step s. Children are referenced by id.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from emotion_clustering.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringConfig,
    ClusteringResult,
    FeatureMatrix,
    FlatClustering,
    cluster_centroids,
)
from emotion_clustering.core.dissimilarity import DissimilarityMatrix
from emotion_clustering.core.linkage import LinkageStrategy
from emotion_clustering.schemas.data_models import LinkageMethod
from emotion_clustering.utils.error_handling import InvalidInputError

logger = logging.getLogger(__name__)

# Heights closer than this are treated as equal when checking monotonicity
HEIGHT_TOLERANCE = 1e-10


@dataclass(frozen=True)
class ClusterNode:
    """One node of the merge tree."""

    node_id: int
    members: Tuple[int, ...]
    height: float = 0.0
    left: Optional[int] = None
    right: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def is_leaf(self) -> bool:
        return self.left is None


@dataclass(frozen=True)
class MergeEvent:
    """Merge step: clusters `left` and `right` joined at `height`."""

    step: int
    left: int
    right: int
    height: float
    size: int


class Dendrogram:
    """
    Completed merge tree over N entities with N-1 merge events.

    `left` of every merge is the cluster holding the lower entity index.
    """

    def __init__(
        self,
        nodes: List[ClusterNode],
        merges: List[MergeEvent],
        linkage: str,
        metric: str,
        entity_labels: Optional[Sequence[str]] = None,
    ):
        self._nodes = tuple(nodes)
        self.merges: Tuple[MergeEvent, ...] = tuple(merges)
        self.linkage = linkage
        self.metric = metric
        self.entity_labels = tuple(entity_labels) if entity_labels is not None else None

    @property
    def n_entities(self) -> int:
        return len(self.merges) + 1

    @property
    def root(self) -> ClusterNode:
        return self._nodes[-1]

    @property
    def heights(self) -> np.ndarray:
        return np.array([m.height for m in self.merges], dtype=np.float64)

    def node(self, node_id: int) -> ClusterNode:
        return self._nodes[node_id]

    @property
    def inversions(self) -> List[int]:
        """Merge steps lower than one of their children (centroid linkage)."""
        steps = []
        for merge in self.merges:
            child_height = max(self._nodes[merge.left].height, self._nodes[merge.right].height)
            if merge.height < child_height - HEIGHT_TOLERANCE:
                steps.append(merge.step)
        return steps

    @property
    def is_monotonic(self) -> bool:
        return not self.inversions

    def to_linkage_matrix(self) -> np.ndarray:
        """(N-1) x 4 rows of [left, right, height, size], scipy's layout."""
        return np.array(
            [[m.left, m.right, m.height, m.size] for m in self.merges],
            dtype=np.float64,
        )

    def leaf_order(self) -> List[int]:
        """Entity indices left to right as a dendrogram plot draws them."""
        order: List[int] = []
        stack = [self.root.node_id]
        while stack:
            node = self._nodes[stack.pop()]
            if node.is_leaf:
                order.append(node.node_id)
            else:
                stack.append(node.right)
                stack.append(node.left)
        return order

    def cophenetic_matrix(self) -> np.ndarray:
        """Height at which each pair of entities first shares a cluster."""
        n = self.n_entities
        coph = np.zeros((n, n), dtype=np.float64)
        for merge in self.merges:
            left = np.asarray(self._nodes[merge.left].members)
            right = np.asarray(self._nodes[merge.right].members)
            coph[np.ix_(left, right)] = merge.height
            coph[np.ix_(right, left)] = merge.height
        return coph

    def cophenetic_correlation(self, dissimilarity: DissimilarityMatrix) -> float:
        """Pearson correlation between cophenetic and original distances."""
        rows, cols = np.triu_indices(self.n_entities, k=1)
        original = np.asarray(dissimilarity.values)[rows, cols]
        coph = self.cophenetic_matrix()[rows, cols]
        if np.std(original) == 0 or np.std(coph) == 0:
            return float("nan")
        return float(np.corrcoef(original, coph)[0, 1])

    # ------------------------------------------------------------------
    # Cuts
    # ------------------------------------------------------------------

    def cut(self, n_clusters: int) -> FlatClustering:
        """
        Flat clustering with exactly n_clusters clusters.

        Applies the first N - n_clusters merges.

        Raises:
            InvalidInputError: n_clusters < 1 or > N
        """
        n = self.n_entities
        if isinstance(n_clusters, bool) or not isinstance(n_clusters, (int, np.integer)):
            raise InvalidInputError(f"Cluster count must be an integer, got {n_clusters!r}")
        if n_clusters < 1 or n_clusters > n:
            raise InvalidInputError(
                f"Cannot cut {n} entities into {n_clusters} clusters",
                details={"n_clusters": int(n_clusters), "n_entities": n},
            )

        included = [True] * (n - int(n_clusters)) + [False] * (int(n_clusters) - 1)
        return self._assign(included, metadata={"n_clusters": int(n_clusters)})

    def cut_at_height(self, height: float) -> FlatClustering:
        """
        Flat clustering from every merge below `height`.

        A merge counts only when both of its children do, which matters
        only for trees with inversions.

        Raises:
            InvalidInputError: height < 0 or not finite
        """
        if not np.isfinite(height) or height < 0:
            raise InvalidInputError(
                f"Cut height must be a non-negative number, got {height}",
                details={"height": float(height)},
            )

        n = self.n_entities
        node_included = [True] * n
        included = []
        for merge in self.merges:
            ok = (
                merge.height < height
                and node_included[merge.left]
                and node_included[merge.right]
            )
            included.append(ok)
            node_included.append(ok)
        return self._assign(included, metadata={"height": float(height)})

    def _assign(self, included: List[bool], metadata: Dict[str, Any]) -> FlatClustering:
        assignment = np.arange(self.n_entities)
        for merge, keep in zip(self.merges, included):
            if keep:
                members = np.asarray(self._nodes[self.n_entities + merge.step].members)
                assignment[members] = self.n_entities + merge.step
        return FlatClustering.from_assignments(
            assignment,
            source=f"hierarchical:{self.linkage}",
            entity_labels=self.entity_labels,
            metadata=metadata,
        )

    def to_model(self):
        from emotion_clustering.schemas.data_models import DendrogramModel, MergeEventModel

        return DendrogramModel(
            n_entities=self.n_entities,
            linkage=self.linkage,
            metric=self.metric,
            merges=[
                MergeEventModel(
                    step=m.step, left=m.left, right=m.right, height=m.height, size=m.size
                )
                for m in self.merges
            ],
            leaf_order=self.leaf_order(),
            entity_labels=list(self.entity_labels) if self.entity_labels else None,
        )

    def __repr__(self) -> str:
        return (
            f"Dendrogram(n_entities={self.n_entities}, linkage={self.linkage}, "
            f"root_height={self.root.height:.4f})"
        )


class HierarchicalClusterer:
    """
    Greedy agglomerative clusterer.

    Ties between equally close pairs are broken by the lowest entity index
    in the first cluster, then in the second, so results are reproducible.
    """

    def __init__(self, linkage: Union[str, LinkageMethod, LinkageStrategy] = "average"):
        self.linkage = LinkageStrategy.resolve(linkage)

    def build(
        self,
        dissimilarity: Union[DissimilarityMatrix, np.ndarray],
        linkage: Optional[Union[str, LinkageMethod, LinkageStrategy]] = None,
        method: str = "recurrence",
        features: Optional[Any] = None,
        entity_labels: Optional[Sequence[str]] = None,
    ) -> Dendrogram:
        """
        Build the full dendrogram.

        Args:
            dissimilarity: DissimilarityMatrix or square distance array
            linkage: Overrides the clusterer's linkage
            method: "recurrence" (Lance-Williams updates) or "recompute"
                (linkage recomputed from raw data each step, for checks)
            features: Feature matrix, required by "recompute" with centroid
                or Ward linkage
            entity_labels: Labels carried into flat clusterings

        Returns:
            Dendrogram with N-1 merges

        Raises:
            InvalidInputError: Matrix not square/symmetric, N < 2, or a
                linkage incompatible with the metric
        """
        strategy = LinkageStrategy.resolve(linkage) if linkage is not None else self.linkage
        dissimilarity = DissimilarityMatrix.from_array(dissimilarity)
        strategy.check_compatible(dissimilarity.metric)

        n = dissimilarity.n_entities
        if n > 5000:
            logger.warning(
                f"Agglomerative clustering on {n} entities needs O(N^2) memory "
                "and O(N^3) time; consider k-means"
            )

        feature_values = None
        if features is not None:
            feature_values = FeatureMatrix.coerce(features).values
            if feature_values.shape[0] != n:
                raise InvalidInputError(
                    f"Feature matrix has {feature_values.shape[0]} rows, "
                    f"dissimilarity has {n}"
                )

        if method == "recurrence":
            merges = self._agglomerate_recurrence(dissimilarity.values, strategy)
        elif method == "recompute":
            if strategy.requires_features and feature_values is None:
                raise InvalidInputError(
                    f"Recomputing {strategy.name} linkage needs the feature matrix"
                )
            merges = self._agglomerate_recompute(dissimilarity.values, strategy, feature_values)
        else:
            raise InvalidInputError(
                f"Unknown build method '{method}'. Supported: ['recurrence', 'recompute']"
            )

        dendrogram = self._assemble(n, merges, strategy, dissimilarity.metric, entity_labels)

        if dendrogram.inversions:
            logger.info(
                f"{strategy.name} linkage produced {len(dendrogram.inversions)} inversions"
            )
        logger.info(
            f"Built {strategy.name} dendrogram over {n} entities, "
            f"root height {dendrogram.root.height:.4f}"
        )
        return dendrogram

    @staticmethod
    def _agglomerate_recurrence(
        distances: np.ndarray, strategy: LinkageStrategy
    ) -> List[Tuple[int, int, float]]:
        """
        Merge loop over a working matrix indexed by slot.

        A cluster lives in the slot of its lowest entity index, so the
        row-major argmin over the matrix picks the tie-break winner directly.
        """
        n = distances.shape[0]
        work = strategy.working_distances(distances)
        np.fill_diagonal(work, np.inf)
        active = np.ones(n, dtype=bool)
        sizes = np.ones(n, dtype=np.int64)
        slots = np.arange(n)

        merges: List[Tuple[int, int, float]] = []
        for _ in range(n - 1):
            flat = int(np.argmin(work))
            i, j = divmod(flat, n)
            i, j = min(i, j), max(i, j)
            d_ij = work[i, j]
            merges.append((i, j, strategy.height(d_ij)))

            others = slots[active & (slots != i) & (slots != j)]
            if others.size:
                updated = strategy.update_after_merge(
                    work[others, i], work[others, j], d_ij, sizes[i], sizes[j], sizes[others]
                )
                work[others, i] = updated
                work[i, others] = updated

            work[j, :] = np.inf
            work[:, j] = np.inf
            active[j] = False
            sizes[i] += sizes[j]

        return merges

    @staticmethod
    def _agglomerate_recompute(
        distances: np.ndarray,
        strategy: LinkageStrategy,
        features: Optional[np.ndarray],
    ) -> List[Tuple[int, int, float]]:
        n = distances.shape[0]
        clusters: Dict[int, np.ndarray] = {i: np.array([i]) for i in range(n)}

        merges: List[Tuple[int, int, float]] = []
        for _ in range(n - 1):
            slots = sorted(clusters)
            best: Optional[Tuple[float, int, int]] = None
            for a_pos, a in enumerate(slots):
                for b in slots[a_pos + 1:]:
                    d = strategy.distance(clusters[a], clusters[b], distances, features)
                    if best is None or d < best[0]:
                        best = (d, a, b)

            height, i, j = best
            merges.append((i, j, height))
            clusters[i] = np.concatenate([clusters[i], clusters.pop(j)])

        return merges

    @staticmethod
    def _assemble(
        n: int,
        merges: List[Tuple[int, int, float]],
        strategy: LinkageStrategy,
        metric: str,
        entity_labels: Optional[Sequence[str]],
    ) -> Dendrogram:
        nodes: List[ClusterNode] = [ClusterNode(node_id=i, members=(i,)) for i in range(n)]
        slot_node = list(range(n))
        events: List[MergeEvent] = []

        for step, (i, j, height) in enumerate(merges):
            left, right = nodes[slot_node[i]], nodes[slot_node[j]]
            node_id = n + step
            nodes.append(
                ClusterNode(
                    node_id=node_id,
                    members=tuple(sorted(left.members + right.members)),
                    height=height,
                    left=left.node_id,
                    right=right.node_id,
                )
            )
            events.append(
                MergeEvent(
                    step=step,
                    left=left.node_id,
                    right=right.node_id,
                    height=height,
                    size=left.size + right.size,
                )
            )
            slot_node[i] = node_id

        return Dendrogram(nodes, events, strategy.name, metric, entity_labels)


# =============================================================================
# Functional API
# =============================================================================


def build_dendrogram(
    dissimilarity: Union[DissimilarityMatrix, np.ndarray],
    linkage: Union[str, LinkageMethod, LinkageStrategy] = "average",
    **kwargs: Any,
) -> Dendrogram:
    """Build a dendrogram with the given linkage."""
    return HierarchicalClusterer(linkage).build(dissimilarity, **kwargs)


def cut(dendrogram: Dendrogram, n_clusters: int) -> FlatClustering:
    """Cut a dendrogram into exactly n_clusters clusters."""
    return dendrogram.cut(n_clusters)


def cut_at_height(dendrogram: Dendrogram, height: float) -> FlatClustering:
    """Cut a dendrogram at a height."""
    return dendrogram.cut_at_height(height)


# =============================================================================
# Facade adapter
# =============================================================================


class AgglomerativeAlgorithm(BaseClusteringAlgorithm):
    """
    Agglomerative hierarchical clustering through the engine interface.

    Best for: Small entity sets where the hierarchy matters
    Strengths: Full merge tree, any number of clusters after one build
    Weaknesses: O(N^2) memory, O(N^3) time
    """

    def __init__(self, config: ClusteringConfig):
        """
        Initialize Agglomerative algorithm.

        Args:
            config: Clustering configuration
        """
        super().__init__(config)

        self.n_clusters = config.params.get("n_clusters", None)
        self.distance_threshold = config.params.get("distance_threshold", None)
        self.linkage = LinkageStrategy.resolve(config.params.get("linkage", "average"))
        self.metric = config.params.get("metric", "euclidean")

        if self.n_clusters is None and self.distance_threshold is None:
            raise InvalidInputError(
                "Agglomerative clustering needs n_clusters or distance_threshold"
            )

        if self.n_clusters is not None and self.distance_threshold is not None:
            logger.warning(
                "Both n_clusters and distance_threshold specified. "
                "Using n_clusters (distance_threshold ignored)"
            )
            self.distance_threshold = None

        logger.info(
            f"Initialized Agglomerative: n_clusters={self.n_clusters}, "
            f"distance_threshold={self.distance_threshold}, linkage={self.linkage}"
        )

    def cluster(
        self,
        matrix: Any,
        labels: Optional[Sequence[str]] = None,
        dissimilarity: Optional[DissimilarityMatrix] = None,
    ) -> ClusteringResult:
        """
        Build the dendrogram and cut it.

        Args:
            matrix: Feature matrix (N x D)
            labels: Optional entity labels
            dissimilarity: Precomputed distances to reuse

        Returns:
            ClusteringResult with the flat clustering, metrics and the
            dendrogram in `details`
        """
        features = FeatureMatrix.coerce(matrix, labels, min_entities=2)
        logger.info(f"Starting Agglomerative clustering on {features.n_entities} entities")

        if dissimilarity is None:
            dissimilarity = DissimilarityMatrix.compute(features, self.metric)

        dendrogram = HierarchicalClusterer(self.linkage).build(
            dissimilarity, entity_labels=features.labels
        )
        if self.n_clusters is not None:
            clustering = dendrogram.cut(self.n_clusters)
        else:
            clustering = dendrogram.cut_at_height(self.distance_threshold)

        _, centroids = cluster_centroids(features.values, clustering.labels)
        quality_metrics = self._calculate_quality_metrics(
            features.values, clustering.labels, dissimilarity
        )
        quality_metrics["root_height"] = float(dendrogram.root.height)

        logger.info(f"Agglomerative created {clustering.n_clusters} clusters")

        return ClusteringResult(
            clustering=clustering,
            quality_metrics=quality_metrics,
            centroids=centroids,
            details=dendrogram,
        )
