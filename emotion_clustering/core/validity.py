"""
Cluster Validity Metrics.

Scores candidate cluster counts so the number of emotion clusters can be
chosen from the data:

- wss: within-cluster sum of squares; elbow picked by the largest second
  difference of the curve
- silhouette: mean silhouette width; best k maximises it
- gap: gap statistic against uniform reference data (Tibshirani et al.),
  one-standard-error rule
- hartigan: Hartigan's index; smallest k whose index drops below a
  threshold (10 by convention)

Partitions come from k-means by default or from cutting one dendrogram.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from emotion_clustering.core.agglomerative_algorithm import HierarchicalClusterer
from emotion_clustering.core.base_clustering import (
    FeatureMatrix,
    within_cluster_sum_of_squares,
)
from emotion_clustering.core.dissimilarity import DissimilarityMatrix
from emotion_clustering.core.kmeans_algorithm import run_kmeans
from emotion_clustering.schemas.data_models import ValidityMethod
from emotion_clustering.utils.advanced_logging import BatchLogger
from emotion_clustering.utils.error_handling import InvalidInputError

logger = logging.getLogger(__name__)

PARTITIONERS = ("kmeans", "hierarchical")

# k -> (labels, wss)
Partitions = Dict[int, Tuple[np.ndarray, float]]


# =============================================================================
# Report
# =============================================================================


@dataclass(eq=False)
class ValidityReport:
    """(k, score) curve for one method plus the k its rule recommends."""

    method: str
    scores: List[Tuple[int, float]]
    recommended_k: Optional[int]
    details: Dict[str, List[float]] = field(default_factory=dict)

    @property
    def k_values(self) -> List[int]:
        return [k for k, _ in self.scores]

    @property
    def values(self) -> np.ndarray:
        return np.array([score for _, score in self.scores], dtype=np.float64)

    def score_for(self, k: int) -> float:
        for candidate, score in self.scores:
            if candidate == k:
                return score
        raise KeyError(k)

    def to_model(self):
        from emotion_clustering.schemas.data_models import (
            ValidityReportModel,
            ValidityScoreModel,
        )

        return ValidityReportModel(
            method=ValidityMethod(self.method),
            scores=[ValidityScoreModel(k=k, score=_finite_or_none(s)) for k, s in self.scores],
            recommended_k=self.recommended_k,
            details={
                name: [_finite_or_none(v) for v in curve]
                for name, curve in self.details.items()
            },
        )

    def __repr__(self) -> str:
        return (
            f"ValidityReport(method={self.method}, k={self.k_values}, "
            f"recommended_k={self.recommended_k})"
        )


def _finite_or_none(value: float) -> Optional[float]:
    return float(value) if np.isfinite(value) else None


# =============================================================================
# Silhouette
# =============================================================================


def silhouette_samples(
    dissimilarity: Union[DissimilarityMatrix, np.ndarray],
    labels: Sequence[int],
) -> np.ndarray:
    """
    Silhouette width of every entity.

    s(i) = (b - a) / max(a, b), where a is the mean distance to the other
    members of its cluster and b the lowest mean distance to another
    cluster. Members of singleton clusters score 0.

    Raises:
        InvalidInputError: Fewer than 2 clusters or a label count mismatch
    """
    distances = DissimilarityMatrix.from_array(dissimilarity).values
    labels = np.asarray(labels)
    n = distances.shape[0]
    if labels.shape != (n,):
        raise InvalidInputError(f"Got {labels.shape[0]} labels for {n} entities")

    ids, inverse = np.unique(labels, return_inverse=True)
    inverse = inverse.reshape(-1)
    if ids.size < 2:
        raise InvalidInputError("Silhouette is undefined for a single cluster")

    rows = np.arange(n)
    membership = np.zeros((n, ids.size), dtype=np.float64)
    membership[rows, inverse] = 1.0
    counts = membership.sum(axis=0)

    sums = distances @ membership
    own_count = counts[inverse] - 1
    a = np.divide(
        sums[rows, inverse], own_count, out=np.zeros(n), where=own_count > 0
    )

    mean_other = sums / counts
    mean_other[rows, inverse] = np.inf
    b = mean_other.min(axis=1)

    denom = np.maximum(a, b)
    s = np.divide(b - a, denom, out=np.zeros(n), where=denom > 0)
    s[own_count == 0] = 0.0
    return np.clip(s, -1.0, 1.0)


def silhouette_score(
    dissimilarity: Union[DissimilarityMatrix, np.ndarray],
    labels: Sequence[int],
) -> float:
    """Mean silhouette width over all entities."""
    return float(silhouette_samples(dissimilarity, labels).mean())


# =============================================================================
# Validity evaluator
# =============================================================================


class ClusterValidity:
    """
    Evaluates cluster counts with WSS, silhouette, gap and Hartigan.

    Every method takes the same k_range and returns comparable (k, score)
    pairs. Input matrices are copied, never modified.
    """

    def __init__(
        self,
        partitioner: str = "kmeans",
        n_init: int = 10,
        max_iter: int = 300,
        random_state: Optional[int] = 42,
        linkage: str = "ward",
        metric: str = "euclidean",
        n_references: int = 100,
        hartigan_threshold: float = 10.0,
        n_jobs: Optional[int] = 1,
    ):
        if partitioner not in PARTITIONERS:
            raise InvalidInputError(
                f"Unknown partitioner '{partitioner}'. Supported: {list(PARTITIONERS)}"
            )
        if n_references < 1:
            raise InvalidInputError(f"n_references must be >= 1, got {n_references}")

        self.partitioner = partitioner
        self.n_init = n_init
        self.max_iter = max_iter
        self.random_state = random_state
        self.linkage = linkage
        self.metric = metric
        self.n_references = n_references
        self.hartigan_threshold = hartigan_threshold
        self.n_jobs = n_jobs

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(
        self,
        matrix: Any,
        method: Union[str, ValidityMethod],
        k_range: Iterable[int],
        dissimilarity: Optional[DissimilarityMatrix] = None,
    ) -> ValidityReport:
        """
        Score every k in k_range with one method.

        Args:
            matrix: Feature matrix (N x D)
            method: "wss", "silhouette", "gap" or "hartigan"
            k_range: Candidate cluster counts, each in 1..N
            dissimilarity: Precomputed distances (silhouette only)

        Returns:
            ValidityReport

        Raises:
            InvalidInputError: Unknown method, malformed matrix or k outside 1..N
        """
        method = _method_name(method)
        values = FeatureMatrix.coerce(matrix).values
        ks = _validate_k_range(k_range, values.shape[0])
        return self._evaluate(values, method, ks, {}, dissimilarity)

    def evaluate_all(
        self,
        matrix: Any,
        k_range: Iterable[int],
        methods: Optional[Sequence[Union[str, ValidityMethod]]] = None,
        dissimilarity: Optional[DissimilarityMatrix] = None,
    ) -> Dict[str, ValidityReport]:
        """Run several methods over one k_range, sharing partitions."""
        names = [_method_name(m) for m in (methods or list(ValidityMethod))]
        values = FeatureMatrix.coerce(matrix).values
        ks = _validate_k_range(k_range, values.shape[0])

        partitions: Partitions = {}
        return {
            name: self._evaluate(values, name, ks, partitions, dissimilarity)
            for name in names
        }

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        values: np.ndarray,
        method: str,
        ks: List[int],
        partitions: Partitions,
        dissimilarity: Optional[DissimilarityMatrix],
    ) -> ValidityReport:
        if method == ValidityMethod.WSS.value:
            report = self._wss(values, ks, partitions)
        elif method == ValidityMethod.SILHOUETTE.value:
            report = self._silhouette(values, ks, partitions, dissimilarity)
        elif method == ValidityMethod.GAP.value:
            report = self._gap(values, ks, partitions)
        else:
            report = self._hartigan(values, ks, partitions)

        logger.info(
            f"Validity '{method}' over k={ks[0]}..{ks[-1]}: "
            f"recommended k={report.recommended_k}"
        )
        return report

    def _wss(self, values: np.ndarray, ks: List[int], partitions: Partitions) -> ValidityReport:
        self._fill_partitions(values, ks, partitions, self.random_state)
        wss = np.array([partitions[k][1] for k in ks])

        second = np.full(len(ks), np.nan)
        if len(ks) >= 3:
            second[1:-1] = wss[:-2] - 2.0 * wss[1:-1] + wss[2:]
            recommended = ks[int(np.nanargmax(second))]
        else:
            # Too few points for a second difference
            recommended = ks[len(ks) // 2]

        return ValidityReport(
            method=ValidityMethod.WSS.value,
            scores=list(zip(ks, wss.tolist())),
            recommended_k=recommended,
            details={"second_difference": second.tolist()},
        )

    def _silhouette(
        self,
        values: np.ndarray,
        ks: List[int],
        partitions: Partitions,
        dissimilarity: Optional[DissimilarityMatrix],
    ) -> ValidityReport:
        multi = [k for k in ks if k >= 2]
        if not multi:
            raise InvalidInputError("Silhouette needs at least one k >= 2 in k_range")

        if dissimilarity is None:
            dissimilarity = DissimilarityMatrix.compute(values, self.metric)
        elif dissimilarity.n_entities != values.shape[0]:
            raise InvalidInputError(
                f"Dissimilarity has {dissimilarity.n_entities} entities, "
                f"matrix has {values.shape[0]}"
            )

        self._fill_partitions(values, multi, partitions, self.random_state)
        scores = []
        for k in ks:
            labels = partitions[k][0] if k >= 2 else None
            # k = 1, or k-means collapsed to one non-empty cluster
            if labels is None or np.unique(labels).size < 2:
                scores.append(float("nan"))
            else:
                scores.append(silhouette_score(dissimilarity, labels))

        curve = np.array(scores)
        recommended = ks[int(np.nanargmax(curve))] if np.isfinite(curve).any() else None
        return ValidityReport(
            method=ValidityMethod.SILHOUETTE.value,
            scores=list(zip(ks, scores)),
            recommended_k=recommended,
        )

    def _gap(self, values: np.ndarray, ks: List[int], partitions: Partitions) -> ValidityReport:
        self._fill_partitions(values, ks, partitions, self.random_state)
        observed = _safe_log(np.array([partitions[k][1] for k in ks]))

        lows, highs = values.min(axis=0), values.max(axis=0)
        children = np.random.SeedSequence(self.random_state).spawn(self.n_references)

        if self.n_jobs is None or self.n_jobs == 1:
            progress = BatchLogger(self.n_references, "gap_reference_datasets")
            reference_logs = []
            for child in children:
                reference_logs.append(self._reference_log_wss(values.shape, lows, highs, ks, child))
                progress.update()
            progress.complete()
        else:
            reference_logs = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(self._reference_log_wss)(values.shape, lows, highs, ks, child)
                for child in children
            )
        reference_logs = np.array(reference_logs)

        expected = np.full(len(ks), np.nan)
        sd = np.full(len(ks), np.nan)
        for col in range(len(ks)):
            finite = reference_logs[:, col][np.isfinite(reference_logs[:, col])]
            if finite.size:
                expected[col] = finite.mean()
                sd[col] = finite.std()
        standard_error = sd * np.sqrt(1.0 + 1.0 / self.n_references)
        gap = expected - observed

        recommended = ks[-1]
        for idx in range(len(ks) - 1):
            # The one-SE rule compares k with k + 1 only
            if ks[idx + 1] != ks[idx] + 1:
                continue
            if gap[idx] >= gap[idx + 1] - standard_error[idx + 1]:
                recommended = ks[idx]
                break

        return ValidityReport(
            method=ValidityMethod.GAP.value,
            scores=list(zip(ks, gap.tolist())),
            recommended_k=recommended,
            details={
                "log_wss": observed.tolist(),
                "expected_log_wss": expected.tolist(),
                "standard_error": standard_error.tolist(),
            },
        )

    def _reference_log_wss(
        self,
        shape: Tuple[int, int],
        lows: np.ndarray,
        highs: np.ndarray,
        ks: List[int],
        seed_sequence: np.random.SeedSequence,
    ) -> np.ndarray:
        rng = np.random.default_rng(seed_sequence)
        reference = rng.uniform(lows, highs, size=shape)
        reference_seed = int(seed_sequence.generate_state(1)[0])

        partitions: Partitions = {}
        self._fill_partitions(reference, ks, partitions, reference_seed)
        return _safe_log(np.array([partitions[k][1] for k in ks]))

    def _hartigan(self, values: np.ndarray, ks: List[int], partitions: Partitions) -> ValidityReport:
        n = values.shape[0]
        needed = sorted(set(ks) | {k + 1 for k in ks if k + 1 <= n})
        self._fill_partitions(values, needed, partitions, self.random_state)

        scores = []
        for k in ks:
            if k + 1 > n:
                scores.append(float("nan"))
                continue
            w_k, w_next = partitions[k][1], partitions[k + 1][1]
            if w_next > 0:
                scores.append((w_k / w_next - 1.0) * (n - k - 1))
            elif w_k > 0:
                scores.append(float("inf"))
            else:
                scores.append(float("nan"))

        recommended = ks[-1]
        for k, score in zip(ks, scores):
            if np.isfinite(score) and score < self.hartigan_threshold:
                recommended = k
                break

        return ValidityReport(
            method=ValidityMethod.HARTIGAN.value,
            scores=list(zip(ks, scores)),
            recommended_k=recommended,
            details={"wss": [partitions[k][1] for k in ks]},
        )

    # ------------------------------------------------------------------
    # Partitions
    # ------------------------------------------------------------------

    def _fill_partitions(
        self,
        values: np.ndarray,
        ks: Iterable[int],
        partitions: Partitions,
        seed: Optional[int],
    ) -> Partitions:
        """Cluster `values` for every k not yet in `partitions`."""
        missing = [k for k in ks if k not in partitions]
        if not missing:
            return partitions

        if self.partitioner == "hierarchical":
            dendrogram = HierarchicalClusterer(self.linkage).build(
                DissimilarityMatrix.compute(values, self.metric)
            )
            labelled = {k: dendrogram.cut(k).labels for k in missing}
        else:
            labelled = {
                k: run_kmeans(values, k, self.n_init, self.max_iter, seed).labels
                for k in missing
            }

        for k, labels in labelled.items():
            partitions[k] = (labels, within_cluster_sum_of_squares(values, labels))
        return partitions


# =============================================================================
# Helpers
# =============================================================================


def _method_name(method: Union[str, ValidityMethod]) -> str:
    if isinstance(method, ValidityMethod):
        return method.value
    try:
        return ValidityMethod(str(method).lower()).value
    except ValueError:
        raise InvalidInputError(
            f"Unsupported validity method '{method}'. "
            f"Supported: {[m.value for m in ValidityMethod]}",
            details={"method": str(method)},
        ) from None


def _validate_k_range(k_range: Iterable[int], n_entities: int) -> List[int]:
    ks = []
    for k in k_range:
        if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
            raise InvalidInputError(f"Cluster counts must be integers, got {k!r}")
        ks.append(int(k))
    ks = sorted(set(ks))

    if not ks:
        raise InvalidInputError("k_range is empty")
    if ks[0] < 1 or ks[-1] > n_entities:
        raise InvalidInputError(
            f"Cluster counts must lie in 1..{n_entities}, got {ks[0]}..{ks[-1]}",
            details={"k_range": ks, "n_entities": n_entities},
        )
    return ks


def _safe_log(wss: np.ndarray) -> np.ndarray:
    """log(W); NaN where the dispersion is zero."""
    out = np.full(wss.shape, np.nan)
    positive = wss > 0
    out[positive] = np.log(wss[positive])
    return out


def evaluate(
    matrix: Any,
    method: Union[str, ValidityMethod],
    k_range: Iterable[int],
    **kwargs: Any,
) -> ValidityReport:
    """Score k_range with one validity method."""
    dissimilarity = kwargs.pop("dissimilarity", None)
    return ClusterValidity(**kwargs).evaluate(matrix, method, k_range, dissimilarity)
