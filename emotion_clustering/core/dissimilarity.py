"""
Pairwise Dissimilarity Matrix.

Computes the symmetric N x N distance matrix consumed by hierarchical
clustering and by the silhouette. The matrix is computed once per analysis
and shared read-only.
"""

import logging
from typing import Any, Callable, Dict, Union

import numpy as np

from emotion_clustering.core.base_clustering import FeatureMatrix
from emotion_clustering.schemas.data_models import DistanceMetric
from emotion_clustering.utils.error_handling import InvalidInputError

logger = logging.getLogger(__name__)

MetricFunction = Callable[[np.ndarray, np.ndarray], float]

PRECOMPUTED = "precomputed"


def _euclidean_rows(x: np.ndarray, others: np.ndarray) -> np.ndarray:
    diff = others - x
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))


def _manhattan_rows(x: np.ndarray, others: np.ndarray) -> np.ndarray:
    return np.abs(others - x).sum(axis=1)


# Vectorised one-row-against-many kernels for the built-in metrics
_ROW_KERNELS: Dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    DistanceMetric.EUCLIDEAN.value: _euclidean_rows,
    DistanceMetric.MANHATTAN.value: _manhattan_rows,
}


class DissimilarityMatrix:
    """
    Read-only symmetric distance matrix with zero diagonal.

    Attributes:
        values: N x N array (not writeable)
        metric: Name of the metric that produced it, or "precomputed"
    """

    def __init__(self, values: np.ndarray, metric: str):
        values = np.array(values, dtype=np.float64, copy=True)
        values.setflags(write=False)
        self.values = values
        self.metric = metric

    @classmethod
    def compute(
        cls,
        matrix: Any,
        metric: Union[str, DistanceMetric, MetricFunction] = "euclidean",
    ) -> "DissimilarityMatrix":
        """
        Compute all pairwise distances between entities.

        Args:
            matrix: Feature matrix (N >= 2 entities, D >= 1 features)
            metric: "euclidean", "manhattan" or a callable (u, v) -> float
                that is symmetric and zero only for identical vectors

        Returns:
            DissimilarityMatrix

        Raises:
            InvalidInputError: Bad matrix, unknown metric, or a callable
                metric returning a negative or non-finite value
        """
        features = FeatureMatrix.coerce(matrix, min_entities=2)
        values = features.values
        n_entities = values.shape[0]

        if callable(metric):
            metric_name = getattr(metric, "__name__", "custom")
            row_kernel = None
        else:
            metric_name = _metric_name(metric)
            row_kernel = _ROW_KERNELS[metric_name]

        distances = np.zeros((n_entities, n_entities), dtype=np.float64)
        for i in range(n_entities - 1):
            if row_kernel is not None:
                row = row_kernel(values[i], values[i + 1:])
            else:
                row = np.array(
                    [float(metric(values[i], values[j])) for j in range(i + 1, n_entities)]
                )
                if not np.all(np.isfinite(row)) or np.any(row < 0):
                    raise InvalidInputError(
                        f"Metric '{metric_name}' returned a negative or non-finite distance",
                        details={"row": i},
                    )
            distances[i, i + 1:] = row
            distances[i + 1:, i] = row

        logger.debug(
            f"Computed {metric_name} dissimilarity matrix for {n_entities} entities"
        )
        return cls(distances, metric_name)

    @classmethod
    def from_array(
        cls,
        distances: Any,
        metric: str = PRECOMPUTED,
        atol: float = 1e-10,
    ) -> "DissimilarityMatrix":
        """
        Wrap a caller-supplied distance matrix after validating it.

        Raises:
            InvalidInputError: Not square, fewer than 2 entities, asymmetric,
                non-zero diagonal, negative or non-finite entries
        """
        if isinstance(distances, DissimilarityMatrix):
            return distances

        try:
            values = np.asarray(distances, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Dissimilarity matrix is not numeric: {e}") from e

        if values.ndim != 2 or values.shape[0] != values.shape[1]:
            raise InvalidInputError(
                f"Dissimilarity matrix must be square, got shape {values.shape}"
            )
        if values.shape[0] < 2:
            raise InvalidInputError("Dissimilarity matrix needs at least 2 entities")
        if not np.all(np.isfinite(values)):
            raise InvalidInputError("Dissimilarity matrix contains non-finite values")
        if np.any(values < 0):
            raise InvalidInputError("Dissimilarity matrix contains negative values")
        if not np.allclose(values, values.T, rtol=0.0, atol=atol):
            raise InvalidInputError("Dissimilarity matrix is not symmetric")
        if np.any(np.abs(np.diag(values)) > atol):
            raise InvalidInputError("Dissimilarity matrix has a non-zero diagonal")

        # Exact symmetry and zero diagonal from here on
        values = (values + values.T) / 2.0
        np.fill_diagonal(values, 0.0)
        return cls(values, metric)

    @property
    def n_entities(self) -> int:
        return self.values.shape[0]

    def __getitem__(self, key):
        return self.values[key]

    def __len__(self) -> int:
        return self.n_entities

    def condensed(self) -> np.ndarray:
        """Upper triangle (i < j) in row-major order, scipy's condensed form."""
        rows, cols = np.triu_indices(self.n_entities, k=1)
        return self.values[rows, cols]

    def __repr__(self) -> str:
        return f"DissimilarityMatrix(n_entities={self.n_entities}, metric={self.metric})"


def _metric_name(metric: Union[str, DistanceMetric]) -> str:
    if isinstance(metric, DistanceMetric):
        return metric.value
    try:
        return DistanceMetric(str(metric).lower()).value
    except ValueError:
        raise InvalidInputError(
            f"Unsupported metric '{metric}'. "
            f"Supported: {[m.value for m in DistanceMetric]} or a callable",
            details={"metric": str(metric)},
        ) from None


def compute_dissimilarity(
    matrix: Any,
    metric: Union[str, DistanceMetric, MetricFunction] = "euclidean",
) -> DissimilarityMatrix:
    """Functional alias of DissimilarityMatrix.compute."""
    return DissimilarityMatrix.compute(matrix, metric)
