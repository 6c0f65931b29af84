"""
Linkage Strategies for agglomerative clustering.

A linkage defines the distance between two clusters. Every supported rule is
a member of the Lance-Williams family, so after merging clusters i and j the
distance from any other cluster k to the union follows from the three
distances already known:

    d(k, i+j) = a_i d(k,i) + a_j d(k,j) + b d(i,j) + g |d(k,i) - d(k,j)|

Centroid and Ward apply the recurrence to squared Euclidean distances.
Centroid reports heights on the unsquared scale; Ward reports the increase
in within-cluster sum of squares caused by the merge.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

import numpy as np

from emotion_clustering.schemas.data_models import LinkageMethod
from emotion_clustering.utils.error_handling import InvalidInputError

Coefficients = Tuple[np.ndarray, np.ndarray, np.ndarray, float]


def _single(n_i, n_j, n_k) -> Coefficients:
    half = np.full_like(n_k, 0.5, dtype=np.float64)
    return half, half, np.zeros_like(half), -0.5


def _complete(n_i, n_j, n_k) -> Coefficients:
    half = np.full_like(n_k, 0.5, dtype=np.float64)
    return half, half, np.zeros_like(half), 0.5


def _average(n_i, n_j, n_k) -> Coefficients:
    total = float(n_i + n_j)
    ones = np.ones_like(n_k, dtype=np.float64)
    return ones * (n_i / total), ones * (n_j / total), np.zeros_like(ones), 0.0


def _centroid(n_i, n_j, n_k) -> Coefficients:
    total = float(n_i + n_j)
    ones = np.ones_like(n_k, dtype=np.float64)
    return (
        ones * (n_i / total),
        ones * (n_j / total),
        ones * (-(n_i * n_j) / total ** 2),
        0.0,
    )


def _ward(n_i, n_j, n_k) -> Coefficients:
    n_k = n_k.astype(np.float64)
    total = n_i + n_j + n_k
    return (n_k + n_i) / total, (n_k + n_j) / total, -n_k / total, 0.0


_LANCE_WILLIAMS: Dict[LinkageMethod, Callable[..., Coefficients]] = {
    LinkageMethod.SINGLE: _single,
    LinkageMethod.COMPLETE: _complete,
    LinkageMethod.AVERAGE: _average,
    LinkageMethod.CENTROID: _centroid,
    LinkageMethod.WARD: _ward,
}

# These work on squared Euclidean distances and need feature vectors to
# recompute from scratch
_GEOMETRIC = frozenset({LinkageMethod.CENTROID, LinkageMethod.WARD})


@dataclass(frozen=True)
class LinkageStrategy:
    """
    One linkage rule.

    The rule is a tag (LinkageMethod); behaviour is looked up from tables
    keyed by that tag.
    """

    method: LinkageMethod

    @classmethod
    def resolve(cls, linkage: Union[str, LinkageMethod, "LinkageStrategy"]) -> "LinkageStrategy":
        """Accept a strategy, an enum member or a (case-insensitive) name."""
        if isinstance(linkage, LinkageStrategy):
            return linkage
        if isinstance(linkage, LinkageMethod):
            return cls(linkage)
        try:
            return cls(LinkageMethod(str(linkage).lower()))
        except ValueError:
            raise InvalidInputError(
                f"Unsupported linkage '{linkage}'. "
                f"Supported: {[m.value for m in LinkageMethod]}",
                details={"linkage": str(linkage)},
            ) from None

    @property
    def name(self) -> str:
        return self.method.value

    @property
    def uses_squared_distances(self) -> bool:
        return self.method in _GEOMETRIC

    @property
    def requires_features(self) -> bool:
        """Raw recomputation needs the feature matrix, not just distances."""
        return self.method in _GEOMETRIC

    @property
    def is_monotonic(self) -> bool:
        """Centroid linkage can produce inversions; the others cannot."""
        return self.method is not LinkageMethod.CENTROID

    def check_compatible(self, metric: str) -> None:
        """
        Centroid and Ward are only defined on Euclidean geometry.

        Raises:
            InvalidInputError: Geometric linkage over a non-Euclidean metric
        """
        if self.uses_squared_distances and metric not in ("euclidean", "precomputed"):
            raise InvalidInputError(
                f"{self.name} linkage requires Euclidean distances, got '{metric}'",
                details={"linkage": self.name, "metric": metric},
            )

    # ------------------------------------------------------------------
    # Working space
    # ------------------------------------------------------------------

    def working_distances(self, distances: np.ndarray) -> np.ndarray:
        """Writable copy of the distances on the scale the recurrence uses."""
        work = np.array(distances, dtype=np.float64, copy=True)
        if self.uses_squared_distances:
            work = work ** 2
        return work

    def height(self, working_value: float) -> float:
        """Convert a working-space distance back to a merge height."""
        if self.method is LinkageMethod.WARD:
            # The recurrence carries 2 * delta SSE
            return float(max(working_value, 0.0) / 2.0)
        if self.uses_squared_distances:
            return float(np.sqrt(max(working_value, 0.0)))
        return float(working_value)

    def coefficients(self, n_i: int, n_j: int, n_k: np.ndarray) -> Coefficients:
        """Lance-Williams (a_i, a_j, b, g) for merging i and j, per cluster k."""
        return _LANCE_WILLIAMS[self.method](n_i, n_j, np.asarray(n_k))

    def update_after_merge(
        self,
        d_ki: np.ndarray,
        d_kj: np.ndarray,
        d_ij: float,
        n_i: int,
        n_j: int,
        n_k: np.ndarray,
    ) -> np.ndarray:
        """
        Distances from every remaining cluster k to the union of i and j.

        All distance arguments are in working space; the result is too.
        """
        d_ki = np.asarray(d_ki, dtype=np.float64)
        d_kj = np.asarray(d_kj, dtype=np.float64)

        # g = -1/2 and +1/2 reduce to min and max exactly
        if self.method is LinkageMethod.SINGLE:
            return np.minimum(d_ki, d_kj)
        if self.method is LinkageMethod.COMPLETE:
            return np.maximum(d_ki, d_kj)

        a_i, a_j, b, g = self.coefficients(n_i, n_j, n_k)
        updated = a_i * d_ki + a_j * d_kj + b * d_ij
        if g:
            updated = updated + g * np.abs(d_ki - d_kj)
        if self.uses_squared_distances:
            updated = np.maximum(updated, 0.0)
        return updated

    # ------------------------------------------------------------------
    # Raw recomputation
    # ------------------------------------------------------------------

    def distance(
        self,
        members_a: np.ndarray,
        members_b: np.ndarray,
        dissimilarity: np.ndarray,
        features: Optional[np.ndarray] = None,
    ) -> float:
        """
        Linkage distance between two clusters computed from scratch.

        Args:
            members_a: Entity indices of the first cluster
            members_b: Entity indices of the second cluster
            dissimilarity: Full N x N distance array
            features: N x D feature values (centroid and Ward only)

        Returns:
            Merge height on the reported scale
        """
        members_a = np.asarray(members_a)
        members_b = np.asarray(members_b)

        if self.requires_features:
            if features is None:
                raise InvalidInputError(
                    f"{self.name} linkage needs the feature matrix to recompute distances"
                )
            diff = features[members_a].mean(axis=0) - features[members_b].mean(axis=0)
            squared = float(diff @ diff)
            if self.method is LinkageMethod.WARD:
                n_a, n_b = len(members_a), len(members_b)
                return float(n_a * n_b / (n_a + n_b) * squared)
            return float(np.sqrt(squared))

        cross = dissimilarity[np.ix_(members_a, members_b)]
        if self.method is LinkageMethod.SINGLE:
            return float(cross.min())
        if self.method is LinkageMethod.COMPLETE:
            return float(cross.max())
        return float(cross.mean())

    def __str__(self) -> str:
        return self.name
