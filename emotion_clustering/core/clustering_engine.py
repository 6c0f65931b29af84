"""
Clustering Engine - Orchestrates clustering operations.

Main entry point for clustering emotion words. Computes the dissimilarity
matrix once, builds the dendrogram, runs k-means and scores candidate
cluster counts, handing everything back as one analysis.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from emotion_clustering.config.settings_loader import Settings, get_settings, settings_as_dict
from emotion_clustering.core.agglomerative_algorithm import (
    AgglomerativeAlgorithm,
    Dendrogram,
    HierarchicalClusterer,
)
from emotion_clustering.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringConfig,
    ClusteringResult,
    FeatureMatrix,
    FlatClustering,
)
from emotion_clustering.core.dissimilarity import DissimilarityMatrix
from emotion_clustering.core.kmeans_algorithm import KMeansAlgorithm, KMeansClusterer, KMeansResult
from emotion_clustering.core.linkage import LinkageStrategy
from emotion_clustering.core.validity import ClusterValidity, ValidityReport
from emotion_clustering.utils.advanced_logging import (
    LogContext,
    PerformanceLogger,
    configure_logging,
    get_logger,
    log_exceptions,
)
from emotion_clustering.schemas.data_models import ClusterAlgorithm
from emotion_clustering.utils.error_handling import InvalidInputError

logger = get_logger(__name__)

# Order in which validity recommendations pick k when the caller gives none
SELECTION_PRIORITY = ("silhouette", "gap", "hartigan", "wss")


def _is_int(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


@dataclass(eq=False)
class ClusteringAnalysis:
    """Everything one analysis of a feature matrix produced."""

    features: FeatureMatrix
    dissimilarity: DissimilarityMatrix
    dendrogram: Dendrogram
    n_clusters: int
    hierarchical: FlatClustering
    kmeans: KMeansResult
    validity: Dict[str, ValidityReport] = field(default_factory=dict)
    analysis_id: Optional[str] = None
    selected_by: Optional[str] = None

    @property
    def recommendations(self) -> Dict[str, Optional[int]]:
        return {name: report.recommended_k for name, report in self.validity.items()}

    def agreement(self) -> float:
        """Fraction of entity pairs on which the two flat clusterings agree (Rand index)."""
        a = self.hierarchical.labels
        b = self.kmeans.labels
        same_a = a[:, None] == a[None, :]
        same_b = b[:, None] == b[None, :]
        rows, cols = np.triu_indices(a.shape[0], k=1)
        if rows.size == 0:
            return 1.0
        return float((same_a == same_b)[rows, cols].mean())

    def to_model(self):
        from emotion_clustering.schemas.data_models import AnalysisSummaryModel

        return AnalysisSummaryModel(
            dendrogram=self.dendrogram.to_model(),
            hierarchical=self.hierarchical.to_model(),
            kmeans=self.kmeans.to_model(),
            validity={name: report.to_model() for name, report in self.validity.items()},
            metadata={
                "analysis_id": self.analysis_id,
                "n_entities": self.features.n_entities,
                "n_features": self.features.n_features,
                "n_clusters": self.n_clusters,
                "selected_by": self.selected_by,
                "metric": self.dissimilarity.metric,
                "linkage": self.dendrogram.linkage,
                "rand_agreement": self.agreement(),
            },
        )


class ClusteringEngine:
    """
    Main clustering engine that orchestrates the algorithms.

    Provides a unified interface for all clustering operations regardless
    of the underlying algorithm. Holds no state between calls besides its
    settings, so one engine can serve many matrices.
    """

    # Registry of available algorithms
    ALGORITHMS = {
        ClusterAlgorithm.KMEANS: KMeansAlgorithm,
        ClusterAlgorithm.AGGLOMERATIVE: AgglomerativeAlgorithm,
    }

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize clustering engine.

        Args:
            settings: Engine settings (built-in defaults when None)
        """
        self.settings = settings or Settings()
        logger.info(
            "engine_initialized",
            metric=self.settings.dissimilarity.metric,
            linkage=self.settings.hierarchical.linkage,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ClusteringEngine":
        """Engine configured from the global settings (YAML + environment)."""
        settings = settings or get_settings()
        log_settings = settings.logging
        configure_logging(
            log_level=log_settings.level,
            log_format=log_settings.format,
            log_file=log_settings.file.path if log_settings.file.enabled else None,
            service_name=settings.service.name,
        )
        logger.debug("engine_settings", settings=settings_as_dict(settings))
        return cls(settings)

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def compute_dissimilarity(
        self, matrix: Any, metric: Optional[str] = None
    ) -> DissimilarityMatrix:
        metric = metric or self.settings.dissimilarity.metric
        features = FeatureMatrix.coerce(matrix, min_entities=2)
        with PerformanceLogger(
            "compute_dissimilarity", logger, n_entities=features.n_entities, metric=metric
        ):
            return DissimilarityMatrix.compute(features, metric)

    def build_dendrogram(
        self,
        matrix: Any,
        linkage: Optional[str] = None,
        labels: Optional[Sequence[str]] = None,
        dissimilarity: Optional[DissimilarityMatrix] = None,
    ) -> Dendrogram:
        features = FeatureMatrix.coerce(matrix, labels, min_entities=2)
        if dissimilarity is None:
            dissimilarity = self.compute_dissimilarity(features)
        linkage = linkage or self.settings.hierarchical.linkage
        with PerformanceLogger(
            "build_dendrogram", logger, n_entities=features.n_entities, linkage=linkage
        ):
            return HierarchicalClusterer(linkage).build(
                dissimilarity, entity_labels=features.labels
            )

    def cluster(
        self,
        matrix: Any,
        algorithm: str,
        algorithm_params: Optional[Dict[str, Any]] = None,
        labels: Optional[Sequence[str]] = None,
    ) -> ClusteringResult:
        """
        Perform clustering using the specified algorithm.

        Args:
            matrix: Feature matrix (N x D)
            algorithm: Algorithm name (kmeans/agglomerative)
            algorithm_params: Algorithm-specific parameters; missing ones
                come from the engine settings
            labels: Optional entity labels

        Returns:
            ClusteringResult with labels and metrics

        Raises:
            InvalidInputError: If algorithm or parameters are not supported
        """
        kind = self._resolve_algorithm(algorithm)
        if kind is None:
            raise InvalidInputError(
                f"Unsupported algorithm '{algorithm}'. "
                f"Supported: {[a.value for a in self.ALGORITHMS]}",
                details={"algorithm": algorithm},
            )
        algorithm = kind.value

        params = {**self._default_params(algorithm), **(algorithm_params or {})}
        errors = self.validate_clustering_config(algorithm, params)
        if errors:
            raise InvalidInputError(
                f"Invalid {algorithm} configuration: {errors}", details=errors
            )

        features = FeatureMatrix.coerce(matrix, labels)
        logger.info("clustering_started", algorithm=algorithm, n_entities=features.n_entities)

        config = ClusteringConfig(algorithm_name=algorithm, params=params)
        clusterer: BaseClusteringAlgorithm = self.ALGORITHMS[kind](config)

        with PerformanceLogger(f"{algorithm}_clustering", logger, n_entities=features.n_entities):
            result = clusterer.cluster(features)

        logger.info(
            "clustering_completed",
            algorithm=algorithm,
            n_clusters=result.n_clusters,
            silhouette=result.quality_metrics.get("silhouette_score"),
        )
        return result

    # ------------------------------------------------------------------
    # Full analysis
    # ------------------------------------------------------------------

    def analyze(
        self,
        matrix: Any,
        labels: Optional[Sequence[str]] = None,
        n_clusters: Optional[int] = None,
        linkage: Optional[str] = None,
        k_range: Optional[Iterable[int]] = None,
        methods: Optional[Sequence[str]] = None,
        analysis_id: Optional[str] = None,
    ) -> ClusteringAnalysis:
        """
        Run the whole pipeline on one feature matrix.

        Args:
            matrix: Feature matrix (N x D); a DataFrame's index becomes the labels
            labels: Optional entity labels
            n_clusters: Cluster count for the flat clusterings; picked from
                the validity recommendations when None
            linkage: Dendrogram linkage (settings default when None)
            k_range: Candidate cluster counts (settings range, capped at N)
            methods: Validity methods to run (settings default when None)
            analysis_id: Identifier attached to every log event

        Returns:
            ClusteringAnalysis
        """
        features = FeatureMatrix.coerce(matrix, labels, min_entities=2)
        analysis_id = analysis_id or uuid.uuid4().hex[:12]
        n = features.n_entities

        with LogContext.analysis_context(analysis_id), log_exceptions(logger, "analyze"):
            with PerformanceLogger("analyze", logger, n_entities=n):
                dissimilarity = self.compute_dissimilarity(features)
                dendrogram = self.build_dendrogram(
                    features, linkage=linkage, dissimilarity=dissimilarity
                )

                if k_range is None:
                    k_range = [k for k in self.settings.validity.k_range if k <= n]
                if methods is None:
                    methods = self.settings.validity.methods
                methods = list(methods)

                reports: Dict[str, ValidityReport] = {}
                if methods:
                    with PerformanceLogger("validity", logger, methods=methods):
                        reports = self._validity().evaluate_all(
                            features, k_range, methods, dissimilarity
                        )

                selected_by = None
                if n_clusters is None:
                    n_clusters, selected_by = self._select_k(reports)

                hierarchical = dendrogram.cut(n_clusters)
                kmeans = self._kmeans(n_clusters).run(features)

        logger.info(
            "analysis_completed",
            analysis_id=analysis_id,
            n_clusters=n_clusters,
            selected_by=selected_by,
            recommendations={name: r.recommended_k for name, r in reports.items()},
        )

        return ClusteringAnalysis(
            features=features,
            dissimilarity=dissimilarity,
            dendrogram=dendrogram,
            n_clusters=n_clusters,
            hierarchical=hierarchical,
            kmeans=kmeans,
            validity=reports,
            analysis_id=analysis_id,
            selected_by=selected_by,
        )

    def analyze_each(
        self,
        matrices: Iterable[Any],
        **kwargs: Any,
    ) -> List[ClusteringAnalysis]:
        """
        Analyze several matrices independently, e.g. multiply imputed data sets.

        Aggregating the analyses is left to the caller.
        """
        base_id = kwargs.pop("analysis_id", None) or uuid.uuid4().hex[:12]
        return [
            self.analyze(matrix, analysis_id=f"{base_id}-{i}", **kwargs)
            for i, matrix in enumerate(matrices)
        ]

    def estimate_optimal_k(
        self,
        matrix: Any,
        min_k: int = 1,
        max_k: int = 10,
        method: str = "wss",
    ) -> int:
        """
        Estimate optimal number of clusters with one validity method.

        Args:
            matrix: Feature matrix (N x D)
            min_k: Minimum number of clusters to try
            max_k: Maximum number of clusters to try (capped at N)
            method: Validity method (wss/silhouette/gap/hartigan)

        Returns:
            Estimated optimal k
        """
        features = FeatureMatrix.coerce(matrix)
        max_k = min(max_k, features.n_entities)
        report = self._validity().evaluate(features, method, range(min_k, max_k + 1))

        if report.recommended_k is None:
            raise InvalidInputError(
                f"{method} gave no recommendation for k={min_k}..{max_k}"
            )

        logger.info(
            "optimal_k_estimated",
            method=method,
            optimal_k=report.recommended_k,
            min_k=min_k,
            max_k=max_k,
        )
        return report.recommended_k

    def validate_clustering_config(
        self,
        algorithm: str,
        params: Dict[str, Any],
    ) -> Dict[str, str]:
        """
        Validate clustering configuration.

        Args:
            algorithm: Algorithm name
            params: Algorithm parameters

        Returns:
            Dictionary of validation errors (empty if valid)
        """
        errors = {}

        kind = self._resolve_algorithm(algorithm)
        if kind is None:
            errors["algorithm"] = f"Unsupported algorithm '{algorithm}'"
            return errors

        if kind is ClusterAlgorithm.KMEANS:
            for name in ("n_clusters", "n_init", "max_iter"):
                value = params.get(name)
                if value is not None and (not _is_int(value) or value < 1):
                    errors[name] = "Must be a positive integer"

        elif kind is ClusterAlgorithm.AGGLOMERATIVE:
            n_clusters = params.get("n_clusters")
            distance_threshold = params.get("distance_threshold")

            if n_clusters is None and distance_threshold is None:
                errors["config"] = (
                    "Must specify either n_clusters or distance_threshold"
                )

            if n_clusters is not None and (not _is_int(n_clusters) or n_clusters < 1):
                errors["n_clusters"] = "Must be >= 1 or None"

            if distance_threshold is not None and distance_threshold < 0:
                errors["distance_threshold"] = "Must be >= 0"

            try:
                strategy = LinkageStrategy.resolve(params.get("linkage", "average"))
                strategy.check_compatible(params.get("metric", "euclidean"))
            except InvalidInputError as e:
                errors["linkage"] = e.message

        return errors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_algorithm(algorithm: Any) -> Optional[ClusterAlgorithm]:
        if isinstance(algorithm, ClusterAlgorithm):
            return algorithm
        try:
            return ClusterAlgorithm(str(algorithm).lower())
        except ValueError:
            return None

    def _default_params(self, algorithm: str) -> Dict[str, Any]:
        if algorithm == ClusterAlgorithm.KMEANS.value:
            km = self.settings.kmeans
            return {
                "n_clusters": km.n_clusters,
                "n_init": km.n_init,
                "max_iter": km.max_iter,
                "random_state": km.random_state,
                "n_jobs": km.n_jobs,
            }
        hc = self.settings.hierarchical
        params: Dict[str, Any] = {
            "linkage": hc.linkage,
            "metric": self.settings.dissimilarity.metric,
        }
        if hc.n_clusters is not None:
            params["n_clusters"] = hc.n_clusters
        if hc.distance_threshold is not None:
            params["distance_threshold"] = hc.distance_threshold
        return params

    def _kmeans(self, n_clusters: int) -> KMeansClusterer:
        km = self.settings.kmeans
        return KMeansClusterer(
            n_clusters=n_clusters,
            n_init=km.n_init,
            max_iter=km.max_iter,
            random_state=km.random_state,
            n_jobs=km.n_jobs,
        )

    def _validity(self) -> ClusterValidity:
        km = self.settings.kmeans
        validity = self.settings.validity
        return ClusterValidity(
            partitioner=validity.partitioner,
            n_init=km.n_init,
            max_iter=km.max_iter,
            random_state=km.random_state,
            linkage=self.settings.hierarchical.linkage,
            metric=self.settings.dissimilarity.metric,
            n_references=validity.n_references,
            hartigan_threshold=validity.hartigan_threshold,
            n_jobs=km.n_jobs,
        )

    @staticmethod
    def _select_k(reports: Dict[str, ValidityReport]):
        for name in SELECTION_PRIORITY:
            report = reports.get(name)
            if report is not None and report.recommended_k is not None:
                return report.recommended_k, name
        raise InvalidInputError(
            "n_clusters was not given and no validity method produced a recommendation"
        )
