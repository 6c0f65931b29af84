"""
Core clustering module.

Exports:
- ClusteringEngine: Main orchestration class
- DissimilarityMatrix: Pairwise distances between entities
- LinkageStrategy, HierarchicalClusterer, Dendrogram: Agglomerative clustering
- KMeansClusterer, KMeansResult: Lloyd's k-means with restarts
- ClusterValidity, ValidityReport: Cluster-count validity metrics
- BaseClusteringAlgorithm, ClusteringResult, ClusteringConfig: Algorithm contract
- Individual algorithm implementations
"""

from emotion_clustering.core.base_clustering import (
    BaseClusteringAlgorithm,
    ClusteringResult,
    ClusteringConfig,
    FeatureMatrix,
    FlatClustering,
)
from emotion_clustering.core.dissimilarity import DissimilarityMatrix, compute_dissimilarity
from emotion_clustering.core.linkage import LinkageStrategy
from emotion_clustering.core.agglomerative_algorithm import (
    AgglomerativeAlgorithm,
    Dendrogram,
    HierarchicalClusterer,
    build_dendrogram,
    cut,
    cut_at_height,
)
from emotion_clustering.core.kmeans_algorithm import (
    KMeansAlgorithm,
    KMeansClusterer,
    KMeansResult,
    run_kmeans,
)
from emotion_clustering.core.validity import (
    ClusterValidity,
    ValidityReport,
    evaluate,
    silhouette_samples,
    silhouette_score,
)
from emotion_clustering.core.clustering_engine import ClusteringAnalysis, ClusteringEngine

__all__ = [
    "ClusteringEngine",
    "ClusteringAnalysis",
    "BaseClusteringAlgorithm",
    "ClusteringResult",
    "ClusteringConfig",
    "FeatureMatrix",
    "FlatClustering",
    "DissimilarityMatrix",
    "compute_dissimilarity",
    "LinkageStrategy",
    "HierarchicalClusterer",
    "Dendrogram",
    "build_dendrogram",
    "cut",
    "cut_at_height",
    "KMeansClusterer",
    "KMeansResult",
    "run_kmeans",
    "ClusterValidity",
    "ValidityReport",
    "evaluate",
    "silhouette_samples",
    "silhouette_score",
    "KMeansAlgorithm",
    "AgglomerativeAlgorithm",
]
