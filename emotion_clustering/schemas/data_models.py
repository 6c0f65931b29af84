"""
data_models.py

Enums and Pydantic data models for the emotion clustering engine.

Schema Design:
- Enums: closed sets of metrics, linkages, validity methods and algorithms
  accepted by the core
- Output: plain, JSON-serialisable views of dendrograms, flat clusterings and
  validity reports handed to the rendering collaborator
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# =============================================================================
# ENUMS
# =============================================================================


class DistanceMetric(str, Enum):
    """Built-in pairwise distance metrics."""

    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"


class LinkageMethod(str, Enum):
    """Agglomerative linkage rules."""

    SINGLE = "single"
    COMPLETE = "complete"
    AVERAGE = "average"
    CENTROID = "centroid"
    WARD = "ward"


class ValidityMethod(str, Enum):
    """Cluster-count selection metrics."""

    WSS = "wss"
    SILHOUETTE = "silhouette"
    GAP = "gap"
    HARTIGAN = "hartigan"


class ClusterAlgorithm(str, Enum):
    """Supported clustering algorithms."""

    KMEANS = "kmeans"
    AGGLOMERATIVE = "agglomerative"


# =============================================================================
# DENDROGRAM MODELS
# =============================================================================


class MergeEventModel(BaseModel):
    """One agglomeration step."""

    step: int = Field(..., ge=0, description="Merge index (0-based)")
    left: int = Field(..., ge=0, description="Node id of the left child")
    right: int = Field(..., ge=0, description="Node id of the right child")
    height: float = Field(..., ge=0.0, description="Linkage distance at merge")
    size: int = Field(..., ge=2, description="Number of entities in merged cluster")


class DendrogramModel(BaseModel):
    """Complete merge tree, ready for dendrogram plotting."""

    n_entities: int = Field(..., ge=2)
    linkage: str
    metric: str
    merges: List[MergeEventModel]
    leaf_order: List[int] = Field(..., description="Entity indices in plotting order")
    entity_labels: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_merge_count(self) -> "DendrogramModel":
        if len(self.merges) != self.n_entities - 1:
            raise ValueError(
                f"Dendrogram over {self.n_entities} entities needs "
                f"{self.n_entities - 1} merges, got {len(self.merges)}"
            )
        return self


# =============================================================================
# FLAT CLUSTERING MODELS
# =============================================================================


class FlatClusteringModel(BaseModel):
    """Entity -> cluster id assignment."""

    n_clusters: int = Field(..., ge=1)
    labels: List[int] = Field(..., description="Cluster id per entity (1..k)")
    entity_labels: Optional[List[str]] = None
    source: str = Field(..., description="How the partition was produced")

    @field_validator("labels")
    @classmethod
    def labels_positive(cls, v: List[int]) -> List[int]:
        if any(label < 1 for label in v):
            raise ValueError("Cluster ids must be positive integers")
        return v


class KMeansSummaryModel(BaseModel):
    """K-means run summary."""

    n_clusters: int = Field(..., ge=1)
    inertia: float = Field(..., ge=0.0)
    n_iter: int = Field(..., ge=1)
    converged: bool
    restart_inertias: List[float]
    empty_cluster_events: int = Field(default=0, ge=0)
    centroids: List[List[float]]
    clustering: FlatClusteringModel


# =============================================================================
# VALIDITY MODELS
# =============================================================================


class ValidityScoreModel(BaseModel):
    """One point of a validity curve. Score is None where undefined."""

    k: int = Field(..., ge=1)
    score: Optional[float] = None


class ValidityReportModel(BaseModel):
    """Validity curve over a range of cluster counts."""

    method: ValidityMethod
    scores: List[ValidityScoreModel]
    recommended_k: Optional[int] = None
    details: Dict[str, List[Optional[float]]] = Field(default_factory=dict)


class AnalysisSummaryModel(BaseModel):
    """Everything one analysis hands to the rendering collaborator."""

    dendrogram: Optional[DendrogramModel] = None
    hierarchical: Optional[FlatClusteringModel] = None
    kmeans: Optional[KMeansSummaryModel] = None
    validity: Dict[str, ValidityReportModel] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
