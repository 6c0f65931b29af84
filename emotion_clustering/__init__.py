"""Hierarchical and k-means clustering of emotion words with cluster-count validity metrics."""

__version__ = "1.0.0"
