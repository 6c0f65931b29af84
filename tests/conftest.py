"""
Pytest configuration and shared fixtures for the Emotion Clustering tests.

This module provides:
- Shared test fixtures
- Feature matrix generators (tiny hand-made, well-separated blobs, random)
- Settings tuned for fast analyses
- Configuration and structlog reset between tests
"""

import os
import numpy as np
import pytest
import structlog

from emotion_clustering.config.settings_loader import (
    ConfigManager,
    KMeansSettings,
    Settings,
    ValiditySettings,
)

# Set test environment variables
os.environ["TESTING"] = "true"
os.environ["LOG_LEVEL"] = "DEBUG"


# =============================================================================
# Test Data Generators
# =============================================================================

@pytest.fixture
def four_points():
    """Two tight pairs ten units apart: (0,0),(0,1) and (10,0),(10,1)."""
    return np.array([[0.0, 0.0], [0.0, 1.0], [10.0, 0.0], [10.0, 1.0]])


@pytest.fixture
def emotion_words():
    """Labels for the rows of clustered_matrix."""
    return [
        "joy", "delight", "cheerful", "elated", "content",
        "glad", "happy", "pleased", "jolly", "merry",
        "anger", "rage", "fury", "irritation", "annoyance",
        "wrath", "resentment", "outrage", "hostility", "indignation",
        "fear", "dread", "terror", "panic", "anxiety",
        "fright", "horror", "alarm", "worry", "unease",
    ]


@pytest.fixture
def clustered_matrix():
    """
    Feature matrix with clear cluster structure.

    Creates 3 distinct groups of 10 entities rated on 4 features
    (valence, arousal, dominance, intensity):
    - Group 1: centered at [8, 5, 5, 5]
    - Group 2: centered at [2, 8, 8, 5]
    - Group 3: centered at [2, 8, 2, 5]

    Returns:
        Tuple of (values, true group per row as 1..3)
    """
    rng = np.random.default_rng(42)
    centers = np.array([
        [8.0, 5.0, 5.0, 5.0],
        [2.0, 8.0, 8.0, 5.0],
        [2.0, 8.0, 2.0, 5.0],
    ])
    n_per_cluster = 10

    values = np.vstack([
        center + rng.normal(scale=0.3, size=(n_per_cluster, 4))
        for center in centers
    ])
    labels = np.repeat([1, 2, 3], n_per_cluster)
    return values, labels


@pytest.fixture
def random_matrix():
    """Unstructured matrix for property checks."""
    rng = np.random.default_rng(7)
    return rng.normal(size=(15, 3))


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def fast_settings():
    """Settings with few restarts and reference datasets."""
    return Settings(
        kmeans=KMeansSettings(n_clusters=3, n_init=5, max_iter=100, random_state=0),
        validity=ValiditySettings(k_min=1, k_max=6, n_references=10),
    )


@pytest.fixture
def settings_file(tmp_path):
    """Write a YAML settings file and return its path."""
    def _write(content: str):
        path = tmp_path / "settings.yaml"
        path.write_text(content)
        return str(path)

    return _write


# =============================================================================
# Cleanup Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config():
    """Drop cached settings so tests never share configuration."""
    ConfigManager._settings = None
    yield
    ConfigManager._settings = None


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo structlog configuration applied by engines built from settings."""
    yield
    structlog.reset_defaults()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests for individual components"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests for the full analysis pipeline"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take >1 second"
    )
