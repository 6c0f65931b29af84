"""
settings_loader.py

Configuration management for the Emotion Clustering engine.
Loads and validates settings from YAML configuration with environment variable substitution.

Features:
- YAML configuration loading with validation
- Environment variable substitution (${VAR_NAME} syntax)
- Singleton pattern for global settings access
- Type-safe configuration with Pydantic models
- Default values when no configuration file is present
"""

import os
import re
import yaml
import logging
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
from pathlib import Path

from emotion_clustering.utils.error_handling import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models (Pydantic)
# =============================================================================

class ServiceSettings(BaseModel):
    """General service settings."""
    name: str = Field(default="emotion-clustering", description="Service name")
    version: str = Field(default="1.0.0", description="Service version")
    environment: str = Field(default="development", description="Environment (development, staging, production)")


class DissimilaritySettings(BaseModel):
    """Pairwise distance settings."""
    metric: str = Field(default="euclidean", description="Distance metric (euclidean, manhattan)")

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, v: str) -> str:
        allowed = {"euclidean", "manhattan"}
        if v.lower() not in allowed:
            raise ValueError(f"metric must be one of {sorted(allowed)}")
        return v.lower()


class HierarchicalSettings(BaseModel):
    """Agglomerative clustering settings."""
    linkage: str = Field(default="average", description="Linkage method (single, complete, average, centroid, ward)")
    n_clusters: Optional[int] = Field(default=None, ge=1, description="Number of clusters (null = use distance_threshold)")
    distance_threshold: Optional[float] = Field(default=None, ge=0.0, description="Cut height")

    @field_validator("linkage")
    @classmethod
    def validate_linkage(cls, v: str) -> str:
        allowed = {"single", "complete", "average", "centroid", "ward"}
        if v.lower() not in allowed:
            raise ValueError(f"linkage must be one of {sorted(allowed)}")
        return v.lower()


class KMeansSettings(BaseModel):
    """K-Means clustering algorithm settings."""
    n_clusters: int = Field(default=4, ge=1, description="Number of clusters")
    n_init: int = Field(default=10, ge=1, description="Number of random restarts")
    max_iter: int = Field(default=300, ge=1, description="Maximum iterations per restart")
    random_state: Optional[int] = Field(default=42, description="Random seed (null = nondeterministic)")
    n_jobs: int = Field(default=1, description="Parallel restarts (1 = sequential, -1 = all cores)")


class ValiditySettings(BaseModel):
    """Cluster-count validity settings."""
    methods: List[str] = Field(
        default_factory=lambda: ["wss", "silhouette", "gap", "hartigan"],
        description="Validity methods run by analyze()"
    )
    k_min: int = Field(default=1, ge=1, description="Smallest cluster count evaluated")
    k_max: int = Field(default=10, ge=1, description="Largest cluster count evaluated")
    partitioner: str = Field(default="kmeans", description="Partitioner used per k (kmeans, hierarchical)")
    n_references: int = Field(default=100, ge=1, description="Gap statistic reference datasets")
    hartigan_threshold: float = Field(default=10.0, gt=0.0, description="Hartigan index threshold")

    @field_validator("methods")
    @classmethod
    def validate_methods(cls, v: List[str]) -> List[str]:
        allowed = {"wss", "silhouette", "gap", "hartigan"}
        unknown = [m for m in v if m.lower() not in allowed]
        if unknown:
            raise ValueError(f"Unknown validity methods {unknown}; allowed: {sorted(allowed)}")
        return [m.lower() for m in v]

    @field_validator("partitioner")
    @classmethod
    def validate_partitioner(cls, v: str) -> str:
        if v not in ("kmeans", "hierarchical"):
            raise ValueError("partitioner must be 'kmeans' or 'hierarchical'")
        return v

    @field_validator("k_max")
    @classmethod
    def validate_k_max(cls, v: int, info) -> int:
        k_min = info.data.get("k_min")
        if k_min is not None and v < k_min:
            raise ValueError(f"k_max ({v}) must be >= k_min ({k_min})")
        return v

    @property
    def k_range(self) -> List[int]:
        return list(range(self.k_min, self.k_max + 1))


class FileLoggingSettings(BaseModel):
    """File logging configuration."""
    enabled: bool = Field(default=False, description="Enable file logging")
    path: str = Field(default="logs/emotion_clustering.log", description="Log file path")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="console", description="Log format (json, console)")
    file: FileLoggingSettings = Field(default_factory=FileLoggingSettings)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"level must be one of {sorted(allowed)}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("format must be 'json' or 'console'")
        return v


class Settings(BaseModel):
    """Root configuration model."""
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    dissimilarity: DissimilaritySettings = Field(default_factory=DissimilaritySettings)
    hierarchical: HierarchicalSettings = Field(default_factory=HierarchicalSettings)
    kmeans: KMeansSettings = Field(default_factory=KMeansSettings)
    validity: ValiditySettings = Field(default_factory=ValiditySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# =============================================================================
# Configuration Manager (Singleton)
# =============================================================================

class ConfigManager:
    """
    Singleton configuration manager that loads and caches settings.

    Features:
    - Loads YAML configuration from file
    - Substitutes environment variables using ${VAR_NAME} syntax
    - Validates configuration using Pydantic models
    - Provides global access to settings
    """

    _instance: Optional['ConfigManager'] = None
    _settings: Optional[Settings] = None

    def __new__(cls):
        """Ensure singleton pattern."""
        if cls._instance is None:
            cls._instance = super(ConfigManager, cls).__new__(cls)
        return cls._instance

    @classmethod
    def load_config(cls, config_path: Optional[str] = None) -> Settings:
        """
        Load configuration from YAML file with environment variable substitution.

        Args:
            config_path: Path to configuration file. If None, searches the
                default locations and falls back to built-in defaults.

        Returns:
            Settings object with validated configuration

        Raises:
            ConfigurationError: If an explicit file is missing or any file is invalid
        """
        if cls._settings is not None:
            return cls._settings

        # Determine config path
        if config_path is None:
            possible_paths = [
                Path(os.getenv("CONFIG_PATH", "config/settings.yaml")),
                Path("config/settings.yaml"),
            ]

            config_path_obj = None
            for path in possible_paths:
                if path.exists():
                    config_path_obj = path
                    break

            if config_path_obj is None:
                logger.warning(
                    f"Configuration file not found in any of: {[str(p) for p in possible_paths]}; "
                    "using defaults"
                )
                cls._settings = Settings()
                return cls._settings
        else:
            config_path_obj = Path(config_path)
            if not config_path_obj.exists():
                raise ConfigurationError(
                    f"Configuration file not found: {config_path}",
                    details={"path": str(config_path)},
                )

        logger.info(f"Loading configuration from: {config_path_obj}")

        # Load YAML file
        try:
            with open(config_path_obj, 'r') as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML configuration: {e}")
            raise ConfigurationError(f"Invalid YAML configuration: {e}") from e

        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                f"Configuration root must be a mapping, got {type(raw_config).__name__}"
            )

        # Substitute environment variables
        config_dict = cls._substitute_env_vars(raw_config)

        # Validate and create Settings object
        try:
            cls._settings = Settings(**config_dict)
            logger.info("Configuration loaded and validated successfully")
            return cls._settings
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details={"errors": e.errors(include_url=False)},
            ) from e

    @classmethod
    def get_settings(cls) -> Settings:
        """
        Get cached settings. Loads from default path if not already loaded.

        Returns:
            Settings object
        """
        if cls._settings is None:
            cls.load_config()
        return cls._settings

    @classmethod
    def _substitute_env_vars(cls, config: Any) -> Any:
        """
        Recursively substitute environment variables in configuration.

        Supports ${VAR_NAME} and ${VAR_NAME:default_value} syntax.

        Args:
            config: Configuration dictionary or value

        Returns:
            Configuration with substituted values
        """
        if isinstance(config, dict):
            return {k: cls._substitute_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [cls._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            # Match ${VAR_NAME} or ${VAR_NAME:default}
            pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

            def replace_var(match):
                var_name = match.group(1)
                default_value = match.group(2) if match.group(2) is not None else ""
                return os.getenv(var_name, default_value)

            return re.sub(pattern, replace_var, config)
        else:
            return config

    @classmethod
    def reload_config(cls, config_path: Optional[str] = None) -> Settings:
        """
        Reload configuration from file.

        Args:
            config_path: Path to configuration file

        Returns:
            Reloaded Settings object
        """
        cls._settings = None
        return cls.load_config(config_path)


# =============================================================================
# Convenience Functions
# =============================================================================

def get_settings() -> Settings:
    """
    Get global settings instance.

    Returns:
        Settings object
    """
    return ConfigManager.get_settings()


def reload_config(config_path: Optional[str] = None) -> Settings:
    """
    Reload configuration from file.

    Args:
        config_path: Path to configuration file

    Returns:
        Reloaded Settings object
    """
    return ConfigManager.reload_config(config_path)


def settings_as_dict(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Plain-dict view of the settings, for logging the effective configuration."""
    return (settings or get_settings()).model_dump()
