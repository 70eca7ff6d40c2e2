"""
starkcommit configuration.

Provides:
1. Sectioned configuration with defaults
2. Environment variable overrides (STARKCOMMIT_* prefix)
3. Config file loading (JSON/TOML/YAML)
4. Validation on construction

Configuration Hierarchy (highest to lowest priority):
1. Environment variables
2. Config file
3. Default values

Example:
    config = CommitmentConfig.load("commit.toml")
    print(config.tree.workers)

    # Override with environment
    # STARKCOMMIT_TREE_WORKERS=8
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# =============================================================================
# Configuration Sections
# =============================================================================

@dataclass
class TreeConfig:
    """Dense tree construction."""
    workers: int = 1
    # log2 bytes per parallel segment; None derives it from workers
    segment_log_len: Optional[int] = None

    def __post_init__(self):
        if self.workers <= 0:
            raise ValueError("workers must be positive")
        if self.segment_log_len is not None and self.segment_log_len < 5:
            raise ValueError("segment_log_len must be at least 5 (one dual block)")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"  # "json" or "text"
    file: Optional[str] = None


# =============================================================================
# Main Configuration
# =============================================================================

@dataclass
class CommitmentConfig:
    """Top-level configuration combining all sections."""
    tree: TreeConfig = field(default_factory=TreeConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(
        cls,
        config_file: Optional[Union[str, Path]] = None,
        env_prefix: str = "STARKCOMMIT",
    ) -> "CommitmentConfig":
        """
        Load configuration with hierarchy: env vars > config file > defaults.

        Args:
            config_file: Path to config file (JSON, TOML or YAML)
            env_prefix: Prefix for environment variables

        Returns:
            Loaded and validated configuration
        """
        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = cls._load_file(Path(config_file))

        config_dict = cls._apply_env_overrides(config_dict, env_prefix)

        config = cls._from_dict(config_dict)
        config.validate()
        return config

    @classmethod
    def _load_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        content = path.read_text()

        if path.suffix == ".json":
            parsed = json.loads(content)
        elif path.suffix == ".toml":
            parsed = tomllib.loads(content)
        elif path.suffix in {".yaml", ".yml"}:
            parsed = yaml.safe_load(content)
        else:
            logger.warning(f"Unknown config file format: {path.suffix}")
            return {}

        if isinstance(parsed, dict):
            return parsed
        logger.warning("Config file must be a mapping at top level")
        return {}

    @classmethod
    def _apply_env_overrides(cls, config: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        for key, value in os.environ.items():
            if not key.startswith(f"{prefix}_"):
                continue

            # STARKCOMMIT_TREE_SEGMENT_LOG_LEN -> tree.segment_log_len
            parts = key[len(prefix) + 1:].lower().split("_")
            if len(parts) < 2:
                continue

            section = parts[0]
            field_name = "_".join(parts[1:])
            config.setdefault(section, {})[field_name] = cls._parse_env_value(value)

        return config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable value to appropriate type."""
        try:
            return int(value)
        except ValueError:
            pass

        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False
        if value.lower() in ("none", "null"):
            return None

        return value

    @classmethod
    def _from_dict(cls, config_dict: Dict[str, Any]) -> "CommitmentConfig":
        """Build config object from dictionary."""
        return cls(
            tree=TreeConfig(**config_dict.get("tree", {})),
            logging=LoggingConfig(**config_dict.get("logging", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration as JSON or YAML, chosen by suffix."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.suffix in {".yaml", ".yml"}:
            path.write_text(yaml.safe_dump(self.to_dict(), sort_keys=False))
        else:
            path.write_text(self.to_json())

    def validate(self) -> None:
        """Validate cross-field constraints."""
        # Tree validation happens in __post_init__

        level = self.logging.level.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Invalid logging level: {self.logging.level}")

        if self.logging.format not in ("json", "text"):
            raise ValueError(f"Invalid logging format: {self.logging.format}")


# =============================================================================
# Global Config Instance
# =============================================================================

_global_config: Optional[CommitmentConfig] = None


def get_config() -> CommitmentConfig:
    """Get global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = CommitmentConfig.load()
    return _global_config


def set_config(config: CommitmentConfig) -> None:
    global _global_config
    _global_config = config


def reset_config() -> None:
    """Reset global configuration (forces reload)."""
    global _global_config
    _global_config = None
