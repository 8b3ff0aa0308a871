"""Configuration for the resilience engine.

Engine settings live in ``~/.contextshield/config.yaml`` (or the file
named by ``CONTEXTSHIELD_CONFIG``) so callers don't have to pass them
on every construction. Per-call options are validated with pydantic.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CONTEXTSHIELD_CONFIG"


@dataclass
class ResistanceConfig:
    """Settings for a ResistanceCoordinator."""
    # "aggressive" makes the aggressive strategy the default
    resistance_level: str = "high"
    # Run the background memory monitor
    auto_resist: bool = True
    # Preservation rate callers aim for (reported, not enforced)
    preservation_target: float = 0.95
    # Log scored features for offline weight tuning
    ml_enabled: bool = False
    # Snapshot results and fall back to emergency protection on failure
    emergency_recovery_enabled: bool = True
    # Memory budget for pressure measurement (MB); system memory if unset
    memory_budget_mb: Optional[float] = None
    # Monitor sampling interval (seconds)
    memory_check_interval_s: float = 5.0
    # Monitor emits memory-pressure above this ratio
    memory_pressure_threshold: float = 0.7
    # Strategy selection switches to lowMemory above this ratio
    low_memory_threshold: float = 0.8
    # Strategy selection switches to highImportance above this mean score
    high_importance_threshold: float = 0.7
    max_recovery_points: int = 10
    cache_size: int = 100
    feature_log_size: int = 1000

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResistanceConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})


class ResistOptions(BaseModel):
    """Call-scoped options accepted by resist/compress/reconstruct."""
    strategy: Optional[Literal["lowMemory", "highImportance", "balanced", "aggressive"]] = None
    compress_critical: bool = False
    level: Optional[Literal["none", "light", "moderate", "heavy"]] = None
    skip_cache: bool = False
    # dotted path -> access count, fed to the frequency factor
    access_counts: dict[str, int] = Field(default_factory=dict)


def get_config_path() -> Path:
    """Get the config file path."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".contextshield" / "config.yaml"


def load_config(path: Path | None = None) -> ResistanceConfig:
    """Load configuration, falling back to defaults when there is no file."""
    config_path = path or get_config_path()
    if not config_path.exists():
        return ResistanceConfig()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        logger.warning(f"Config at {config_path} is not a mapping, using defaults")
        return ResistanceConfig()

    # allow the settings to sit under a "resistance:" section
    section = data.get("resistance", data)
    return ResistanceConfig.from_dict(section if isinstance(section, dict) else {})


def save_config(config: ResistanceConfig, path: Path | None = None) -> Path:
    """Save configuration to file."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump({"resistance": config.to_dict()}, f, default_flow_style=False)
    return config_path
