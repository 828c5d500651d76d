"""Configuration management for the work-study state monitor."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
import yaml
from pydantic import BaseModel, Field, field_validator

from .logic.model import Model


class NormalizerConfig(BaseModel):
    """Configuration for pose normalization."""
    min_score: float = Field(0.3, ge=0.0, le=1.0, description="Minimum joint score for roots and comparisons")


class DTWConfig(BaseModel):
    """Configuration for dynamic time warping."""
    window_fraction: float = Field(0.2, ge=0.0, le=1.0, description="Sakoe-Chiba band as a fraction of the longer sequence")
    threshold: float = Field(0.4, gt=0.0, description="Normalized distance below which sequences match")


class EngineConfig(BaseModel):
    """Configuration for the state machine engine."""
    stale_timeout: float = Field(2.0, gt=0.0, description="Idle time before a track is dropped")
    pose_buffer_size: int = Field(1800, ge=10, description="Poses kept per track")
    log_capacity: int = Field(50, ge=1, description="Engine log ring buffer size")
    default_min_duration: float = Field(0.5, ge=0.0, description="Compliance time to auto-advance")
    reference_similarity: float = Field(0.75, ge=0.0, le=1.0, description="Minimum reference pose similarity")
    cycle_boundary_states: List[str] = Field(
        ["s_start", "complete", "s_complete"], description="States whose entry reports cycle statistics"
    )
    terminal_states: List[str] = Field(["complete", "s_complete"], description="States whose exit closes a cycle")
    cycle_policy: str = Field("terminal_or_restart", description="terminal_or_restart, terminal_only or restart_only")

    @field_validator('cycle_policy')
    @classmethod
    def validate_cycle_policy(cls, v):
        if v not in ['terminal_or_restart', 'terminal_only', 'restart_only']:
            raise ValueError('cycle_policy must be one of: terminal_or_restart, terminal_only, restart_only')
        return v


class ComplianceConfig(BaseModel):
    """Configuration for linear sequence compliance."""
    min_frames: int = Field(5, ge=1, description="Minimum live window length")
    score_threshold: float = Field(50.0, gt=0.0, description="Normalized DTW distance mapped to score 0")
    context_bias: float = Field(10.0, ge=0.0, description="Score bonus for the expected element")
    smoothing_window: int = Field(5, ge=1, description="Scores averaged per element")
    match_threshold: float = Field(70.0, ge=0.0, le=200.0, description="Smoothed score a match must exceed")
    overrun_factor: float = Field(1.5, ge=1.0, description="Standard duration multiple counted as overrun")
    overrun_debounce: float = Field(5.0, ge=0.0, description="Minimum time between overrun records per step")


class SmootherConfig(BaseModel):
    """Configuration for keypoint smoothing."""
    enabled: bool = Field(False, description="Smooth poses per track before evaluation")
    alpha: float = Field(0.5, ge=0.1, le=1.0, description="EMA weight of the newest observation")
    visibility_threshold: float = Field(0.25, ge=0.0, le=1.0, description="Score below which a joint is occluded")
    max_persistence: int = Field(20, ge=0, description="Frames an occluded joint is extrapolated")
    decay_factor: float = Field(0.92, ge=0.0, le=1.0, description="Score decay per extrapolated frame")
    friction: float = Field(0.8, ge=0.0, le=1.0, description="Velocity decay per extrapolated frame")


class LoggingConfig(BaseModel):
    """Configuration for logging and output."""
    out_dir: str = Field("runs/events", description="Output directory for events")
    write_jsonl: bool = Field(True, description="Write events to JSONL format")
    write_csv: bool = Field(True, description="Write events to CSV format")
    log_level: str = Field("INFO", description="Logging level")
    max_log_files: int = Field(10, ge=1, description="Maximum number of log files to keep")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError('log_level must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL')
        return v


class Config(BaseModel):
    """Main configuration class for the work-study state monitor."""
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    dtw: DTWConfig = Field(default_factory=DTWConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    compliance: ComplianceConfig = Field(default_factory=ComplianceConfig)
    smoother: SmootherConfig = Field(default_factory=SmootherConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Config":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)

        return cls(**(data or {}))

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        return self.model_dump(exclude_none=True)


def load_config(
    config_path: Union[str, Path],
    model_path: Optional[Union[str, Path]] = None
) -> Tuple[Config, Optional[Model]]:
    """
    Load engine configuration and, if given, a motion model.

    Args:
        config_path: Engine configuration YAML
        model_path: Motion model YAML/JSON (skipped if None or missing)

    Returns:
        Tuple of (config, model or None)
    """
    config = Config.from_yaml(config_path)

    model = Model.from_yaml(model_path) if model_path and Path(model_path).exists() else None

    return config, model
