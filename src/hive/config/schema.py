"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field


class GlobalConfig(BaseModel):
    """Global hive configuration."""

    hive_dir: str = ".hive"  # Run state directory, relative to the project root
    color: bool = True
    verbose: bool = False


class IterationConfig(BaseModel):
    """Retry budget for a single phase."""

    max_attempts: int = Field(default=3, ge=1)


class ReportConfig(BaseModel):
    """Agent self-report interpretation."""

    pass_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    # Adjusted confidence below this checkpoints the run and flags extra review
    confidence_gate: float = Field(default=0.6, ge=0.0, le=1.0)


class AdaptConfig(BaseModel):
    """Phases injected into a run based on agent reports."""

    enabled: bool = True
    many_files: int = Field(default=10, ge=0)  # More modified files than this adds an extra review


class CheckpointConfig(BaseModel):
    """Checkpoint retention."""

    keep: int = Field(default=10, ge=1)


class BranchesConfig(BaseModel):
    """Parallel branch scheduling."""

    max_parallel: int = Field(default=3, ge=1)
    wait_timeout: float = Field(default=3600.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    max_phase_attempts: int = Field(default=2, ge=1)


class HiveConfig(BaseModel):
    """Root configuration model for hive."""

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    iteration: IterationConfig = Field(default_factory=IterationConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    branches: BranchesConfig = Field(default_factory=BranchesConfig)
    adapt: AdaptConfig = Field(default_factory=AdaptConfig)

    class Config:
        populate_by_name = True

    @classmethod
    def default(cls) -> "HiveConfig":
        """Create default configuration."""
        return cls()

    def get_hive_dir(self, root: Path | None = None) -> Path:
        """Resolve the run state directory against a project root."""
        hive_dir = Path(self.global_.hive_dir)
        if hive_dir.is_absolute():
            return hive_dir
        return (root or Path.cwd()) / hive_dir


def get_config_dir() -> Path:
    """Get the user configuration directory path."""
    config_dir = Path.home() / ".config" / "hive"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_file() -> Path:
    """Get the main user configuration file path."""
    return get_config_dir() / "config.toml"
