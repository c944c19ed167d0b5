"""Configuration management for Artifact Harvester."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


class GitSourceOptions(BaseModel):
    """Normalized options of a git source.

    Exactly one authentication method may be given: an HTTPS token that is
    embedded into the clone URL, or an SSH private key that is written to a
    private temporary file for the duration of the clone.
    """

    repo_url: str = Field(description="Remote repository URL")
    branches: Optional[List[str]] = Field(
        default=None,
        description="Branches to traverse (None or empty = every remote branch)",
    )
    auth_token: Optional[str] = Field(
        default=None, description="Bearer/API token for HTTPS authentication"
    )
    ssh_private_key: Optional[str] = Field(
        default=None, description="SSH private key for SSH authentication"
    )
    default_branch: Optional[str] = Field(
        default=None,
        description="Branch used when the clone exposes no branches at all",
    )

    @field_validator("repo_url")
    @classmethod
    def require_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("repo_url must not be empty")
        return v

    @field_validator("branches", mode="before")
    @classmethod
    def split_branches(cls, v: Any) -> Optional[List[str]]:
        """Accept a comma separated string and drop blank entries."""
        if v is None:
            return None
        if isinstance(v, str):
            v = v.split(",")
        branches = [str(b).strip() for b in v if str(b).strip()]
        return branches or None

    @field_validator("auth_token", "ssh_private_key", "default_branch")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def single_auth_method(self) -> "GitSourceOptions":
        if self.auth_token and self.ssh_private_key:
            raise ValueError("auth_token and ssh_private_key are mutually exclusive")
        return self


class Source(BaseModel):
    """A configured harvest source. Owned outside the harvester."""

    id: str = Field(description="Stable source identifier")
    name: str = Field(default="", description="Display name")
    plugin_key: str = Field(default="git", description="Extractor plugin key")
    options: Dict[str, Any] = Field(
        default_factory=dict, description="Plugin specific options"
    )


class HarvestConfig(BaseModel):
    """Main configuration for Artifact Harvester."""

    store_path: Path = Field(
        default=Path(".artifact-harvester/artifacts.db"),
        description="SQLite database holding artifacts, versions and runs",
    )
    default_branch: str = Field(
        default="main",
        description="Fallback branch when a clone exposes no branches",
    )
    workdir_root: Optional[Path] = Field(
        default=None,
        description="Parent directory for ephemeral working copies (system temp if unset)",
    )
    run_timeout_seconds: Optional[float] = Field(
        default=None, description="Deadline for a whole harvest run"
    )
    git_timeout_seconds: float = Field(
        default=300, description="Timeout for a single git plumbing call"
    )
    clone_timeout_seconds: float = Field(
        default=1800, description="Timeout for the initial clone"
    )
    binary_sniff_bytes: int = Field(
        default=4096,
        description="Leading bytes scanned for NUL to classify a blob as binary",
    )
    diff_context_lines: int = Field(
        default=100000,
        description="Unified diff context so hunks cover the whole file",
    )
    max_workers: int = Field(
        default=2, description="Sources harvested concurrently by the pool"
    )
    batch_size: int = Field(
        default=50, description="Artifacts handed to the store per batch"
    )
    exception_log_dir: Optional[Path] = Field(
        default=None, description="Directory for JSON exception logs of failed runs"
    )

    @field_validator("store_path", "workdir_root", "exception_log_dir", mode="before")
    @classmethod
    def convert_path(cls, v: Any) -> Optional[Path]:
        """Convert string paths to Path objects."""
        if v is None or isinstance(v, Path):
            return v
        if isinstance(v, str):
            return Path(v)
        raise ValueError(f"Expected str or Path, got {type(v)}")

    @field_validator("max_workers", "batch_size", "binary_sniff_bytes")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class ConfigManager:
    """Manages configuration loading, saving, and environment overrides."""

    DEFAULT_CONFIG_PATH = Path(".artifact-harvester/config.json")

    ENV_OVERRIDES = {
        "ARTIFACT_HARVESTER_STORE_PATH": "store_path",
        "ARTIFACT_HARVESTER_RUN_TIMEOUT": "run_timeout_seconds",
        "ARTIFACT_HARVESTER_DEFAULT_BRANCH": "default_branch",
    }

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        self._config: Optional[HarvestConfig] = None

    def load(self) -> HarvestConfig:
        """Load configuration from file (defaults when missing) plus env overrides."""
        data: Dict[str, Any] = {}
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {self.config_path}: {e}")

        for env_key, field_name in self.ENV_OVERRIDES.items():
            value = os.environ.get(env_key)
            if value:
                logger.debug(f"Config override from {env_key}")
                data[field_name] = value

        self._config = HarvestConfig(**data)
        return self._config

    def save(self, config: Optional[HarvestConfig] = None) -> None:
        """Save configuration to file."""
        config = config or self._config
        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(config.model_dump(mode="json"), f, indent=2)
        self._config = config

    def get_config(self) -> HarvestConfig:
        if self._config is None:
            return self.load()
        return self._config
