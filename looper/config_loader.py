"""
Configuration loader for Looper.
Merges defaults with per-repo .looper/config.yaml overrides,
then applies LOOPER_* environment overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RepoConfig(BaseModel):
    root: str = "."
    main_branch: str = "main"
    remote: str = "origin"


class OracleConfig(BaseModel):
    model: str = "openai/gpt-4o"
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout_seconds: float = 180
    retries: int = 3


class LimitsConfig(BaseModel):
    concurrency: int = 3
    max_iterations: int = 50
    max_tool_calls_per_iteration: int = 8
    validation_timeout_seconds: float = 600
    command_timeout_seconds: float = 60
    setup_timeout_seconds: float = 1200


class BudgetConfig(BaseModel):
    estimator: str = "chars"  # "chars" | "litellm"
    max_transcript_tokens: int = 120_000
    keep_recent_turns: int = 8


class ValidationConfig(BaseModel):
    command: str
    discover_command: str = ""
    parser: str = "unix"
    scope_to_unit: bool = True

    def whole_repo_command(self) -> str:
        """Command for repo-wide discovery; defaults to the unit command run on the repo root."""
        return self.discover_command or self.command.replace("{file}", ".")


class WorkspaceConfig(BaseModel):
    worktree_dir: str = "../.looper-worktrees"
    shared_cache_dirs: list[str] = Field(default_factory=lambda: ["node_modules"])
    cache_search_depth: int = 4
    setup_command: str = ""
    restore_after_setup: list[str] = Field(default_factory=lambda: ["package.json"])
    commit_on_success: bool = True
    push_on_success: bool = False
    suppressions_file: str = ""


class HistoryConfig(BaseModel):
    file: str = ".looper-history.json"
    max_attempts_per_key: int = 20
    max_age_days: float = 7


class ToolsConfig(BaseModel):
    formatter_command: str = ""
    protected_files: list[str] = Field(default_factory=list)
    blocked_patterns: list[str] = Field(default_factory=list)
    max_output_chars: int = 8000
    max_list_entries: int = 50
    max_search_results: int = 100


class LooperConfig(BaseModel):
    repo: RepoConfig = Field(default_factory=RepoConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    validation: dict[str, ValidationConfig] = Field(default_factory=dict)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    skip_path_patterns: list[str] = Field(default_factory=list)
    log_dir: str = ".looper/logs"

    @property
    def repo_path(self) -> Path:
        return Path(self.repo.root).expanduser().resolve()

    def validation_for(self, fix_type: str) -> ValidationConfig:
        """Resolve the validation command for a fix type.

        Raises:
            KeyError: If no validation command is configured for the fix type.
        """
        try:
            return self.validation[fix_type]
        except KeyError:
            raise KeyError(
                f"No validation command configured for '{fix_type}'. "
                f"Known: {sorted(self.validation)}"
            ) from None

    def history_path(self) -> Path:
        path = Path(self.history.file).expanduser()
        if not path.is_absolute():
            path = self.repo_path / path
        return path


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var → (section, key, caster)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "LOOPER_REPO_ROOT": ("repo", "root", str),
    "LOOPER_CONCURRENCY": ("limits", "concurrency", int),
    "LOOPER_MAX_ITERATIONS": ("limits", "max_iterations", int),
    "LOOPER_MODEL": ("oracle", "model", str),
    "LOOPER_HISTORY_FILE": ("history", "file", str),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env(base: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for var, (section, key, caster) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError:
            raise ValueError(f"{var} must be {caster.__name__}, got {raw!r}") from None
        base = _deep_merge(base, {section: {key: value}})
    return base


def load_config(
    repo_path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> LooperConfig:
    """
    Load config by merging:
      1. Built-in defaults (looper/config.yaml)
      2. Repo-level overrides (<repo>/.looper/config.yaml)
      3. Environment variable overrides (LOOPER_*)
    """
    environ = dict(os.environ) if environ is None else environ

    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    explicit_repo = repo_path is not None
    if repo_path is None and environ.get("LOOPER_REPO_ROOT"):
        repo_path = Path(environ["LOOPER_REPO_ROOT"])

    if repo_path:
        base = _deep_merge(base, {"repo": {"root": str(repo_path)}})
        repo_config = repo_path / ".looper" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides (an explicit repo path wins over LOOPER_REPO_ROOT)
    base = _apply_env(base, environ)
    if explicit_repo:
        base = _deep_merge(base, {"repo": {"root": str(repo_path)}})

    return LooperConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
