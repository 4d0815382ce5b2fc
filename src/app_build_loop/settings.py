from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import DEFAULT_ARTIFACT_KINDS, IDENTIFIER_RE


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    project_id: str = "PROJECT-001"
    state_store_root: str = "state_store"
    default_spec_path: str = "SPEC.md"
    memory_file: str = "memory.json"
    ledger_file: str = "ledger.jsonl"
    checkpoint_log_file: str = "checkpoints.jsonl"
    snapshot_dir: str = "snapshots"
    database_path: str = "app.db"
    max_attempts: int = 3
    max_features_per_invocation: int = 0
    ledger_max_entries: int = 50
    ledger_context_entries: int = 10
    min_contrast_ratio: float = 4.5
    artifact_kinds: tuple[str, ...] = DEFAULT_ARTIFACT_KINDS
    model_name: str = "gpt-4o"
    model_timeout: int = 120
    model_max_retries: int = 3
    recursion_limit: int = 1_000
    workspace_root: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            project_id=os.getenv("BUILD_LOOP_PROJECT_ID", "PROJECT-001"),
            state_store_root=os.getenv("BUILD_LOOP_STATE_STORE_ROOT", "state_store"),
            default_spec_path=os.getenv("BUILD_LOOP_DEFAULT_SPEC_PATH", "SPEC.md"),
            memory_file=os.getenv("BUILD_LOOP_MEMORY_FILE", "memory.json"),
            ledger_file=os.getenv("BUILD_LOOP_LEDGER_FILE", "ledger.jsonl"),
            checkpoint_log_file=os.getenv("BUILD_LOOP_CHECKPOINT_LOG_FILE", "checkpoints.jsonl"),
            snapshot_dir=os.getenv("BUILD_LOOP_SNAPSHOT_DIR", "snapshots"),
            database_path=os.getenv("BUILD_LOOP_DATABASE_PATH", "app.db"),
            max_attempts=_get_env_int("BUILD_LOOP_MAX_ATTEMPTS", default=3, minimum=1, maximum=50),
            max_features_per_invocation=_get_env_int("BUILD_LOOP_MAX_FEATURES", default=0, minimum=0),
            ledger_max_entries=_get_env_int("BUILD_LOOP_LEDGER_MAX_ENTRIES", default=50, minimum=1),
            ledger_context_entries=_get_env_int("BUILD_LOOP_LEDGER_CONTEXT_ENTRIES", default=10, minimum=0),
            min_contrast_ratio=_get_env_float("BUILD_LOOP_MIN_CONTRAST_RATIO", default=4.5, minimum=1.0, maximum=21.0),
            artifact_kinds=_get_env_list("BUILD_LOOP_ARTIFACT_KINDS", default=DEFAULT_ARTIFACT_KINDS),
            model_name=os.getenv("BUILD_LOOP_MODEL", "gpt-4o"),
            model_timeout=_get_env_int("BUILD_LOOP_MODEL_TIMEOUT", default=120, minimum=1, maximum=3_600),
            model_max_retries=_get_env_int("BUILD_LOOP_MODEL_MAX_RETRIES", default=3, minimum=0, maximum=20),
            recursion_limit=_get_env_int("BUILD_LOOP_RECURSION_LIMIT", default=1_000, minimum=50),
            workspace_root=os.getenv("BUILD_LOOP_WORKSPACE_ROOT", ""),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("BUILD_LOOP_MODEL must be non-empty")

        for env_name, value in (
            ("BUILD_LOOP_PROJECT_ID", self.project_id),
            ("BUILD_LOOP_STATE_STORE_ROOT", self.state_store_root),
            ("BUILD_LOOP_DEFAULT_SPEC_PATH", self.default_spec_path),
            ("BUILD_LOOP_MEMORY_FILE", self.memory_file),
            ("BUILD_LOOP_LEDGER_FILE", self.ledger_file),
            ("BUILD_LOOP_CHECKPOINT_LOG_FILE", self.checkpoint_log_file),
            ("BUILD_LOOP_SNAPSHOT_DIR", self.snapshot_dir),
            ("BUILD_LOOP_DATABASE_PATH", self.database_path),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")

        if self.max_attempts < 1:
            raise ValueError(f"BUILD_LOOP_MAX_ATTEMPTS must be >= 1, got: {self.max_attempts}")
        if self.ledger_context_entries > self.ledger_max_entries:
            raise ValueError(
                "BUILD_LOOP_LEDGER_CONTEXT_ENTRIES must be <= BUILD_LOOP_LEDGER_MAX_ENTRIES, "
                f"got: {self.ledger_context_entries} > {self.ledger_max_entries}"
            )

        kinds = tuple(kind.strip().lower() for kind in self.artifact_kinds if kind.strip())
        if not kinds:
            raise ValueError("BUILD_LOOP_ARTIFACT_KINDS must name at least one artifact kind")
        for kind in kinds:
            if not IDENTIFIER_RE.match(kind):
                raise ValueError(f"BUILD_LOOP_ARTIFACT_KINDS contains an invalid kind: {kind!r}")

        return RuntimeSettings(
            project_id=self.project_id.strip(),
            state_store_root=self.state_store_root,
            default_spec_path=self.default_spec_path,
            memory_file=self.memory_file,
            ledger_file=self.ledger_file,
            checkpoint_log_file=self.checkpoint_log_file,
            snapshot_dir=self.snapshot_dir,
            database_path=self.database_path,
            max_attempts=self.max_attempts,
            max_features_per_invocation=self.max_features_per_invocation,
            ledger_max_entries=self.ledger_max_entries,
            ledger_context_entries=self.ledger_context_entries,
            min_contrast_ratio=self.min_contrast_ratio,
            artifact_kinds=tuple(dict.fromkeys(kinds)),
            model_name=model_name,
            model_timeout=self.model_timeout,
            model_max_retries=self.model_max_retries,
            recursion_limit=self.recursion_limit,
            workspace_root=self.workspace_root,
        )

    def default_spec_file(self, repo_root: Path) -> Path:
        path = Path(self.default_spec_path)
        return path if path.is_absolute() else repo_root / path

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def database_file(self, workspace_root: Path) -> Path:
        path = Path(self.database_path)
        return path if path.is_absolute() else workspace_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())
