from __future__ import annotations

import logging
import shutil
import sqlite3
import subprocess
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Protocol, Sequence

from .models import EntityDecl, FeatureSpec, Finding, GateResult, TargetResult
from .placeholder_scan import scan_paths
from .utils import slugify_name

if TYPE_CHECKING:
    from .generator import ArtifactGenerator

logger = logging.getLogger(__name__)

_SNAPSHOT_SENTINEL = ".immutable"
DEFAULT_SNAPSHOT_IGNORE = frozenset({".git", "node_modules", ".next"})


@dataclass(frozen=True)
class BuildContext:
    """Everything a generation call may know about the feature being built."""

    feature: str
    attempt: int
    last_gate_result: GateResult | None = None
    architecture_decisions: dict[str, Any] = field(default_factory=dict)
    schema_inventory: dict[str, list[str]] = field(default_factory=dict)
    ledger_excerpt: str = ""


class CodeGenerationTarget(Protocol):
    """The external collaborator the orchestrator drives.

    Every method except ``run_static_scan`` reports success or failure in a
    :class:`TargetResult`; implementations may still raise, and the
    orchestrator treats a raised exception as a failed result.
    """

    def apply_schema_change(self, entities: Sequence[EntityDecl]) -> TargetResult: ...

    def generate_artifact(self, feature: FeatureSpec, kind: str, context: BuildContext) -> TargetResult: ...

    def run_round_trip(self, entity: EntityDecl, record: dict[str, Any]) -> TargetResult: ...

    def run_static_scan(self, paths: Sequence[str]) -> list[Finding]: ...

    def checkpoint(self, label: str) -> TargetResult: ...


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class WorkspaceTarget:
    """Filesystem workspace plus a sqlite database.

    Checkpoints are git commits when ``root`` is a git work tree, otherwise
    read-only snapshot copies under ``snapshot_root``. Directory names in
    ``snapshot_ignore`` are left out of snapshots.
    """

    def __init__(
        self,
        root: Path,
        *,
        database_path: Path,
        generator: ArtifactGenerator | None = None,
        snapshot_root: Path | None = None,
        snapshot_ignore: Iterable[str] = DEFAULT_SNAPSHOT_IGNORE,
    ) -> None:
        self.root = root
        self.database_path = database_path
        self.generator = generator
        self.snapshot_root = snapshot_root if snapshot_root is not None else root / ".snapshots"
        self.snapshot_ignore = frozenset(snapshot_ignore)

    # -- database -------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.database_path)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
        return [row[1] for row in conn.execute(f"PRAGMA table_info({_quote(table)})")]

    def apply_schema_change(self, entities: Sequence[EntityDecl]) -> TargetResult:
        tables: dict[str, list[str]] = {}
        try:
            with closing(self._connect()) as conn:
                with conn:
                    for entity in entities:
                        column_sql = ", ".join(
                            f"{_quote(column)} TEXT PRIMARY KEY" if column == "id" else f"{_quote(column)} TEXT"
                            for column in entity.columns
                        )
                        conn.execute(f"CREATE TABLE IF NOT EXISTS {_quote(entity.name)} ({column_sql})")
                        existing = self._table_columns(conn, entity.name)
                        for column in entity.columns:
                            if column not in existing:
                                conn.execute(f"ALTER TABLE {_quote(entity.name)} ADD COLUMN {_quote(column)} TEXT")
                                logger.info("Added column %s.%s", entity.name, column)
                        tables[entity.name] = self._table_columns(conn, entity.name)
        except sqlite3.Error as exc:
            return TargetResult.failure(f"schema change failed: {exc}")
        return TargetResult(ok=True, detail=f"{len(tables)} table(s) ready", payload={"tables": tables})

    def run_round_trip(self, entity: EntityDecl, record: dict[str, Any]) -> TargetResult:
        if "id" not in record:
            return TargetResult.failure("round-trip record has no id")
        columns = list(record)
        table = _quote(entity.name)
        try:
            with closing(self._connect()) as conn:
                # The sample record is rolled back, never committed.
                try:
                    conn.execute(
                        f"INSERT INTO {table} ({', '.join(_quote(c) for c in columns)}) "
                        f"VALUES ({', '.join('?' for _ in columns)})",
                        [record[column] for column in columns],
                    )
                    row = conn.execute(
                        f"SELECT {', '.join(_quote(c) for c in columns)} FROM {table} WHERE {_quote('id')} = ?",
                        [record["id"]],
                    ).fetchone()
                finally:
                    conn.rollback()
        except sqlite3.Error as exc:
            return TargetResult.failure(f"round trip on {entity.name} failed: {exc}")
        if row is None:
            return TargetResult.failure(f"record {record['id']!r} not found in {entity.name} after write")
        return TargetResult(ok=True, payload={"record": dict(zip(columns, row))})

    # -- artifacts ------------------------------------------------------------

    def generate_artifact(self, feature: FeatureSpec, kind: str, context: BuildContext) -> TargetResult:
        if self.generator is None:
            return TargetResult.failure("no artifact generator configured")
        generated = self.generator.generate(feature, kind, context, self.root)
        root = self.root.resolve()
        paths: list[str] = []
        for path in generated.paths:
            candidate = (root / path.lstrip("/")).resolve()
            if not candidate.is_relative_to(root):
                return TargetResult.failure(f"generated path escapes the workspace: {path}")
            if not candidate.is_file():
                return TargetResult.failure(f"generated path does not exist: {path}")
            paths.append(candidate.relative_to(root).as_posix())
        if not paths:
            return TargetResult.failure(f"generator produced no {kind} artifact")
        return TargetResult(
            ok=True,
            detail=generated.notes,
            payload={"paths": paths, "decisions": generated.decisions},
        )

    def run_static_scan(self, paths: Sequence[str]) -> list[Finding]:
        return scan_paths(self.root, paths)

    # -- checkpoints ----------------------------------------------------------

    def checkpoint(self, label: str) -> TargetResult:
        if (self.root / ".git").exists():
            return self._git_checkpoint(label)
        return self._snapshot_checkpoint(label)

    def _git(self, *args: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(["git", *args], cwd=self.root, capture_output=True, text=True, check=False)

    def _git_checkpoint(self, label: str) -> TargetResult:
        for args in (("add", "-A"), ("commit", "--allow-empty", "-m", label)):
            proc = self._git(*args)
            if proc.returncode != 0:
                return TargetResult.failure(f"git {args[0]} failed: {proc.stderr.strip() or proc.stdout.strip()}")
        proc = self._git("rev-parse", "HEAD")
        if proc.returncode != 0:
            return TargetResult.failure(f"git rev-parse failed: {proc.stderr.strip()}")
        return TargetResult(ok=True, detail=label, payload={"ref": f"git:{proc.stdout.strip()}"})

    def _snapshot_checkpoint(self, label: str) -> TargetResult:
        destination = self.snapshot_root / slugify_name(label)
        if destination.exists():
            return TargetResult.failure(f"snapshot already exists: {destination}")
        snapshot_root = self.snapshot_root.resolve()

        def ignore(directory: str, names: list[str]) -> set[str]:
            here = Path(directory).resolve()
            return {name for name in names if (here / name) == snapshot_root or name in self.snapshot_ignore}

        try:
            shutil.copytree(self.root, destination, ignore=ignore)
            (destination / _SNAPSHOT_SENTINEL).write_text("immutable=true\n", encoding="utf-8")
        except OSError as exc:
            return TargetResult.failure(f"snapshot copy failed: {exc}")
        logger.info("Recorded snapshot checkpoint %s", destination)
        return TargetResult(ok=True, detail=label, payload={"ref": f"snapshot:{destination}"})
