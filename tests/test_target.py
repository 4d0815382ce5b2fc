from __future__ import annotations

import shutil
import sqlite3
import subprocess
from contextlib import closing
from pathlib import Path

import pytest

from app_build_loop.generator import GeneratedArtifacts
from app_build_loop.models import EntityDecl, FeatureSpec
from app_build_loop.target import BuildContext, WorkspaceTarget

from build_fixtures import GOOD_PAGE, PLACEHOLDER_PAGE


class StubGenerator:
    def __init__(self, files: dict[str, str], decisions: dict[str, str] | None = None) -> None:
        self.files = files
        self.decisions = decisions or {}
        self.requests: list[tuple[str, str]] = []

    def generate(self, feature: FeatureSpec, kind: str, context: BuildContext, workspace_root: Path) -> GeneratedArtifacts:
        self.requests.append((feature.name, kind))
        for rel_path, content in self.files.items():
            path = workspace_root / rel_path.lstrip("/")
            if path.resolve().is_relative_to(workspace_root.resolve()):
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content, encoding="utf-8")
        return GeneratedArtifacts(paths=list(self.files), decisions=self.decisions, notes="stub")


def _target(workspace: Path, **kwargs: object) -> WorkspaceTarget:
    return WorkspaceTarget(workspace, database_path=workspace / "app.db", **kwargs)


def _feature() -> FeatureSpec:
    return FeatureSpec(name="Create task", writes=[EntityDecl(name="task", columns=["title"])], surfaces=["/tasks/new"])


def test_schema_change_creates_tables_and_adds_columns(workspace: Path) -> None:
    target = _target(workspace)

    first = target.apply_schema_change([EntityDecl(name="task", columns=["title"])])
    assert first.ok
    assert first.payload["tables"] == {"task": ["id", "title"]}

    second = target.apply_schema_change([EntityDecl(name="task", columns=["title", "done"])])
    assert second.ok
    assert second.payload["tables"] == {"task": ["id", "title", "done"]}


def test_round_trip_returns_reloaded_record_and_cleans_up(workspace: Path) -> None:
    target = _target(workspace)
    entity = EntityDecl(name="task", columns=["title", "done"])
    target.apply_schema_change([entity])

    result = target.run_round_trip(entity, {"id": "t1", "title": "title-sample", "done": "done-sample"})

    assert result.ok
    assert result.payload["record"] == {"id": "t1", "title": "title-sample", "done": "done-sample"}
    with closing(sqlite3.connect(workspace / "app.db")) as conn:
        assert conn.execute('SELECT COUNT(*) FROM "task"').fetchone()[0] == 0


def test_failed_round_trip_leaves_existing_rows_alone(workspace: Path) -> None:
    target = _target(workspace)
    entity = EntityDecl(name="task", columns=["title"])
    target.apply_schema_change([entity])
    with closing(sqlite3.connect(workspace / "app.db")) as conn:
        with conn:
            conn.execute('INSERT INTO "task" ("id", "title") VALUES (?, ?)', ("t1", "real user row"))

    result = target.run_round_trip(entity, {"id": "t1", "title": "title-sample"})

    assert not result.ok
    assert "UNIQUE" in result.detail
    with closing(sqlite3.connect(workspace / "app.db")) as conn:
        assert conn.execute('SELECT "id", "title" FROM "task"').fetchall() == [("t1", "real user row")]


def test_round_trip_against_missing_table_fails(workspace: Path) -> None:
    result = _target(workspace).run_round_trip(EntityDecl(name="ghost"), {"id": "t1"})
    assert not result.ok
    assert "ghost" in result.detail


def test_generate_artifact_returns_workspace_relative_paths(workspace: Path) -> None:
    generator = StubGenerator({"/app/tasks/new/page.tsx": GOOD_PAGE}, decisions={"ui": "tailwind"})
    target = _target(workspace, generator=generator)

    result = target.generate_artifact(_feature(), "page", BuildContext(feature="Create task", attempt=1))

    assert result.ok
    assert result.payload == {"paths": ["app/tasks/new/page.tsx"], "decisions": {"ui": "tailwind"}}
    assert generator.requests == [("Create task", "page")]


@pytest.mark.parametrize(
    "files, message",
    [
        ({"../outside.tsx": GOOD_PAGE}, "escapes the workspace"),
        ({}, "produced no page artifact"),
    ],
)
def test_generate_artifact_rejects_unusable_output(workspace: Path, files: dict[str, str], message: str) -> None:
    target = _target(workspace, generator=StubGenerator(files))
    result = target.generate_artifact(_feature(), "page", BuildContext(feature="Create task", attempt=1))
    assert not result.ok
    assert message in result.detail


def test_generate_artifact_without_generator_fails(workspace: Path) -> None:
    result = _target(workspace).generate_artifact(_feature(), "page", BuildContext(feature="Create task", attempt=1))
    assert not result.ok


def test_static_scan_reads_workspace_files(workspace: Path) -> None:
    (workspace / "page.tsx").write_text(PLACEHOLDER_PAGE, encoding="utf-8")
    findings = _target(workspace).run_static_scan(["page.tsx", "missing.tsx"])
    assert {finding.rule_id for finding in findings} == {"literal-records", "sentinel-marker", "placeholder-copy"}


def test_snapshot_checkpoint_is_marked_immutable(workspace: Path, tmp_path: Path) -> None:
    (workspace / "page.tsx").write_text(GOOD_PAGE, encoding="utf-8")
    target = _target(workspace, snapshot_root=tmp_path / "snapshots")

    result = target.checkpoint("checkpoint 0001: Create task complete")

    assert result.ok
    snapshot = tmp_path / "snapshots" / "checkpoint-0001-create-task-complete"
    assert result.payload["ref"] == f"snapshot:{snapshot}"
    assert (snapshot / "page.tsx").read_text(encoding="utf-8") == GOOD_PAGE
    assert (snapshot / ".immutable").read_text(encoding="utf-8") == "immutable=true\n"

    duplicate = target.checkpoint("checkpoint 0001: Create task complete")
    assert not duplicate.ok
    assert "already exists" in duplicate.detail


def test_snapshots_inside_the_workspace_are_not_nested(workspace: Path) -> None:
    (workspace / "page.tsx").write_text(GOOD_PAGE, encoding="utf-8")
    target = _target(workspace)

    assert target.checkpoint("checkpoint 0001: A complete").ok
    assert target.checkpoint("checkpoint 0002: B complete").ok

    second = workspace / ".snapshots" / "checkpoint-0002-b-complete"
    assert (second / "page.tsx").is_file()
    assert not (second / ".snapshots").exists()


def test_snapshots_skip_dependency_and_build_directories(workspace: Path, tmp_path: Path) -> None:
    (workspace / "page.tsx").write_text(GOOD_PAGE, encoding="utf-8")
    for name in ("node_modules", ".next", "cache"):
        (workspace / name).mkdir()
        (workspace / name / "blob.js").write_text("x", encoding="utf-8")

    default = _target(workspace, snapshot_root=tmp_path / "default")
    assert default.checkpoint("checkpoint 0001: A complete").ok
    snapshot = tmp_path / "default" / "checkpoint-0001-a-complete"
    assert (snapshot / "page.tsx").is_file()
    assert (snapshot / "cache" / "blob.js").is_file()
    assert not (snapshot / "node_modules").exists()
    assert not (snapshot / ".next").exists()

    custom = _target(workspace, snapshot_root=tmp_path / "custom", snapshot_ignore={"cache"})
    assert custom.checkpoint("checkpoint 0001: A complete").ok
    snapshot = tmp_path / "custom" / "checkpoint-0001-a-complete"
    assert not (snapshot / "cache").exists()
    assert (snapshot / "node_modules" / "blob.js").is_file()


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_checkpoint_commits_the_workspace(workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name, value in (
        ("GIT_AUTHOR_NAME", "Build Loop"),
        ("GIT_AUTHOR_EMAIL", "build-loop@example.com"),
        ("GIT_COMMITTER_NAME", "Build Loop"),
        ("GIT_COMMITTER_EMAIL", "build-loop@example.com"),
    ):
        monkeypatch.setenv(name, value)
    subprocess.run(["git", "init", "-q"], cwd=workspace, check=True)
    (workspace / "page.tsx").write_text(GOOD_PAGE, encoding="utf-8")

    result = _target(workspace).checkpoint("checkpoint 0001: Create task complete")

    assert result.ok, result.detail
    assert result.payload["ref"].startswith("git:")
    log = subprocess.run(["git", "log", "--format=%s"], cwd=workspace, capture_output=True, text=True, check=True)
    assert log.stdout.strip() == "checkpoint 0001: Create task complete"
