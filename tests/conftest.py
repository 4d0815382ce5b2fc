from __future__ import annotations

from pathlib import Path

import pytest

from app_build_loop.settings import RuntimeSettings


@pytest.fixture(autouse=True)
def _isolated_build_loop_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BUILD_LOOP_MAX_ATTEMPTS",
        "BUILD_LOOP_MAX_FEATURES",
        "BUILD_LOOP_ARTIFACT_KINDS",
        "BUILD_LOOP_WORKSPACE_ROOT",
        "BUILD_LOOP_STATE_STORE_ROOT",
        "BUILD_LOOP_PROJECT_ID",
        "BUILD_LOOP_LEDGER_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def settings(workspace: Path) -> RuntimeSettings:
    return RuntimeSettings(workspace_root=str(workspace))


@pytest.fixture
def memory_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "memory.json"
