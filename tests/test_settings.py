from __future__ import annotations

from pathlib import Path

import pytest

from app_build_loop.settings import RuntimeSettings


def test_from_env_reads_build_loop_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BUILD_LOOP_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("BUILD_LOOP_MAX_FEATURES", "2")
    monkeypatch.setenv("BUILD_LOOP_ARTIFACT_KINDS", "Page, data_access, page")
    monkeypatch.setenv("BUILD_LOOP_WORKSPACE_ROOT", str(tmp_path))

    settings = RuntimeSettings.from_env()

    assert settings.max_attempts == 5
    assert settings.max_features_per_invocation == 2
    assert settings.artifact_kinds == ("page", "data_access")
    assert settings.workspace_root_path == tmp_path
    assert settings.database_file(tmp_path) == tmp_path / "app.db"


@pytest.mark.parametrize(
    "name, value, message",
    [
        ("BUILD_LOOP_MAX_ATTEMPTS", "three", "must be an integer"),
        ("BUILD_LOOP_MAX_ATTEMPTS", "0", "must be >= 1"),
        ("BUILD_LOOP_MIN_CONTRAST_RATIO", "30", "within"),
        ("BUILD_LOOP_ARTIFACT_KINDS", "page, web page", "invalid kind"),
        ("BUILD_LOOP_LEDGER_CONTEXT_ENTRIES", "80", "LEDGER_MAX_ENTRIES"),
    ],
)
def test_invalid_environment_fails_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_relative_paths_resolve_against_repo_root(tmp_path: Path) -> None:
    settings = RuntimeSettings(state_store_root="state", default_spec_path="docs/SPEC.md")
    assert settings.state_store_path(tmp_path) == tmp_path / "state"
    assert settings.default_spec_file(tmp_path) == tmp_path / "docs" / "SPEC.md"
    assert RuntimeSettings(state_store_root="/srv/state").state_store_path(tmp_path) == Path("/srv/state")
