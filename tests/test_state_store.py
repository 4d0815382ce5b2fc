from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from app_build_loop.errors import ConcurrentInvocationError, CorruptStateError, StateWriteError
from app_build_loop.ledger import ConversationLedger
from app_build_loop.models import Checkpoint, Feature, FeatureStatus, MemoryRecord
from app_build_loop.spec_loader import SpecificationLoader
from app_build_loop.state_store import CheckpointLog, MemoryStore, project_scoped_root, sanitize_project_id


def _record_with(*names: str) -> MemoryRecord:
    record = MemoryRecord()
    for name in names:
        record.features[name] = Feature(name=name)
    return record


def test_missing_memory_file_loads_empty_record(memory_path: Path) -> None:
    record = MemoryStore(memory_path).load()
    assert record.features == {}
    assert record.revision == 0


def test_save_then_load_preserves_record_and_bumps_revision(memory_path: Path) -> None:
    store = MemoryStore(memory_path)
    record = _record_with("Create task")
    record.architecture_decisions["orm"] = "drizzle"
    saved = store.save(record)

    assert saved.revision == 1
    assert record.revision == 0
    loaded = store.load()
    assert loaded.revision == 1
    assert loaded.features["Create task"].status == FeatureStatus.NOT_STARTED
    assert loaded.architecture_decisions == {"orm": "drizzle"}
    assert loaded.fingerprint() == record.fingerprint()


def test_memory_file_is_indented_and_keeps_unknown_keys(memory_path: Path) -> None:
    store = MemoryStore(memory_path)
    store.save(_record_with("A"))
    payload = json.loads(memory_path.read_text(encoding="utf-8"))
    payload["operator_note"] = "hand edited"
    payload["features"]["A"]["owner"] = "ops"
    memory_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    reloaded = store.load()
    store.save(reloaded)
    again = json.loads(memory_path.read_text(encoding="utf-8"))
    assert again["operator_note"] == "hand edited"
    assert again["features"]["A"]["owner"] == "ops"
    assert memory_path.read_text(encoding="utf-8").startswith("{\n  ")


@pytest.mark.parametrize("content", [b"", b"{not json", b"\xff\xfe\x00", b'{"features": {"A": {"status": "shipped"}}}'])
def test_unreadable_memory_raises_corrupt_state(memory_path: Path, content: bytes) -> None:
    memory_path.parent.mkdir(parents=True)
    memory_path.write_bytes(content)
    with pytest.raises(CorruptStateError) as exc_info:
        MemoryStore(memory_path).load()
    assert exc_info.value.rule == "CorruptState"


def test_quarantine_moves_corrupt_file_aside(memory_path: Path) -> None:
    memory_path.parent.mkdir(parents=True)
    memory_path.write_text("{broken", encoding="utf-8")
    moved = MemoryStore(memory_path).quarantine_corrupt()
    assert moved is not None
    assert moved.read_text(encoding="utf-8") == "{broken"
    assert moved.name.startswith("memory.json.corrupt-")
    assert not memory_path.exists()


def test_failed_replace_leaves_previous_record_intact(memory_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = MemoryStore(memory_path)
    store.save(_record_with("A"))
    before = memory_path.read_bytes()

    def broken_replace(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StateWriteError):
        store.save(_record_with("A", "B"))
    monkeypatch.undo()

    assert memory_path.read_bytes() == before
    leftovers = [path.name for path in memory_path.parent.iterdir() if path.name.endswith(".tmp")]
    assert leftovers == []


def test_prune_drops_undeclared_features_and_notes_them() -> None:
    spec = SpecificationLoader().load("# P\n## Feature: Keep\n- writes: item\n- surfaces: /items\n")
    record = _record_with("Keep", "Gone")
    record.features["Gone"].status = FeatureStatus.VERIFIED_FUNCTIONAL

    removed = MemoryStore(Path("unused.json")).prune(record, spec)

    assert removed == ["Gone"]
    assert list(record.features) == ["Keep"]
    assert any("Gone" in issue and "verified_functional" in issue for issue in record.known_issues)


def test_invocation_lock_rejects_second_holder(memory_path: Path) -> None:
    first = MemoryStore(memory_path)
    second = MemoryStore(memory_path)
    with first.invocation_lock():
        with pytest.raises(ConcurrentInvocationError):
            with second.invocation_lock():
                pass
    with second.invocation_lock() as lock_path:
        assert lock_path.name == "memory.json.lock"


def test_checkpoint_log_appends_and_sequences(tmp_path: Path) -> None:
    log = CheckpointLog(tmp_path / "checkpoints.jsonl")
    assert log.next_sequence() == 1
    log.append(Checkpoint(sequence=1, label="first", feature="A", created_at=datetime.now(UTC), ref="git:abc"))
    log.append(Checkpoint(sequence=2, label="second", feature="B", created_at=datetime.now(UTC)))
    with (tmp_path / "checkpoints.jsonl").open("a", encoding="utf-8") as handle:
        handle.write("not json\n")

    entries = log.entries()
    assert [entry.label for entry in entries] == ["first", "second"]
    assert log.next_sequence() == 3


def test_ledger_is_bounded_and_skips_malformed_lines(tmp_path: Path) -> None:
    ledger = ConversationLedger(tmp_path / "ledger.jsonl", max_entries=3)
    for index in range(5):
        ledger.append("agent", f"note {index}")

    assert [entry.content for entry in ledger.recent()] == ["note 2", "note 3", "note 4"]
    assert len((tmp_path / "ledger.jsonl").read_text(encoding="utf-8").splitlines()) == 3

    with (tmp_path / "ledger.jsonl").open("a", encoding="utf-8") as handle:
        handle.write("{garbage\n")
    assert [entry.content for entry in ledger.recent(2)] == ["note 3", "note 4"]
    assert ledger.render(1) == "[agent] note 4"
    assert ledger.recent(0) == []


def test_project_scoped_root_and_sanitization(tmp_path: Path) -> None:
    assert sanitize_project_id(" my app/v2 ") == "my-app-v2"
    root = project_scoped_root(tmp_path, "my app")
    assert root == tmp_path / "projects" / "my-app"
    assert project_scoped_root(root, "my app") == root
    with pytest.raises(ValueError):
        sanitize_project_id("///")
