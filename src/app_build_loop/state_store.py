from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .errors import ConcurrentInvocationError, CorruptStateError, StateWriteError
from .models import Checkpoint, MemoryRecord, ProjectSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _exclusive_lock(path: Path) -> Iterator[Path]:
    """Hold a non-blocking exclusive lock on the ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle independent of the data file, which is
    replaced via ``os.replace`` on every save.

    Raises:
        ConcurrentInvocationError: If another process already holds the lock.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        try:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise ConcurrentInvocationError(lock_path) from exc
        try:
            lock_handle.seek(0)
            lock_handle.truncate()
            lock_handle.write(f"{os.getpid()}\n")
            lock_handle.flush()
            yield lock_path
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  A crash mid-write leaves either the old
    file or the new one, never a torn mix.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line.rstrip("\n") + "\n")
        handle.flush()
        os.fsync(handle.fileno())


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class MemoryStore:
    """Durable home of the project's :class:`MemoryRecord`.

    ``load`` and ``save`` are the only mutation surface.  The file is plain,
    indented JSON so an operator can diff and hand-edit it between
    invocations; unknown keys are preserved.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> MemoryRecord:
        """Read and validate the persisted record.

        Returns:
            The stored record, or an empty record when no file exists yet.

        Raises:
            CorruptStateError: If the file is empty, not UTF-8, not JSON, or
                fails validation.
        """
        if not self.path.is_file():
            logger.info("No memory record at %s; starting from an empty record", self.path)
            return MemoryRecord()
        try:
            text = self.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptStateError(f"memory record at {self.path} contains invalid UTF-8 data") from exc
        except OSError as exc:
            raise CorruptStateError(f"memory record at {self.path} cannot be read: {exc}") from exc
        if not text.strip():
            raise CorruptStateError(f"memory record at {self.path} is empty")
        try:
            return MemoryRecord.model_validate_json(text)
        except ValidationError as exc:
            raise CorruptStateError(f"memory record at {self.path} failed validation: {exc}") from exc

    def save(self, record: MemoryRecord) -> MemoryRecord:
        """Atomically replace the persisted record with ``record``.

        Returns:
            The saved copy, with ``revision`` incremented and ``updated_at`` set.

        Raises:
            StateWriteError: If the record could not be written.
        """
        saved = record.model_copy(deep=True)
        saved.revision = record.revision + 1
        saved.updated_at = datetime.now(UTC)
        try:
            _atomic_write_text(self.path, saved.model_dump_json(indent=2) + "\n")
        except OSError as exc:
            raise StateWriteError(f"unable to write memory record {self.path}: {exc}") from exc
        logger.info("Saved memory record revision %d to %s", saved.revision, self.path)
        return saved

    def prune(self, record: MemoryRecord, spec: ProjectSpec) -> list[str]:
        """Drop feature entries that ``spec`` no longer declares.

        Returns:
            Names of the removed features, in record order.
        """
        declared = set(spec.names())
        removed = [name for name in record.features if name not in declared]
        for name in removed:
            entry = record.features.pop(name)
            record.add_known_issue(f"Feature {name!r} removed from spec (last status: {entry.status.value})")
            logger.info("Pruned obsolete feature %s (status %s)", name, entry.status.value)
        return removed

    def quarantine_corrupt(self) -> Path | None:
        """Move an unparseable record aside so a fresh record can replace it."""
        if not self.path.exists():
            return None
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        os.replace(self.path, target)
        logger.warning("Moved corrupt memory record %s to %s", self.path, target)
        return target

    @contextmanager
    def invocation_lock(self) -> Iterator[Path]:
        """Serialize invocations against this project.

        Raises:
            ConcurrentInvocationError: If another invocation is running.
        """
        with _exclusive_lock(self.path) as lock_path:
            yield lock_path


# ---------------------------------------------------------------------------
# Checkpoint audit log
# ---------------------------------------------------------------------------


class CheckpointLog:
    """Append-only JSONL audit trail of :class:`Checkpoint` entries."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def entries(self) -> list[Checkpoint]:
        if not self.path.is_file():
            return []
        checkpoints: list[Checkpoint] = []
        for line_no, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                checkpoints.append(Checkpoint.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping malformed checkpoint entry %s:%d", self.path, line_no)
        return checkpoints

    def next_sequence(self) -> int:
        entries = self.entries()
        return max((entry.sequence for entry in entries), default=0) + 1

    def append(self, checkpoint: Checkpoint) -> None:
        _append_line(self.path, json.dumps(checkpoint.model_dump(mode="json"), sort_keys=True))


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------


def sanitize_project_id(project_id: str) -> str:
    """Sanitize a project ID for use as a filesystem path component.

    Raises:
        ValueError: If the project ID is empty or contains no safe characters.
    """
    value = project_id.strip()
    if not value:
        raise ValueError("project_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError("project_id contains no filesystem-safe characters")
    return value[:128]


def project_scoped_root(root: Path, project_id: str | None) -> Path:
    """Return ``root / "projects" / <project_id>`` unless *root* already is that path."""
    if project_id is None:
        return root
    slug = sanitize_project_id(project_id)
    if root.name == slug and root.parent.name == "projects":
        return root
    return root / "projects" / slug
