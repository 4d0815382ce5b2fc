from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from .models import LedgerEntry
from .state_store import _atomic_write_text

logger = logging.getLogger(__name__)


class ConversationLedger:
    """Bounded, append-only log of recent agent exchanges.

    The orchestrator core only reads from the ledger to assemble build
    context.  Agent tooling appends; the file is trimmed to the most recent
    ``max_entries`` lines on every append.
    """

    def __init__(self, path: Path, max_entries: int = 50) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got: {max_entries}")
        self.path = path
        self.max_entries = max_entries

    def _read_lines(self) -> list[str]:
        if not self.path.is_file():
            return []
        return [line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def append(self, role: str, content: str) -> LedgerEntry:
        entry = LedgerEntry(role=role, content=content, recorded_at=datetime.now(UTC))
        lines = self._read_lines()
        lines.append(json.dumps(entry.model_dump(mode="json"), sort_keys=True))
        lines = lines[-self.max_entries :]
        _atomic_write_text(self.path, "\n".join(lines) + "\n")
        return entry

    def recent(self, limit: int | None = None) -> list[LedgerEntry]:
        """Return up to ``limit`` most recent entries, oldest first.

        Malformed lines are skipped with a warning rather than failing the
        invocation.
        """
        entries: list[LedgerEntry] = []
        for line_no, line in enumerate(self._read_lines(), start=1):
            try:
                entries.append(LedgerEntry.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping malformed ledger entry %s:%d", self.path, line_no)
        if limit is not None:
            if limit <= 0:
                return []
            entries = entries[-limit:]
        return entries

    def render(self, limit: int | None = None) -> str:
        return "\n".join(f"[{entry.role}] {entry.content}" for entry in self.recent(limit))
