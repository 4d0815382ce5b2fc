"""LangChain tools the artifact generator uses to check its own output.

The tools resolve paths against the workspace named by
``BUILD_LOOP_WORKSPACE_ROOT`` (current directory when unset) and refuse paths
that escape it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from langchain_core.tools import tool

from .design import evaluate_design as _evaluate_design
from .ledger import ConversationLedger
from .models import DEFAULT_DESIGN_CRITERIA
from .placeholder_scan import scan_paths
from .settings import RuntimeSettings
from .state_store import project_scoped_root

logger = logging.getLogger(__name__)


def _workspace_root() -> Path:
    return RuntimeSettings.from_env().workspace_root_path.resolve()


def _relative_to_workspace(root: Path, path: str) -> str:
    """Map an agent-supplied path (virtual ``/x`` or relative ``x``) to a workspace-relative path.

    Raises:
        ValueError: If the path resolves outside the workspace.
    """
    candidate = (root / path.lstrip("/")).resolve()
    if not candidate.is_relative_to(root):
        raise ValueError(f"Path escapes the workspace: {path}")
    return candidate.relative_to(root).as_posix()


@tool("scan_placeholders")
def scan_placeholders_tool(paths: list[str]) -> str:
    """Scan workspace files for fixed data records, TODO-style markers and placeholder copy.

    Args:
        paths: Workspace paths of the files to scan.

    Returns:
        JSON string with a ``findings`` list; each finding has ``rule_id``,
        ``path``, ``line`` and ``excerpt``. An empty list means the files pass.
    """
    root = _workspace_root()
    rel_paths = [_relative_to_workspace(root, path) for path in paths]
    findings = scan_paths(root, rel_paths)
    return json.dumps({"findings": [finding.model_dump(mode="json") for finding in findings]}, indent=2)


@tool("evaluate_design")
def evaluate_design_tool(paths: list[str], criteria: list[str] | None = None) -> str:
    """Evaluate UI files against the design-hierarchy criteria.

    Args:
        paths: Workspace paths of the page, component or style files.
        criteria: Criterion names; defaults to every built-in criterion.

    Returns:
        JSON string with one ``{"criterion", "passed", "message"}`` entry per criterion.
    """
    root = _workspace_root()
    settings = RuntimeSettings.from_env()
    texts = []
    for path in paths:
        candidate = root / _relative_to_workspace(root, path)
        if candidate.is_file():
            texts.append(candidate.read_text(encoding="utf-8", errors="replace"))
    results = _evaluate_design("\n".join(texts), criteria or list(DEFAULT_DESIGN_CRITERIA), settings.min_contrast_ratio)
    return json.dumps(
        [{"criterion": result.criterion, "passed": result.passed, "message": result.message} for result in results],
        indent=2,
    )


@tool("record_ledger_note")
def record_ledger_note_tool(content: str) -> str:
    """Append a short note to the project's conversation ledger for the next invocation.

    Args:
        content: The note text.

    Returns:
        Confirmation string with the entry timestamp.
    """
    # An absolute BUILD_LOOP_LEDGER_FILE (exported by the CLI) overrides the project root.
    settings = RuntimeSettings.from_env()
    root = project_scoped_root(settings.state_store_path(Path.cwd()), settings.project_id)
    ledger = ConversationLedger(root / settings.ledger_file, max_entries=settings.ledger_max_entries)
    entry = ledger.append("agent", content)
    return f"recorded at {entry.recorded_at.isoformat()}"
