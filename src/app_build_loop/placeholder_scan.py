"""Static scan for fixed data, sentinel markers and unimplemented branches.

Each :class:`ScanRule` is a compiled pattern plus an optional predicate that
refines a raw match.  Legitimate code (``placeholder=`` input attributes,
``placeholder:`` utility classes, a table named ``todo``) must not match.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from .models import Finding

logger = logging.getLogger(__name__)

_LITERAL_VALUE_RE = re.compile(r""":\s*(['"`\d]|true\b|false\b)""")


def _has_literal_values(match: re.Match[str]) -> bool:
    return bool(_LITERAL_VALUE_RE.search(match.group(0)))


@dataclass(frozen=True)
class ScanRule:
    rule_id: str
    description: str
    pattern: re.Pattern[str]
    predicate: Callable[[re.Match[str]], bool] | None = None

    def matches(self, text: str) -> Iterable[re.Match[str]]:
        for match in self.pattern.finditer(text):
            if self.predicate is None or self.predicate(match):
                yield match


RULES: tuple[ScanRule, ...] = (
    ScanRule(
        rule_id="literal-records",
        description="Array literal of two or more object literals with fixed values used as data",
        pattern=re.compile(r"\[\s*\{[^{}\[\]]*\}\s*,\s*\{[^{}\[\]]*\}", re.S),
        predicate=_has_literal_values,
    ),
    ScanRule(
        rule_id="sentinel-marker",
        description="Unfinished-work sentinel comment",
        pattern=re.compile(r"\b(?:TODO|FIXME|XXX|TBD)\b"),
    ),
    ScanRule(
        rule_id="placeholder-copy",
        description="Stock placeholder copy shown to users",
        pattern=re.compile(
            r"lorem ipsum|coming soon|replace this|dummy data|sample data"
            r"|(?<![:\-.\w])placeholder(?![\w\-]|\s*[=:])",
            re.I,
        ),
    ),
    ScanRule(
        rule_id="not-implemented",
        description="Branch that reports itself as not implemented",
        pattern=re.compile(r"not\s+implemented|NotImplementedError", re.I),
    ),
)


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def scan_text(text: str, path: str, rules: Iterable[ScanRule] = RULES) -> list[Finding]:
    """Return every finding in ``text``, ordered by line then rule."""
    findings: list[Finding] = []
    lines = text.splitlines()
    for rule in rules:
        for match in rule.matches(text):
            line = _line_of(text, match.start())
            excerpt = lines[line - 1].strip() if line - 1 < len(lines) else match.group(0)
            findings.append(
                Finding(
                    rule_id=rule.rule_id,
                    path=path,
                    line=line,
                    excerpt=excerpt[:160],
                    message=rule.description,
                )
            )
    findings.sort(key=lambda finding: (finding.line, finding.rule_id))
    return findings


def scan_paths(root: Path, paths: Iterable[str], rules: Iterable[ScanRule] = RULES) -> list[Finding]:
    """Scan workspace-relative ``paths`` under ``root``. Missing files are skipped."""
    rules = tuple(rules)
    findings: list[Finding] = []
    for rel_path in paths:
        candidate = root / rel_path
        if not candidate.is_file():
            logger.warning("Skipping scan of missing artifact %s", candidate)
            continue
        text = candidate.read_text(encoding="utf-8", errors="replace")
        findings.extend(scan_text(text, rel_path, rules))
    return findings
