"""Turn a raw project specification into a :class:`ProjectSpec`.

Two input shapes are accepted.  A JSON document::

    {"name": "Tasks", "architecture": {"orm": "drizzle"},
     "entities": {"task": ["title", "done"]},
     "features": [{"name": "Create task", "writes": ["task"], "surfaces": ["/tasks/new"]}]}

or a lightweight markdown outline::

    # Tasks
    ## Architecture
    - orm: drizzle
    ## Entities
    - task: title, done
    ## Feature: Create task
    Lets a user add a task.
    - writes: task
    - surfaces: /tasks/new

Feature-level problems are recorded on ``FeatureSpec.ambiguity`` so the
orchestrator can block the feature; document-level problems raise
:class:`AmbiguousSpecError`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from .errors import AmbiguousSpecError
from .models import (
    DEFAULT_ARTIFACT_KINDS,
    DEFAULT_DESIGN_CRITERIA,
    IDENTIFIER_RE,
    EntityDecl,
    FeatureSpec,
    ProjectSpec,
)

logger = logging.getLogger(__name__)

_TITLE_RE = re.compile(r"^#\s+(?P<title>.+?)\s*#*\s*$")
_SECTION_RE = re.compile(r"^##\s+(?P<heading>.+?)\s*#*\s*$")
_FEATURE_PREFIX_RE = re.compile(r"^feature\s*:\s*", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[-*+]\s+(?P<key>[A-Za-z_][A-Za-z _-]*?)\s*:\s*(?P<value>.*)$")
_ENTITY_TOKEN_RE = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*(?:\((?P<columns>[^()]*)\))?$")

_RESERVED_SECTIONS = {"architecture", "entities", "data model", "overview", "notes"}

_KEY_ALIASES = {
    "writes": "writes",
    "write": "writes",
    "produces": "writes",
    "creates": "writes",
    "reads": "reads",
    "read": "reads",
    "uses": "reads",
    "surfaces": "surfaces",
    "surface": "surfaces",
    "routes": "surfaces",
    "pages": "surfaces",
    "screens": "surfaces",
    "depends_on": "depends_on",
    "depends on": "depends_on",
    "depends-on": "depends_on",
    "after": "depends_on",
    "artifacts": "artifact_kinds",
    "artifact_kinds": "artifact_kinds",
    "design": "design_criteria",
    "design_criteria": "design_criteria",
}


@dataclass
class _RawFeature:
    name: str
    description: list[str] = field(default_factory=list)
    writes: list[EntityDecl] = field(default_factory=list)
    reads: list[str] = field(default_factory=list)
    surfaces: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    artifact_kinds: list[str] | None = None
    design_criteria: list[str] | None = None


def _split_top_level(value: str) -> list[str]:
    """Split on commas that are not inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in value:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    parts.append("".join(current).strip())
    return [part for part in parts if part]


def _parse_entity_token(token: str, *, context: str) -> EntityDecl:
    match = _ENTITY_TOKEN_RE.match(token.strip().strip("`"))
    if match is None:
        raise AmbiguousSpecError(f"{context}: cannot read entity declaration {token!r}")
    columns = [column.strip() for column in (match.group("columns") or "").split(",") if column.strip()]
    try:
        return EntityDecl(name=match.group("name"), columns=columns)
    except ValidationError as exc:
        raise AmbiguousSpecError(f"{context}: invalid entity declaration {token!r}: {exc}") from exc


def _unique(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(value for value in values if value))


def _json_list(value: Any, *, key: str, context: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise AmbiguousSpecError(f"{context}: {key!r} must be a list, got {type(value).__name__}")
    return value


class SpecificationLoader:
    """Parse raw specs and infer feature dependencies from data relationships."""

    def __init__(self, default_artifact_kinds: Iterable[str] = DEFAULT_ARTIFACT_KINDS) -> None:
        self.default_artifact_kinds = list(default_artifact_kinds)

    def load(self, raw: str) -> ProjectSpec:
        text = raw.strip()
        if not text:
            raise AmbiguousSpecError("Project specification is empty")
        if text.startswith("{"):
            name, architecture, catalogue, features = self._parse_json(text)
        else:
            name, architecture, catalogue, features = self._parse_markdown(text)
        return self._assemble(name, architecture, catalogue, features)

    # -- JSON ---------------------------------------------------------------

    def _parse_json(self, text: str) -> tuple[str, dict[str, str], list[EntityDecl], list[_RawFeature]]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise AmbiguousSpecError(f"Project specification is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise AmbiguousSpecError("JSON project specification must be an object")

        architecture = {str(key): str(value) for key, value in dict(payload.get("architecture") or {}).items()}

        catalogue: list[EntityDecl] = []
        entities = payload.get("entities") or {}
        if isinstance(entities, dict):
            entities = [{"name": key, "columns": value} for key, value in entities.items()]
        entities = _json_list(entities, key="entities", context="Project specification")
        for item in entities:
            catalogue.append(self._json_entity(item, context="entities"))

        features: list[_RawFeature] = []
        for index, item in enumerate(_json_list(payload.get("features"), key="features", context="Project specification")):
            if not isinstance(item, dict) or not str(item.get("name", "")).strip():
                raise AmbiguousSpecError(f"Feature #{index + 1} has no name")
            name = str(item["name"]).strip()
            raw = _RawFeature(name=name)
            description = item.get("description")
            if description:
                raw.description.append(str(description))
            context = f"Feature {name!r}"
            raw.writes = [
                self._json_entity(entry, context=context)
                for entry in _json_list(item.get("writes"), key="writes", context=context)
            ]
            raw.reads = [str(entry).strip() for entry in _json_list(item.get("reads"), key="reads", context=context)]
            raw.surfaces = [
                str(entry).strip() for entry in _json_list(item.get("surfaces"), key="surfaces", context=context)
            ]
            raw.depends_on = [
                str(entry).strip() for entry in _json_list(item.get("depends_on"), key="depends_on", context=context)
            ]
            kinds = item.get("artifact_kinds", item.get("artifacts"))
            if kinds is not None:
                raw.artifact_kinds = [str(kind) for kind in _json_list(kinds, key="artifact_kinds", context=context)]
            criteria = item.get("design_criteria", item.get("design"))
            if criteria is not None:
                raw.design_criteria = [
                    str(criterion) for criterion in _json_list(criteria, key="design_criteria", context=context)
                ]
            features.append(raw)

        return str(payload.get("name") or "project"), architecture, catalogue, features

    @staticmethod
    def _json_entity(item: Any, *, context: str) -> EntityDecl:
        if isinstance(item, str):
            return _parse_entity_token(item, context=context)
        if isinstance(item, dict):
            try:
                columns = _json_list(item.get("columns"), key="columns", context=context)
                return EntityDecl(name=str(item.get("name", "")), columns=columns)
            except ValidationError as exc:
                raise AmbiguousSpecError(f"{context}: invalid entity declaration {item!r}: {exc}") from exc
        raise AmbiguousSpecError(f"{context}: cannot read entity declaration {item!r}")

    # -- Markdown -----------------------------------------------------------

    def _parse_markdown(self, text: str) -> tuple[str, dict[str, str], list[EntityDecl], list[_RawFeature]]:
        title = "project"
        architecture: dict[str, str] = {}
        catalogue: list[EntityDecl] = []
        features: list[_RawFeature] = []
        section: str | None = None
        current: _RawFeature | None = None

        for line_no, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith("### "):
                # Sub-headings inside a feature are description text.
                if current is not None:
                    current.description.append(line.lstrip("#").strip())
                continue
            section_match = _SECTION_RE.match(line)
            if section_match:
                heading = section_match.group("heading")
                is_feature = bool(_FEATURE_PREFIX_RE.match(heading))
                name = _FEATURE_PREFIX_RE.sub("", heading).strip()
                if not is_feature and name.lower() in _RESERVED_SECTIONS:
                    section = name.lower()
                    current = None
                    continue
                section = "feature"
                current = _RawFeature(name=name)
                features.append(current)
                continue
            title_match = _TITLE_RE.match(line)
            if title_match:
                title = title_match.group("title")
                continue

            bullet = _BULLET_RE.match(line)
            if section == "architecture" and bullet:
                architecture[bullet.group("key").strip()] = bullet.group("value").strip()
            elif section == "entities":
                self._markdown_entity(line, catalogue, line_no)
            elif section == "feature" and current is not None:
                key = _KEY_ALIASES.get(bullet.group("key").strip().lower()) if bullet else None
                if bullet is None or key is None:
                    current.description.append(line.lstrip("-*+ ").strip())
                    continue
                self._apply_feature_key(current, key, bullet.group("value"))

        return title, architecture, catalogue, features

    @staticmethod
    def _markdown_entity(line: str, catalogue: list[EntityDecl], line_no: int) -> None:
        body = line.lstrip("-*+ ").strip()
        if not body:
            return
        context = f"Entities line {line_no}"
        if ":" in body:
            name, _, columns = body.partition(":")
            token = f"{name.strip()}({columns.strip()})" if columns.strip() else name.strip()
        else:
            token = body
        catalogue.append(_parse_entity_token(token, context=context))

    @staticmethod
    def _apply_feature_key(feature: _RawFeature, key: str, value: str) -> None:
        items = _split_top_level(value)
        context = f"Feature {feature.name!r}"
        if key == "writes":
            feature.writes.extend(_parse_entity_token(item, context=context) for item in items)
        elif key == "reads":
            feature.reads.extend(item.strip("`") for item in items)
        elif key == "surfaces":
            feature.surfaces.extend(item.strip("`") for item in items)
        elif key == "depends_on":
            feature.depends_on.extend(items)
        elif key == "artifact_kinds":
            feature.artifact_kinds = [*(feature.artifact_kinds or []), *items]
        elif key == "design_criteria":
            feature.design_criteria = [*(feature.design_criteria or []), *items]

    # -- Assembly -----------------------------------------------------------

    def _assemble(
        self,
        name: str,
        architecture: dict[str, str],
        declared: list[EntityDecl],
        raw_features: list[_RawFeature],
    ) -> ProjectSpec:
        if not raw_features:
            raise AmbiguousSpecError("Project specification declares no features")

        seen: set[str] = set()
        for raw in raw_features:
            if raw.name in seen:
                raise AmbiguousSpecError(f"Feature {raw.name!r} is declared more than once", feature=raw.name)
            seen.add(raw.name)

        catalogue: dict[str, EntityDecl] = {}
        for entity in [*declared, *(entity for raw in raw_features for entity in raw.writes)]:
            existing = catalogue.get(entity.name)
            catalogue[entity.name] = existing.merged_with(entity) if existing else entity

        producers: dict[str, str] = {}
        for raw in raw_features:
            for entity in raw.writes:
                producers.setdefault(entity.name, raw.name)

        features: list[FeatureSpec] = []
        for order, raw in enumerate(raw_features):
            for dep in raw.depends_on:
                if dep not in seen:
                    raise AmbiguousSpecError(
                        f"Feature {raw.name!r} depends on undeclared feature {dep!r}",
                        feature=raw.name,
                    )
            writes = [catalogue[entity.name] for entity in raw.writes]
            writes = list({entity.name: entity for entity in writes}.values())
            reads = _unique(read for read in raw.reads if read not in {entity.name for entity in writes})

            inferred = [producers[read] for read in reads if read in producers and producers[read] != raw.name]
            depends_on = _unique([*raw.depends_on, *inferred])
            if inferred:
                logger.debug("Feature %s inferred dependencies: %s", raw.name, ", ".join(inferred))

            ambiguity = self._ambiguity(raw, writes, reads, catalogue)
            features.append(
                FeatureSpec(
                    name=raw.name,
                    description="\n".join(raw.description).strip(),
                    writes=writes,
                    reads=reads,
                    surfaces=_unique(raw.surfaces),
                    depends_on=depends_on,
                    artifact_kinds=self._kinds(raw),
                    design_criteria=_unique(
                        criterion.strip().lower()
                        for criterion in (raw.design_criteria if raw.design_criteria is not None else DEFAULT_DESIGN_CRITERIA)
                    ),
                    declaration_order=order,
                    ambiguity=ambiguity,
                )
            )

        return ProjectSpec(name=name, architecture=architecture, entities=catalogue, features=features)

    def _kinds(self, raw: _RawFeature) -> list[str]:
        kinds = _unique(kind.strip().lower() for kind in (raw.artifact_kinds or self.default_artifact_kinds))
        for kind in kinds:
            if not IDENTIFIER_RE.match(kind):
                raise AmbiguousSpecError(f"Feature {raw.name!r} names an invalid artifact kind {kind!r}", feature=raw.name)
        return kinds

    @staticmethod
    def _ambiguity(
        raw: _RawFeature,
        writes: list[EntityDecl],
        reads: list[str],
        catalogue: dict[str, EntityDecl],
    ) -> str | None:
        reasons: list[str] = []
        if not writes and not reads:
            reasons.append("no concrete data entity")
        if not raw.surfaces:
            reasons.append("no user-facing surface")
        unknown = [read for read in reads if read not in catalogue]
        if unknown:
            reasons.append("reads undeclared entities: " + ", ".join(unknown))
        return "; ".join(reasons) or None


def load_project_spec(path: Path, default_artifact_kinds: Iterable[str] = DEFAULT_ARTIFACT_KINDS) -> ProjectSpec:
    """Read ``path`` and parse it with :class:`SpecificationLoader`."""
    return SpecificationLoader(default_artifact_kinds).load(path.read_text(encoding="utf-8"))
