from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .canonical import fingerprint

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DEFAULT_ARTIFACT_KINDS: tuple[str, ...] = ("data_access", "page")
DEFAULT_DESIGN_CRITERIA: tuple[str, ...] = (
    "visual-hero",
    "weight-hierarchy",
    "contrast-ratio",
    "responsive-breakpoints",
)
UI_ARTIFACT_KINDS = frozenset({"page", "component", "style"})


class FeatureStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    VERIFIED_FUNCTIONAL = "verified_functional"
    VERIFIED_DESIGNED = "verified_designed"
    COMPLETE = "complete"
    BLOCKED = "blocked"


STATUS_RANK: dict[FeatureStatus, int] = {
    FeatureStatus.NOT_STARTED: 0,
    FeatureStatus.IN_PROGRESS: 1,
    FeatureStatus.VERIFIED_FUNCTIONAL: 2,
    FeatureStatus.VERIFIED_DESIGNED: 3,
    FeatureStatus.COMPLETE: 4,
}

FEATURE_STATUS_TRANSITIONS: dict[FeatureStatus, frozenset[FeatureStatus]] = {
    FeatureStatus.NOT_STARTED: frozenset({FeatureStatus.IN_PROGRESS, FeatureStatus.BLOCKED}),
    FeatureStatus.IN_PROGRESS: frozenset({FeatureStatus.VERIFIED_FUNCTIONAL, FeatureStatus.BLOCKED}),
    FeatureStatus.VERIFIED_FUNCTIONAL: frozenset({FeatureStatus.VERIFIED_DESIGNED, FeatureStatus.BLOCKED}),
    FeatureStatus.VERIFIED_DESIGNED: frozenset({FeatureStatus.COMPLETE, FeatureStatus.BLOCKED}),
    FeatureStatus.COMPLETE: frozenset(),
    FeatureStatus.BLOCKED: frozenset(),
}

# Statuses the planner treats as resumable work.
ACTIVE_STATUSES = frozenset(
    {
        FeatureStatus.NOT_STARTED,
        FeatureStatus.IN_PROGRESS,
        FeatureStatus.VERIFIED_FUNCTIONAL,
        FeatureStatus.VERIFIED_DESIGNED,
    }
)


class GateError(str, Enum):
    SCHEMA_MISSING = "SchemaMissing"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    PLACEHOLDER_DETECTED = "PlaceholderDetected"
    DESIGN_INCOMPLETE = "DesignIncomplete"
    BUILD_FAILURE = "BuildFailure"
    AMBIGUOUS_SPEC = "AmbiguousSpec"
    DEPENDENCY_BLOCKED = "DependencyBlocked"


# ---------------------------------------------------------------------------
# Specification side (immutable per invocation)
# ---------------------------------------------------------------------------


class EntityDecl(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    columns: list[str] = Field(default_factory=lambda: ["id"])

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        value = value.strip()
        if not IDENTIFIER_RE.match(value):
            raise ValueError(f"entity name must be an identifier, got {value!r}")
        return value

    @field_validator("columns")
    @classmethod
    def _id_first(cls, value: list[str]) -> list[str]:
        columns: list[str] = []
        for column in ["id", *value]:
            column = column.strip()
            if not column or column in columns:
                continue
            if not IDENTIFIER_RE.match(column):
                raise ValueError(f"column name must be an identifier, got {column!r}")
            columns.append(column)
        return columns

    def merged_with(self, other: EntityDecl) -> EntityDecl:
        return EntityDecl(name=self.name, columns=[*self.columns, *other.columns])


class FeatureSpec(BaseModel):
    """One declared feature. ``name`` is the stable identity across invocations."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    writes: list[EntityDecl] = Field(default_factory=list)
    reads: list[str] = Field(default_factory=list)
    surfaces: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    artifact_kinds: list[str] = Field(default_factory=lambda: list(DEFAULT_ARTIFACT_KINDS))
    design_criteria: list[str] = Field(default_factory=lambda: list(DEFAULT_DESIGN_CRITERIA))
    declaration_order: int = 0
    ambiguity: str | None = None

    @property
    def entity_names(self) -> list[str]:
        names = [entity.name for entity in self.writes]
        names.extend(name for name in self.reads if name not in names)
        return names


class ProjectSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    architecture: dict[str, str] = Field(default_factory=dict)
    entities: dict[str, EntityDecl] = Field(default_factory=dict)
    features: list[FeatureSpec] = Field(default_factory=list)

    def feature(self, name: str) -> FeatureSpec:
        for feature in self.features:
            if feature.name == name:
                return feature
        raise KeyError(f"Feature {name!r} is not declared in project spec {self.name!r}")

    def names(self) -> list[str]:
        return [feature.name for feature in self.features]

    def entities_for(self, feature: FeatureSpec) -> list[EntityDecl]:
        """Resolve every entity a feature touches to its catalogue declaration."""
        resolved: list[EntityDecl] = []
        for name in feature.entity_names:
            entity = self.entities.get(name)
            if entity is not None:
                resolved.append(entity)
        return resolved

    def dependents(self) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {feature.name: [] for feature in self.features}
        for feature in self.features:
            for dep in feature.depends_on:
                result.setdefault(dep, []).append(feature.name)
        return result


# ---------------------------------------------------------------------------
# Memory side (persisted)
# ---------------------------------------------------------------------------


class ArtifactRef(BaseModel):
    kind: str
    path: str


class GateResult(BaseModel):
    """Outcome of one gate run against one feature."""

    gate: str
    passed: bool
    error: GateError | None = None
    failing_rules: list[str] = Field(default_factory=list)
    hint: str | None = None
    details: list[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, gate: str) -> GateResult:
        return cls(gate=gate, passed=True)

    @classmethod
    def fail(
        cls,
        gate: str,
        error: GateError,
        *,
        failing_rules: list[str] | None = None,
        details: list[str] | None = None,
        hint: str | None = None,
    ) -> GateResult:
        return cls(
            gate=gate,
            passed=False,
            error=error,
            failing_rules=list(failing_rules or []),
            details=list(details or []),
            hint=hint,
        )

    def summary(self) -> str:
        if self.passed:
            return f"{self.gate}: pass"
        rules = ", ".join(self.failing_rules) if self.failing_rules else "-"
        error = self.error.value if self.error is not None else "unknown"
        return f"{self.gate}: {error} [{rules}]"


class Feature(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    status: FeatureStatus = FeatureStatus.NOT_STARTED
    depends_on: list[str] = Field(default_factory=list)
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    last_gate_result: GateResult | None = None
    blocked_from: FeatureStatus | None = None

    def transition(self, new_status: FeatureStatus) -> None:
        allowed = FEATURE_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise ValueError(
                f"Illegal feature status transition for {self.name}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    def advance_to(self, tier: FeatureStatus) -> bool:
        """Step forward one tier at a time until ``tier`` is reached. Never lowers status."""
        if self.status == FeatureStatus.BLOCKED:
            return False
        changed = False
        while STATUS_RANK[self.status] < STATUS_RANK[tier]:
            next_status = next(
                status for status, rank in STATUS_RANK.items() if rank == STATUS_RANK[self.status] + 1
            )
            self.transition(next_status)
            changed = True
        return changed

    def block(self, result: GateResult) -> None:
        if self.status in (FeatureStatus.BLOCKED, FeatureStatus.COMPLETE):
            return
        self.blocked_from = self.status
        self.transition(FeatureStatus.BLOCKED)
        self.last_gate_result = result

    def unblock(self) -> None:
        if self.status != FeatureStatus.BLOCKED:
            return
        self.status = self.blocked_from or FeatureStatus.NOT_STARTED
        self.blocked_from = None

    def add_artifact(self, ref: ArtifactRef) -> None:
        for index, existing in enumerate(self.artifacts):
            if existing.path == ref.path:
                self.artifacts[index] = ref
                return
        self.artifacts.append(ref)

    def file_artifacts(self) -> list[ArtifactRef]:
        return [ref for ref in self.artifacts if ref.kind != "schema"]


class MemoryRecord(BaseModel):
    """Durable cross-invocation state. One per project."""

    model_config = ConfigDict(extra="allow")

    format_version: int = 1
    revision: int = 0
    updated_at: datetime | None = None
    architecture_decisions: dict[str, Any] = Field(default_factory=dict)
    features: dict[str, Feature] = Field(default_factory=dict)
    schema_inventory: dict[str, list[str]] = Field(default_factory=dict)
    known_issues: list[str] = Field(default_factory=list)

    def fingerprint(self) -> str:
        return fingerprint(self.model_dump(mode="json", exclude={"revision", "updated_at"}))

    def status_of(self, name: str) -> FeatureStatus:
        entry = self.features.get(name)
        return entry.status if entry is not None else FeatureStatus.NOT_STARTED

    def add_known_issue(self, issue: str) -> None:
        if issue not in self.known_issues:
            self.known_issues.append(issue)

    def record_tables(self, tables: dict[str, list[str]]) -> None:
        for table, columns in tables.items():
            existing = self.schema_inventory.setdefault(table, [])
            existing.extend(column for column in columns if column not in existing)


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int
    label: str
    feature: str
    created_at: datetime
    ref: str = ""
    artifacts: list[str] = Field(default_factory=list)


class LedgerEntry(BaseModel):
    role: str
    content: str
    recorded_at: datetime


class Finding(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str
    path: str
    line: int
    excerpt: str = ""
    message: str = ""

    def location(self) -> str:
        return f"{self.path}:{self.line}"


class TargetResult(BaseModel):
    ok: bool
    detail: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(cls, detail: str) -> TargetResult:
        return cls(ok=False, detail=detail)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


class InvocationOutcome(str, Enum):
    DONE = "done"
    BLOCKED = "blocked"
    SUSPENDED = "suspended"


class FeatureReport(BaseModel):
    name: str
    status: FeatureStatus
    failing_rule: str | None = None
    detail: str | None = None


class AttemptRecord(BaseModel):
    feature: str
    attempt: int
    passed: bool
    gate: str
    error: GateError | None = None
    failing_rules: list[str] = Field(default_factory=list)


class InvocationReport(BaseModel):
    outcome: InvocationOutcome
    features: list[FeatureReport] = Field(default_factory=list)
    attempts: list[AttemptRecord] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    pruned: list[str] = Field(default_factory=list)
    record_revision: int = 0
    fatal_error: str | None = None

    def building_attempts(self, feature: str) -> int:
        return sum(1 for attempt in self.attempts if attempt.feature == feature)
