"""Verification gates a feature must clear before it may advance a tier.

Gates are grouped into ordered stages.  The pipeline runs stages in order and
short-circuits on the first failing gate; a stage that passes advances the
feature to that stage's tier.  Gates never raise: an unexpected exception is
converted into a failed :class:`GateResult` carrying the gate's error id.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

from .design import evaluate_design
from .models import (
    UI_ARTIFACT_KINDS,
    EntityDecl,
    Feature,
    FeatureSpec,
    FeatureStatus,
    GateError,
    GateResult,
    MemoryRecord,
    ProjectSpec,
)

if TYPE_CHECKING:
    from .target import CodeGenerationTarget

logger = logging.getLogger(__name__)

SampleFactory = Callable[[EntityDecl], dict[str, Any]]


def default_sample_record(entity: EntityDecl) -> dict[str, Any]:
    """Synthetic record: ``id`` is ``t1``, every other column a sample string."""
    return {column: ("t1" if column == "id" else f"{column}-sample") for column in entity.columns}


@dataclass
class GateContext:
    target: CodeGenerationTarget
    record: MemoryRecord
    spec: ProjectSpec
    workspace_root: Path
    min_contrast_ratio: float = 4.5


class Gate(ABC):
    name: str = "gate"
    error: GateError = GateError.BUILD_FAILURE

    @abstractmethod
    def evaluate(self, feature_spec: FeatureSpec, feature: Feature, ctx: GateContext) -> GateResult:
        """Return a GateResult. Must not mutate state on failure."""


class SchemaApplicationGate(Gate):
    name = "schema_application"
    error = GateError.SCHEMA_MISSING

    def evaluate(self, feature_spec: FeatureSpec, feature: Feature, ctx: GateContext) -> GateResult:
        missing: list[str] = []
        for entity in ctx.spec.entities_for(feature_spec):
            columns = ctx.record.schema_inventory.get(entity.name)
            if columns is None:
                missing.append(entity.name)
                continue
            missing.extend(f"{entity.name}.{column}" for column in entity.columns if column not in columns)
        unresolved = [name for name in feature_spec.entity_names if name not in ctx.spec.entities]
        missing.extend(unresolved)
        if missing:
            return GateResult.fail(
                self.name,
                self.error,
                failing_rules=missing,
                hint="Apply the schema change for every entity the feature touches.",
            )
        return GateResult.ok(self.name)


class PersistenceRoundTripGate(Gate):
    """Write a synthetic record, reload it, and compare field for field."""

    name = "persistence_round_trip"
    error = GateError.PERSISTENCE_FAILURE

    def __init__(self, sample_factory: SampleFactory | None = None) -> None:
        self.sample_factory = sample_factory or default_sample_record

    def evaluate(self, feature_spec: FeatureSpec, feature: Feature, ctx: GateContext) -> GateResult:
        for entity in feature_spec.writes:
            declared = ctx.spec.entities.get(entity.name, entity)
            sample = self.sample_factory(declared)
            result = ctx.target.run_round_trip(declared, sample)
            if not result.ok:
                return GateResult.fail(
                    self.name,
                    self.error,
                    failing_rules=[declared.name],
                    details=[result.detail],
                    hint="Persist through the data access layer, not in-memory structures.",
                )
            reloaded = result.payload.get("record") or {}
            mismatched = [column for column, value in sample.items() if reloaded.get(column) != value]
            if mismatched:
                return GateResult.fail(
                    self.name,
                    self.error,
                    failing_rules=mismatched,
                    details=[
                        f"{declared.name}.{column}: wrote {sample[column]!r}, read {reloaded.get(column)!r}"
                        for column in mismatched
                    ],
                )
        return GateResult.ok(self.name)


class PlaceholderScanGate(Gate):
    name = "placeholder_scan"
    error = GateError.PLACEHOLDER_DETECTED

    def evaluate(self, feature_spec: FeatureSpec, feature: Feature, ctx: GateContext) -> GateResult:
        paths = [ref.path for ref in feature.file_artifacts()]
        findings = ctx.target.run_static_scan(paths)
        if not findings:
            return GateResult.ok(self.name)
        rules = list(dict.fromkeys(finding.rule_id for finding in findings))
        return GateResult.fail(
            self.name,
            self.error,
            failing_rules=rules,
            details=[f"{finding.location()} {finding.rule_id}: {finding.excerpt}" for finding in findings],
            hint="Read and write through the data access layer; remove fixed records and placeholder copy.",
        )


class DesignHierarchyGate(Gate):
    name = "design_hierarchy"
    error = GateError.DESIGN_INCOMPLETE

    def evaluate(self, feature_spec: FeatureSpec, feature: Feature, ctx: GateContext) -> GateResult:
        criteria = feature_spec.design_criteria
        if not criteria or not UI_ARTIFACT_KINDS.intersection(feature_spec.artifact_kinds):
            return GateResult.ok(self.name)
        ui_paths = [ref.path for ref in feature.file_artifacts() if ref.kind in UI_ARTIFACT_KINDS]
        texts = [
            (ctx.workspace_root / path).read_text(encoding="utf-8", errors="replace")
            for path in ui_paths
            if (ctx.workspace_root / path).is_file()
        ]
        if not texts:
            return GateResult.fail(
                self.name,
                self.error,
                failing_rules=list(criteria),
                details=["no UI artifact found for the feature"],
            )
        results = evaluate_design("\n".join(texts), criteria, ctx.min_contrast_ratio)
        failed = [result for result in results if not result.passed]
        if not failed:
            return GateResult.ok(self.name)
        return GateResult.fail(
            self.name,
            self.error,
            failing_rules=[result.criterion for result in failed],
            details=[f"{result.criterion}: {result.message}" for result in failed]
            + [detail for result in failed for detail in result.details],
        )


@dataclass
class GateStage:
    name: str
    tier: FeatureStatus
    gates: Sequence[Gate]


@dataclass
class PipelineOutcome:
    results: list[GateResult] = field(default_factory=list)
    passed_tiers: list[FeatureStatus] = field(default_factory=list)

    @property
    def failure(self) -> GateResult | None:
        for result in self.results:
            if not result.passed:
                return result
        return None

    @property
    def passed(self) -> bool:
        return self.failure is None


class GatePipeline:
    def __init__(self, stages: Sequence[GateStage]) -> None:
        self.stages = list(stages)

    def run(self, feature_spec: FeatureSpec, feature: Feature, ctx: GateContext) -> PipelineOutcome:
        outcome = PipelineOutcome()
        for stage in self.stages:
            for gate in stage.gates:
                try:
                    result = gate.evaluate(feature_spec, feature, ctx)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Gate %s raised for feature %s", gate.name, feature_spec.name)
                    result = GateResult.fail(gate.name, gate.error, details=[f"{type(exc).__name__}: {exc}"])
                outcome.results.append(result)
                logger.info("Feature %s gate %s", feature_spec.name, result.summary())
                if not result.passed:
                    return outcome
            outcome.passed_tiers.append(stage.tier)
        return outcome


def default_pipeline(sample_factory: SampleFactory | None = None) -> GatePipeline:
    return GatePipeline(
        [
            GateStage(
                "functional",
                FeatureStatus.VERIFIED_FUNCTIONAL,
                [SchemaApplicationGate(), PersistenceRoundTripGate(sample_factory), PlaceholderScanGate()],
            ),
            GateStage("design", FeatureStatus.VERIFIED_DESIGNED, [DesignHierarchyGate()]),
        ]
    )
