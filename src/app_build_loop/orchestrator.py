"""Build orchestration state machine.

One invocation walks ``idle -> planning -> building -> gating ->
checkpointing -> persisting`` for as many features as it can, looping back to
``planning`` after each one, and ends in ``done``, ``blocked`` or
``suspended``.  The memory record and project spec live on the orchestrator;
the graph state only carries routing information.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .errors import (
    AmbiguousSpecError,
    BuildLoopError,
    CheckpointError,
    CorruptStateError,
    CyclicDependencyError,
    StateWriteError,
)
from .gates import GateContext, GatePipeline, default_pipeline
from .ledger import ConversationLedger
from .models import (
    ACTIVE_STATUSES,
    ArtifactRef,
    AttemptRecord,
    Checkpoint,
    Feature,
    FeatureReport,
    FeatureSpec,
    FeatureStatus,
    GateError,
    GateResult,
    InvocationOutcome,
    InvocationReport,
    MemoryRecord,
    ProjectSpec,
    TargetResult,
)
from .planner import FeaturePlanner
from .settings import RuntimeSettings
from .spec_loader import SpecificationLoader
from .state_store import CheckpointLog, MemoryStore
from .target import BuildContext, CodeGenerationTarget
from .utils import checkpoint_label

logger = logging.getLogger(__name__)

EXIT_DONE = 0
EXIT_BLOCKED = 1
EXIT_FATAL = 2
EXIT_SUSPENDED = 3

OUTCOME_EXIT_CODES: dict[InvocationOutcome, int] = {
    InvocationOutcome.DONE: EXIT_DONE,
    InvocationOutcome.BLOCKED: EXIT_BLOCKED,
    InvocationOutcome.SUSPENDED: EXIT_SUSPENDED,
}

_BUILD_GATE = "build"


class OrchestratorState(TypedDict, total=False):
    current_feature: str | None
    attempt: int
    build_failed: bool
    gate_passed: bool
    exhausted: bool
    features_started: int
    outcome: str | None


class BuildOrchestrator:
    """Drive one invocation of the build loop against a code-generation target."""

    def __init__(
        self,
        raw_spec: str,
        *,
        memory_store: MemoryStore,
        target: CodeGenerationTarget,
        ledger: ConversationLedger | None = None,
        settings: RuntimeSettings | None = None,
        checkpoint_log: CheckpointLog | None = None,
        pipeline: GatePipeline | None = None,
        planner: FeaturePlanner | None = None,
        workspace_root: Path | None = None,
        retry_blocked: bool = False,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.raw_spec = raw_spec
        self.memory_store = memory_store
        self.target = target
        self.ledger = ledger
        self.checkpoint_log = checkpoint_log
        self.pipeline = pipeline if pipeline is not None else default_pipeline()
        self.planner = planner if planner is not None else FeaturePlanner()
        self.workspace_root = workspace_root if workspace_root is not None else self.settings.workspace_root_path
        self.retry_blocked = retry_blocked

        self.record = MemoryRecord()
        self.spec: ProjectSpec | None = None
        self.report: InvocationReport | None = None
        self._saved_fingerprint: str | None = None
        self._fatal: BuildLoopError | None = None
        self._attempts: list[AttemptRecord] = []
        self._checkpoints: list[Checkpoint] = []
        self._pruned: list[str] = []

        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(OrchestratorState)
        graph.add_node("idle", self._idle_node)
        graph.add_node("planning", self._planning_node)
        graph.add_node("building", self._building_node)
        graph.add_node("gating", self._gating_node)
        graph.add_node("checkpointing", self._checkpointing_node)
        graph.add_node("persisting", self._persisting_node)
        graph.add_node("done", self._done_node)
        graph.add_node("blocked", self._blocked_node)
        graph.add_node("suspended", self._suspended_node)

        graph.add_edge(START, "idle")
        graph.add_conditional_edges(
            "idle",
            self._idle_route,
            {"planning": "planning", "blocked": "blocked"},
        )
        graph.add_conditional_edges(
            "planning",
            self._planning_route,
            {
                "building": "building",
                "done": "done",
                "blocked": "blocked",
                "suspended": "suspended",
            },
        )
        graph.add_edge("building", "gating")
        graph.add_conditional_edges(
            "gating",
            self._gating_route,
            {
                "checkpointing": "checkpointing",
                "building": "building",
                "planning": "planning",
            },
        )
        graph.add_edge("checkpointing", "persisting")
        graph.add_edge("persisting", "planning")
        graph.add_edge("done", END)
        graph.add_edge("blocked", END)
        graph.add_edge("suspended", END)
        return graph

    # ------------------------------------------------------------------
    # idle: load memory, load spec, reconcile
    # ------------------------------------------------------------------

    def _load_record(self) -> MemoryRecord:
        try:
            record = self.memory_store.load()
        except CorruptStateError as exc:
            logger.error("%s", exc.describe())
            moved_to = self.memory_store.quarantine_corrupt()
            record = MemoryRecord()
            record.add_known_issue(f"CorruptState: memory record was reinitialized ({exc}); original kept at {moved_to}")
            self._saved_fingerprint = None
            return record
        self._saved_fingerprint = record.fingerprint()
        return record

    def _idle_node(self, _state: OrchestratorState) -> dict[str, Any]:
        self.record = self._load_record()
        try:
            self.spec = SpecificationLoader(self.settings.artifact_kinds).load(self.raw_spec)
        except AmbiguousSpecError as exc:
            logger.error("%s", exc.describe())
            self._fatal = exc
            return {"outcome": InvocationOutcome.BLOCKED.value}
        self._reconcile(self.spec)
        logger.info(
            "Loaded project %s: %d feature(s), record revision %d",
            self.spec.name,
            len(self.spec.features),
            self.record.revision,
        )
        return {"outcome": None, "features_started": 0}

    def _idle_route(self, state: OrchestratorState) -> str:
        return "blocked" if self._fatal is not None else "planning"

    def _reconcile(self, spec: ProjectSpec) -> None:
        self._pruned = self.memory_store.prune(self.record, spec)

        for feature_spec in spec.features:
            entry = self.record.features.get(feature_spec.name)
            if entry is None:
                entry = Feature(name=feature_spec.name)
                self.record.features[feature_spec.name] = entry
                logger.info("New feature %s", feature_spec.name)
            entry.depends_on = list(feature_spec.depends_on)

        for key, value in spec.architecture.items():
            self.record.architecture_decisions[key] = value

        for feature_spec in spec.features:
            entry = self.record.features[feature_spec.name]
            if entry.status != FeatureStatus.BLOCKED:
                continue
            error = entry.last_gate_result.error if entry.last_gate_result else None
            if self.retry_blocked or (error == GateError.AMBIGUOUS_SPEC and feature_spec.ambiguity is None):
                logger.info("Unblocking feature %s", feature_spec.name)
                entry.unblock()

        for feature_spec in spec.features:
            if feature_spec.ambiguity:
                entry = self.record.features[feature_spec.name]
                if entry.status in ACTIVE_STATUSES:
                    logger.warning("Feature %s is ambiguous: %s", feature_spec.name, feature_spec.ambiguity)
                entry.block(
                    GateResult.fail(
                        "specification",
                        GateError.AMBIGUOUS_SPEC,
                        details=[feature_spec.ambiguity],
                        hint="Name at least one data entity and one user-facing surface.",
                    )
                )

        for feature_spec in spec.features:
            if self.record.status_of(feature_spec.name) == FeatureStatus.BLOCKED:
                self._block_dependents(spec, feature_spec.name)

    def _block_dependents(self, spec: ProjectSpec, failed: str) -> list[str]:
        dependents = spec.dependents()
        queue: deque[str] = deque(dependents.get(failed, []))
        visited: set[str] = {failed}
        newly_blocked: list[str] = []
        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)
            entry = self.record.features.get(current)
            if entry is not None and entry.status in ACTIVE_STATUSES:
                entry.block(
                    GateResult.fail(
                        "dependency",
                        GateError.DEPENDENCY_BLOCKED,
                        failing_rules=[failed],
                        details=[f"dependency {failed} is blocked"],
                    )
                )
                newly_blocked.append(current)
            queue.extend(dependents.get(current, []))
        if newly_blocked:
            logger.warning("Blocked %s: dependency %s is blocked", ", ".join(newly_blocked), failed)
        return newly_blocked

    # ------------------------------------------------------------------
    # planning
    # ------------------------------------------------------------------

    def _planning_node(self, state: OrchestratorState) -> dict[str, Any]:
        assert self.spec is not None
        try:
            candidate = self.planner.next(self.record, self.spec)
        except CyclicDependencyError as exc:
            logger.error("%s", exc.describe())
            self._fatal = exc
            return {"current_feature": None, "outcome": InvocationOutcome.BLOCKED.value}

        if candidate is None:
            all_complete = all(
                self.record.status_of(name) == FeatureStatus.COMPLETE for name in self.spec.names()
            )
            outcome = InvocationOutcome.DONE if all_complete else InvocationOutcome.BLOCKED
            return {"current_feature": None, "outcome": outcome.value}

        started = state.get("features_started", 0)
        budget = self.settings.max_features_per_invocation
        if budget and started >= budget:
            logger.info("Feature budget of %d spent; suspending before %s", budget, candidate.name)
            return {"current_feature": None, "outcome": InvocationOutcome.SUSPENDED.value}

        logger.info("Selected feature %s", candidate.name)
        return {
            "current_feature": candidate.name,
            "attempt": 0,
            "features_started": started + 1,
            "outcome": None,
        }

    def _planning_route(self, state: OrchestratorState) -> str:
        outcome = state.get("outcome")
        if outcome is not None:
            return outcome
        return "building"

    # ------------------------------------------------------------------
    # building
    # ------------------------------------------------------------------

    def _call_target(self, operation: str, *args: Any) -> TargetResult:
        try:
            return getattr(self.target, operation)(*args)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Target %s raised", operation)
            return TargetResult.failure(f"{operation} raised {type(exc).__name__}: {exc}")

    def _build_context(self, entry: Feature, attempt: int) -> BuildContext:
        excerpt = ""
        if self.ledger is not None and self.settings.ledger_context_entries:
            excerpt = self.ledger.render(self.settings.ledger_context_entries)
        return BuildContext(
            feature=entry.name,
            attempt=attempt,
            last_gate_result=entry.last_gate_result,
            architecture_decisions=dict(self.record.architecture_decisions),
            schema_inventory={table: list(columns) for table, columns in self.record.schema_inventory.items()},
            ledger_excerpt=excerpt,
        )

    def _build(self, feature_spec: FeatureSpec, entry: Feature, attempt: int) -> GateResult | None:
        assert self.spec is not None
        entities = self.spec.entities_for(feature_spec)
        if entities:
            result = self._call_target("apply_schema_change", entities)
            if not result.ok:
                return GateResult.fail(
                    _BUILD_GATE,
                    GateError.BUILD_FAILURE,
                    failing_rules=["apply_schema_change"],
                    details=[result.detail],
                )
            tables: dict[str, list[str]] = result.payload.get("tables") or {
                entity.name: list(entity.columns) for entity in entities
            }
            self.record.record_tables(tables)
            for table in tables:
                entry.add_artifact(ArtifactRef(kind="schema", path=f"schema:{table}"))

        for kind in feature_spec.artifact_kinds:
            result = self._call_target("generate_artifact", feature_spec, kind, self._build_context(entry, attempt))
            if not result.ok:
                return GateResult.fail(
                    _BUILD_GATE,
                    GateError.BUILD_FAILURE,
                    failing_rules=[f"generate_artifact:{kind}"],
                    details=[result.detail],
                )
            for path in result.payload.get("paths", []):
                entry.add_artifact(ArtifactRef(kind=kind, path=path))
            for key, value in dict(result.payload.get("decisions") or {}).items():
                if key not in self.spec.architecture:
                    self.record.architecture_decisions[key] = value
        return None

    def _building_node(self, state: OrchestratorState) -> dict[str, Any]:
        assert self.spec is not None
        name = state["current_feature"]
        assert name is not None
        feature_spec = self.spec.feature(name)
        entry = self.record.features[name]
        attempt = state.get("attempt", 0) + 1
        if entry.status == FeatureStatus.NOT_STARTED:
            entry.transition(FeatureStatus.IN_PROGRESS)
        logger.info("Building %s (attempt %d/%d)", name, attempt, self.settings.max_attempts)

        failure = self._build(feature_spec, entry, attempt)
        if failure is not None:
            logger.warning("Build of %s failed: %s", name, failure.summary())
            entry.last_gate_result = failure
        return {"attempt": attempt, "build_failed": failure is not None}

    # ------------------------------------------------------------------
    # gating
    # ------------------------------------------------------------------

    def _gating_node(self, state: OrchestratorState) -> dict[str, Any]:
        assert self.spec is not None
        name = state["current_feature"]
        assert name is not None
        feature_spec = self.spec.feature(name)
        entry = self.record.features[name]
        attempt = state.get("attempt", 1)

        if state.get("build_failed"):
            failure = entry.last_gate_result
        else:
            ctx = GateContext(
                target=self.target,
                record=self.record,
                spec=self.spec,
                workspace_root=self.workspace_root,
                min_contrast_ratio=self.settings.min_contrast_ratio,
            )
            outcome = self.pipeline.run(feature_spec, entry, ctx)
            for tier in outcome.passed_tiers:
                entry.advance_to(tier)
            failure = outcome.failure
            entry.last_gate_result = failure if failure is not None else (outcome.results[-1] if outcome.results else None)

        self._attempts.append(
            AttemptRecord(
                feature=name,
                attempt=attempt,
                passed=failure is None,
                gate=failure.gate if failure is not None else "pipeline",
                error=failure.error if failure is not None else None,
                failing_rules=list(failure.failing_rules) if failure is not None else [],
            )
        )
        if failure is None:
            return {"gate_passed": True, "exhausted": False}

        if attempt < self.settings.max_attempts:
            logger.info("Feature %s failed %s; retrying", name, failure.summary())
            return {"gate_passed": False, "exhausted": False}

        logger.warning("Feature %s blocked after %d attempt(s): %s", name, attempt, failure.summary())
        entry.block(failure)
        self._block_dependents(self.spec, name)
        return {"gate_passed": False, "exhausted": True, "current_feature": None}

    def _gating_route(self, state: OrchestratorState) -> str:
        if state.get("gate_passed"):
            return "checkpointing"
        if state.get("exhausted"):
            return "planning"
        return "building"

    # ------------------------------------------------------------------
    # checkpointing / persisting
    # ------------------------------------------------------------------

    def _record_checkpoint(self, entry: Feature) -> Checkpoint:
        sequence = self.checkpoint_log.next_sequence() if self.checkpoint_log else len(self._checkpoints) + 1
        label = checkpoint_label(sequence, entry.name)
        result = self._call_target("checkpoint", label)
        if not result.ok:
            raise CheckpointError(f"checkpoint {label!r} failed: {result.detail}")
        checkpoint = Checkpoint(
            sequence=sequence,
            label=label,
            feature=entry.name,
            created_at=datetime.now(UTC),
            ref=str(result.payload.get("ref", "")),
            artifacts=[ref.path for ref in entry.file_artifacts()],
        )
        if self.checkpoint_log is not None:
            try:
                self.checkpoint_log.append(checkpoint)
            except OSError as exc:
                raise CheckpointError(f"unable to append checkpoint log: {exc}") from exc
        return checkpoint

    def _checkpointing_node(self, state: OrchestratorState) -> dict[str, Any]:
        name = state["current_feature"]
        assert name is not None
        try:
            checkpoint = self._record_checkpoint(self.record.features[name])
        except CheckpointError as exc:
            logger.warning("%s (continuing)", exc.describe())
            return {}
        self._checkpoints.append(checkpoint)
        logger.info("Checkpoint %d for %s: %s", checkpoint.sequence, name, checkpoint.ref)
        return {}

    def _save(self, record: MemoryRecord) -> MemoryRecord:
        saved = self.memory_store.save(record)
        self._saved_fingerprint = saved.fingerprint()
        return saved

    def _persisting_node(self, state: OrchestratorState) -> dict[str, Any]:
        name = state["current_feature"]
        assert name is not None
        candidate = self.record.model_copy(deep=True)
        candidate.features[name].advance_to(FeatureStatus.COMPLETE)
        self.record = self._save(candidate)
        logger.info("Feature %s complete (record revision %d)", name, self.record.revision)
        return {"current_feature": None}

    # ------------------------------------------------------------------
    # terminals
    # ------------------------------------------------------------------

    def _finish(self, outcome: InvocationOutcome) -> dict[str, Any]:
        if self._saved_fingerprint != self.record.fingerprint():
            self.record = self._save(self.record)
        self.report = self._build_report(outcome)
        logger.info("Invocation finished: %s", outcome.value)
        return {"outcome": outcome.value}

    def _done_node(self, _state: OrchestratorState) -> dict[str, Any]:
        return self._finish(InvocationOutcome.DONE)

    def _blocked_node(self, _state: OrchestratorState) -> dict[str, Any]:
        return self._finish(InvocationOutcome.BLOCKED)

    def _suspended_node(self, _state: OrchestratorState) -> dict[str, Any]:
        return self._finish(InvocationOutcome.SUSPENDED)

    def _feature_report(self, name: str) -> FeatureReport:
        entry = self.record.features.get(name)
        if entry is None:
            return FeatureReport(name=name, status=FeatureStatus.NOT_STARTED)
        result = entry.last_gate_result
        failing_rule = None
        detail = None
        if entry.status == FeatureStatus.BLOCKED and result is not None:
            failing_rule = result.error.value if result.error is not None else result.gate
            parts = list(result.failing_rules) + list(result.details[:1])
            detail = "; ".join(parts) or None
        return FeatureReport(name=name, status=entry.status, failing_rule=failing_rule, detail=detail)

    def _build_report(self, outcome: InvocationOutcome) -> InvocationReport:
        names = self.spec.names() if self.spec is not None else list(self.record.features)
        return InvocationReport(
            outcome=outcome,
            features=[self._feature_report(name) for name in names],
            attempts=list(self._attempts),
            checkpoints=list(self._checkpoints),
            pruned=list(self._pruned),
            record_revision=self.record.revision,
            fatal_error=self._fatal.describe() if self._fatal is not None else None,
        )

    def recursion_limit(self, feature_count: int) -> int:
        per_feature = 2 * self.settings.max_attempts + 3
        return max(self.settings.recursion_limit, feature_count * per_feature + 10)

    def run(self) -> InvocationReport:
        """Run one invocation under the project lock.

        Raises:
            ConcurrentInvocationError: If another invocation holds the lock.
            AmbiguousSpecError, CyclicDependencyError: Planning-time failures,
                with the report attached as ``exc.report``.
            StateWriteError: If the memory record could not be saved.
        """
        # Upper bound: every feature takes a line of markdown or a "name" key of JSON.
        feature_estimate = max(self.raw_spec.count("\n") + 1, self.raw_spec.count('"name"'))
        initial_state: OrchestratorState = {
            "current_feature": None,
            "attempt": 0,
            "build_failed": False,
            "gate_passed": False,
            "exhausted": False,
            "features_started": 0,
            "outcome": None,
        }
        with self.memory_store.invocation_lock():
            try:
                self.graph.invoke(
                    initial_state,
                    config={
                        "recursion_limit": self.recursion_limit(feature_estimate),
                        "configurable": {"thread_id": f"build-loop-{uuid.uuid4().hex[:8]}"},
                    },
                )
            except StateWriteError as exc:
                logger.error("%s", exc.describe())
                self._fatal = exc
                exc.report = self._build_report(InvocationOutcome.BLOCKED)
                raise

        assert self.report is not None
        if self._fatal is not None:
            self._fatal.report = self.report
            raise self._fatal
        return self.report


def run_invocation(
    raw_spec: str,
    memory_path: Path,
    ledger_path: Path | None,
    target: CodeGenerationTarget,
    settings: RuntimeSettings | None = None,
    *,
    checkpoint_log_path: Path | None = None,
    pipeline: GatePipeline | None = None,
    workspace_root: Path | None = None,
    retry_blocked: bool = False,
) -> tuple[int, InvocationReport | None]:
    """Run one invocation and map its outcome to a process exit code.

    Returns:
        ``(exit_code, report)``; 0 done, 1 blocked, 2 fatal, 3 suspended.
    """
    settings = settings if settings is not None else RuntimeSettings.from_env()
    ledger = ConversationLedger(ledger_path, max_entries=settings.ledger_max_entries) if ledger_path else None
    log_path = checkpoint_log_path if checkpoint_log_path is not None else memory_path.parent / settings.checkpoint_log_file
    orchestrator = BuildOrchestrator(
        raw_spec,
        memory_store=MemoryStore(memory_path),
        target=target,
        ledger=ledger,
        settings=settings,
        checkpoint_log=CheckpointLog(log_path),
        pipeline=pipeline,
        workspace_root=workspace_root,
        retry_blocked=retry_blocked,
    )
    try:
        report = orchestrator.run()
    except BuildLoopError as exc:
        logger.error("Invocation aborted: %s", exc.describe())
        return EXIT_FATAL, exc.report
    return OUTCOME_EXIT_CODES[report.outcome], report
