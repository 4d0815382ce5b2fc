from importlib.metadata import PackageNotFoundError, version

from .canonical import fingerprint, to_canonical_json
from .design import contrast_ratio, design_rule, evaluate_design, relative_luminance
from .errors import (
    AmbiguousSpecError,
    BuildLoopError,
    CheckpointError,
    ConcurrentInvocationError,
    CorruptStateError,
    CyclicDependencyError,
    StateWriteError,
)
from .gates import (
    DesignHierarchyGate,
    GateContext,
    GatePipeline,
    GateStage,
    PersistenceRoundTripGate,
    PlaceholderScanGate,
    SchemaApplicationGate,
    default_pipeline,
)
from .ledger import ConversationLedger
from .models import (
    ArtifactRef,
    Checkpoint,
    EntityDecl,
    Feature,
    FeatureSpec,
    FeatureStatus,
    Finding,
    GateError,
    GateResult,
    InvocationOutcome,
    InvocationReport,
    MemoryRecord,
    ProjectSpec,
    TargetResult,
)
from .orchestrator import BuildOrchestrator, run_invocation
from .placeholder_scan import scan_paths, scan_text
from .planner import FeaturePlanner
from .settings import RuntimeSettings
from .spec_loader import SpecificationLoader, load_project_spec
from .state_store import CheckpointLog, MemoryStore
from .target import BuildContext, CodeGenerationTarget, WorkspaceTarget


def get_version() -> str:
    try:
        return version("app-build-loop")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AmbiguousSpecError",
    "ArtifactRef",
    "BuildContext",
    "BuildLoopError",
    "BuildOrchestrator",
    "Checkpoint",
    "CheckpointError",
    "CheckpointLog",
    "CodeGenerationTarget",
    "ConcurrentInvocationError",
    "ConversationLedger",
    "CorruptStateError",
    "CyclicDependencyError",
    "DesignHierarchyGate",
    "EntityDecl",
    "Feature",
    "FeaturePlanner",
    "FeatureSpec",
    "FeatureStatus",
    "Finding",
    "GateContext",
    "GateError",
    "GatePipeline",
    "GateResult",
    "GateStage",
    "InvocationOutcome",
    "InvocationReport",
    "MemoryRecord",
    "MemoryStore",
    "PersistenceRoundTripGate",
    "PlaceholderScanGate",
    "ProjectSpec",
    "RuntimeSettings",
    "SchemaApplicationGate",
    "SpecificationLoader",
    "StateWriteError",
    "TargetResult",
    "WorkspaceTarget",
    "contrast_ratio",
    "default_pipeline",
    "design_rule",
    "evaluate_design",
    "fingerprint",
    "get_version",
    "load_project_spec",
    "relative_luminance",
    "run_invocation",
    "scan_paths",
    "scan_text",
    "to_canonical_json",
]
