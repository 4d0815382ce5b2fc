"""Shared fakes and artifact fixtures for the build loop tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Sequence

from app_build_loop.models import EntityDecl, FeatureSpec, Finding, TargetResult
from app_build_loop.placeholder_scan import scan_paths
from app_build_loop.target import BuildContext
from app_build_loop.utils import slugify_name

GOOD_DATA_ACCESS = """\
import { db } from "./db";
import { records } from "./schema";

export async function listRecords() {
  return db.select().from(records);
}

export async function createRecord(input: { title: string }) {
  return db.insert(records).values(input).returning();
}
"""

GOOD_PAGE = """\
import { listRecords } from "./data_access";

export default async function RecordsPage() {
  const rows = await listRecords();
  return (
    <main className="px-4 md:px-8 lg:px-16">
      <h1 className="text-4xl font-bold text-[#111827] bg-[#ffffff]">Records</h1>
      <input name="title" placeholder="Record title" className="placeholder:text-gray-400" />
      <ul>
        {rows.map((row) => (
          <li key={row.id} className="font-normal">{row.title}</li>
        ))}
      </ul>
    </main>
  );
}
"""

PLACEHOLDER_PAGE = """\
const rows = [{ id: 1, title: "Buy milk" }, { id: 2, title: "Walk dog" }];
// TODO: load from the database
export default function RecordsPage() {
  return <main><h1 className="text-4xl font-bold">Coming soon</h1></main>;
}
"""

FLAT_PAGE = """\
import { listRecords } from "./data_access";

export default async function RecordsPage() {
  const rows = await listRecords();
  return <div className="text-sm">{rows.length} records</div>;
}
"""

TASKS_SPEC = """\
# Tasks

## Feature: Create task
Lets a signed-in user add a task.
- writes: task(title, done)
- surfaces: /tasks/new

## Feature: List tasks
- reads: task
- surfaces: /tasks

## Feature: Profile
- writes: profile(display_name)
- surfaces: /profile
"""

ContentFn = Callable[[str, str, int], str]


def default_content(_feature: str, kind: str, _attempt: int) -> str:
    return GOOD_PAGE if kind == "page" else GOOD_DATA_ACCESS


class FakeTarget:
    """In-process code-generation target that writes real files into a workspace."""

    def __init__(
        self,
        root: Path,
        *,
        content: ContentFn = default_content,
        checkpoint_ok: bool = True,
        round_trip_hook: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    ) -> None:
        self.root = root
        self.content = content
        self.checkpoint_ok = checkpoint_ok
        self.round_trip_hook = round_trip_hook
        self.tables: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str]] = []
        self.contexts: list[BuildContext] = []
        self._attempts: dict[tuple[str, str], int] = {}

    def generate_calls(self, feature: str | None = None) -> int:
        return sum(1 for op, name in self.calls if op == "generate_artifact" and (feature is None or name == feature))

    def apply_schema_change(self, entities: Sequence[EntityDecl]) -> TargetResult:
        for entity in entities:
            self.calls.append(("apply_schema_change", entity.name))
            columns = self.tables.setdefault(entity.name, [])
            columns.extend(column for column in entity.columns if column not in columns)
        return TargetResult(ok=True, payload={"tables": {entity.name: list(self.tables[entity.name]) for entity in entities}})

    def generate_artifact(self, feature: FeatureSpec, kind: str, context: BuildContext) -> TargetResult:
        self.calls.append(("generate_artifact", feature.name))
        self.contexts.append(context)
        key = (feature.name, kind)
        self._attempts[key] = self._attempts.get(key, 0) + 1
        rel_path = f"{slugify_name(feature.name)}/{kind}.tsx"
        path = self.root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.content(feature.name, kind, self._attempts[key]), encoding="utf-8")
        return TargetResult(ok=True, payload={"paths": [rel_path], "decisions": {}})

    def run_round_trip(self, entity: EntityDecl, record: dict[str, Any]) -> TargetResult:
        self.calls.append(("run_round_trip", entity.name))
        if entity.name not in self.tables:
            return TargetResult.failure(f"no such table: {entity.name}")
        reloaded = dict(record)
        if self.round_trip_hook is not None:
            reloaded = self.round_trip_hook(reloaded)
        return TargetResult(ok=True, payload={"record": reloaded})

    def run_static_scan(self, paths: Sequence[str]) -> list[Finding]:
        self.calls.append(("run_static_scan", ",".join(paths)))
        return scan_paths(self.root, paths)

    def checkpoint(self, label: str) -> TargetResult:
        self.calls.append(("checkpoint", label))
        if not self.checkpoint_ok:
            return TargetResult.failure("version control unavailable")
        return TargetResult(ok=True, payload={"ref": f"fake:{len(self.calls)}"})
