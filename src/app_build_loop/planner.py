from __future__ import annotations

import heapq
import logging

from .errors import CyclicDependencyError
from .models import ACTIVE_STATUSES, FeatureSpec, FeatureStatus, MemoryRecord, ProjectSpec

logger = logging.getLogger(__name__)


class FeaturePlanner:
    """Select the next unit of work from a dependency-ordered feature list."""

    def order(self, spec: ProjectSpec) -> list[FeatureSpec]:
        """Kahn topological order, ties broken by declaration order.

        Raises:
            CyclicDependencyError: If the dependency graph has a cycle.
        """
        by_name = {feature.name: feature for feature in spec.features}
        indegree = {feature.name: 0 for feature in spec.features}
        dependents = spec.dependents()
        for feature in spec.features:
            for dep in feature.depends_on:
                if dep in by_name:
                    indegree[feature.name] += 1

        ready = [(feature.declaration_order, feature.name) for feature in spec.features if indegree[feature.name] == 0]
        heapq.heapify(ready)
        ordered: list[FeatureSpec] = []
        while ready:
            _, name = heapq.heappop(ready)
            ordered.append(by_name[name])
            for nxt in dependents.get(name, []):
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    heapq.heappush(ready, (by_name[nxt].declaration_order, nxt))

        if len(ordered) != len(spec.features):
            remaining = [feature for feature in spec.features if indegree[feature.name] > 0]
            raise CyclicDependencyError(self._find_cycle(remaining, by_name))
        return ordered

    @staticmethod
    def _find_cycle(remaining: list[FeatureSpec], by_name: dict[str, FeatureSpec]) -> list[str]:
        """Return one cycle among ``remaining`` as a closed path, e.g. ``[A, B, A]``."""
        candidates = {feature.name for feature in remaining}
        for start in remaining:
            path: list[str] = []
            on_path: dict[str, int] = {}
            current = start.name
            while current not in on_path:
                on_path[current] = len(path)
                path.append(current)
                next_deps = sorted(
                    (dep for dep in by_name[current].depends_on if dep in candidates),
                    key=lambda dep: by_name[dep].declaration_order,
                )
                if not next_deps:
                    break
                current = next_deps[0]
            else:
                cycle = path[on_path[current] :]
                return [*cycle, cycle[0]]
        return sorted(candidates)

    def next(self, record: MemoryRecord, spec: ProjectSpec) -> FeatureSpec | None:
        """Return the first selectable feature, or ``None`` when the plan is exhausted.

        A feature is selectable when its status is active and every dependency
        is complete.  A feature with a blocked dependency is never selected.
        """
        for feature in self.order(spec):
            if record.status_of(feature.name) not in ACTIVE_STATUSES:
                continue
            if self.blocked_dependency(record, spec, feature.name) is not None:
                continue
            if all(record.status_of(dep) == FeatureStatus.COMPLETE for dep in feature.depends_on):
                return feature
        return None

    def blocked_dependency(self, record: MemoryRecord, spec: ProjectSpec, name: str) -> str | None:
        """Return the first dependency (transitively) of ``name`` that is blocked."""
        seen: set[str] = set()
        stack = list(reversed(spec.feature(name).depends_on))
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            if record.status_of(dep) == FeatureStatus.BLOCKED:
                return dep
            try:
                stack.extend(reversed(spec.feature(dep).depends_on))
            except KeyError:
                logger.warning("Feature %s depends on undeclared feature %s", name, dep)
        return None
