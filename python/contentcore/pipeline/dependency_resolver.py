"""Stage dependency graph and phase ordering.

Provides:
- Cycle detection (DFS on add_stage)
- Phase ordering via Kahn's algorithm (execution waves)
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)


# ── Exceptions ───────────────────────────────────────────────────────


class CycleDetectedError(Exception):
    """Raised when adding a stage would create a dependency cycle."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        path = " -> ".join(cycle)
        super().__init__(f"Dependency cycle detected: {path}")


# ── Graph ────────────────────────────────────────────────────────────


class StageGraph:
    """DAG of stages for one plan.

    Edges point from a stage to the stages it waits on. A *soft* edge orders
    the two stages into different phases without making the dependent's
    execution conditional on the dependency's success.
    """

    def __init__(self) -> None:
        # stage → stages it depends ON
        self._dependencies: Dict[str, Set[str]] = {}
        # stage → stages that depend on IT
        self._dependents: Dict[str, Set[str]] = {}
        self._soft: Set[tuple] = set()
        self._insertion_order: List[str] = []

    def add_stage(
        self,
        stage: str,
        dependencies: Optional[List[str]] = None,
        soft: Optional[List[str]] = None,
    ) -> None:
        """Add a stage. Unknown dependencies are dropped (they were skipped).

        Raises:
            ValueError: if *stage* is already in the graph.
            CycleDetectedError: if the new edges would create a cycle.
        """
        if stage in self._dependencies:
            raise ValueError(f"Stage {stage!r} already exists in the graph")

        hard = set(dependencies or [])
        soft_deps = set(soft or [])
        deps = hard | soft_deps
        if stage in deps:
            raise CycleDetectedError([stage, stage])

        unknown = {d for d in deps if d not in self._dependencies}
        for dep in unknown:
            logger.debug("Dependency %s of %s is not planned; ignoring", dep, stage)
        deps -= unknown

        if deps:
            self._check_cycle(stage, deps)

        self._dependencies[stage] = deps
        self._dependents.setdefault(stage, set())
        self._insertion_order.append(stage)
        for dep in deps:
            self._dependents.setdefault(dep, set()).add(stage)
            if dep in soft_deps and dep not in hard:
                self._soft.add((stage, dep))

    def _check_cycle(self, stage: str, new_deps: Set[str]) -> None:
        """DFS from each new dependency; reaching *stage* means a cycle."""
        for dep in new_deps:
            stack = [(dep, [stage, dep])]
            seen: Set[str] = set()
            while stack:
                node, path = stack.pop()
                if node == stage:
                    raise CycleDetectedError(path)
                if node in seen:
                    continue
                seen.add(node)
                for upstream in self._dependencies.get(node, set()):
                    stack.append((upstream, path + [upstream]))

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def stages(self) -> List[str]:
        return list(self._insertion_order)

    def dependencies(self, stage: str, include_soft: bool = True) -> Set[str]:
        deps = set(self._dependencies.get(stage, set()))
        if not include_soft:
            deps = {d for d in deps if (stage, d) not in self._soft}
        return deps

    def edges(self) -> Dict[str, List[str]]:
        """Hard dependency edges, for the plan's public description."""
        return {
            stage: sorted(self.dependencies(stage, include_soft=False))
            for stage in self._insertion_order
        }

    def get_execution_waves(self) -> List[List[str]]:
        """Kahn's algorithm producing parallel execution waves.

        Each wave contains stages whose dependencies are fully satisfied by
        prior waves, in insertion order.
        """
        in_degree = {s: len(deps) for s, deps in self._dependencies.items()}
        current_wave = [s for s in self._insertion_order if in_degree[s] == 0]
        waves: List[List[str]] = []

        while current_wave:
            current_wave.sort(key=self._insertion_order.index)
            waves.append(current_wave)
            next_wave: List[str] = []
            for stage in current_wave:
                for dependent in self._dependents.get(stage, set()):
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        next_wave.append(dependent)
            current_wave = next_wave

        return waves
