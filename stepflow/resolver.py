"""Dependency readiness analysis for workflow graphs."""

from __future__ import annotations

from collections import Counter
from typing import List, Set

import networkx as nx

from .contracts import WorkflowDefinition, WorkflowState, WorkflowStatus


class DependencyResolver:
    """Computes which steps of a definition are ready to run."""

    def completed_step_ids(self, state: WorkflowState) -> Set[str]:
        """Step ids with at least one ``success`` history entry."""
        return {h.step_id for h in state.history if h.status == WorkflowStatus.SUCCESS}

    def satisfied_step_ids(self, state: WorkflowState) -> Set[str]:
        """Completed steps plus steps replaced by a fallback that completed.

        Fallbacks can chain (A -> B -> C), so the set is grown until stable.
        """
        satisfied = self.completed_step_ids(state)
        changed = True
        while changed:
            changed = False
            for source, target in state.fallback_routes.items():
                if source not in satisfied and target in satisfied:
                    satisfied.add(source)
                    changed = True
        return satisfied

    def scheduled_step_ids(self, definition: WorkflowDefinition) -> List[str]:
        """Steps driven by dependencies, in definition order."""
        routed = definition.routed_step_ids
        return [s.step_id for s in definition.steps if s.step_id not in routed]

    def find_runnable(
        self, definition: WorkflowDefinition, state: WorkflowState
    ) -> List[str]:
        """Return the next wavefront of runnable step ids in definition order."""
        satisfied = self.satisfied_step_ids(state)
        running = set(state.running_step_ids)
        routed = definition.routed_step_ids

        runnable: List[str] = []
        for step in definition.steps:
            step_id = step.step_id
            if step_id in routed or step_id in satisfied or step_id in running:
                continue
            # a step routed to its fallback is only satisfied through it
            if step_id in state.fallback_routes:
                continue
            if all(dep in satisfied for dep in step.dependencies):
                runnable.append(step_id)
        return runnable

    def all_completed(self, definition: WorkflowDefinition, state: WorkflowState) -> bool:
        satisfied = self.satisfied_step_ids(state)
        return all(s in satisfied for s in self.scheduled_step_ids(definition))

    def validate(self, definition: WorkflowDefinition) -> List[str]:
        """Return a list of structural problems with ``definition``.

        An empty list means the graph can be scheduled.
        """
        problems: List[str] = []
        if not definition.steps:
            return ["Workflow has no steps"]

        counts = Counter(definition.step_ids)
        for step_id, count in counts.items():
            if count > 1:
                problems.append(f"Duplicate step id: {step_id}")

        known = set(counts)
        graph = nx.DiGraph()
        graph.add_nodes_from(known)
        for step in definition.steps:
            for dep in step.dependencies:
                if dep not in known:
                    problems.append(f"Step {step.step_id} depends on unknown step {dep}")
                    continue
                graph.add_edge(dep, step.step_id)

        if not nx.is_directed_acyclic_graph(graph):
            cycle = [edge[0] for edge in nx.find_cycle(graph)]
            problems.append(f"Dependency cycle: {' -> '.join(cycle)}")

        if not self.scheduled_step_ids(definition):
            problems.append("Workflow has no schedulable steps")
        return problems
