"""Explicit step graph built from a workflow definition's adjacency list."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from .contracts import SplitStep, Step, WorkflowDefinition
from .errors import GraphValidationError, StepConfigError


class StepGraph:
    """Directed, acyclic graph of workflow steps keyed by step id."""

    def __init__(self, steps: List[Step], entry_step_id: Optional[str] = None) -> None:
        self._order = [step.id for step in steps]
        self._steps: Dict[str, Step] = {}
        for step in steps:
            self._steps.setdefault(step.id, step)
        self._duplicates = sorted(
            {sid for sid in self._order if self._order.count(sid) > 1}
        )
        self.entry_id = entry_step_id or (self._order[0] if self._order else None)

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "StepGraph":
        return cls(definition.steps, definition.entry_step_id)

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def get(self, step_id: str) -> Step:
        """Return the step or raise ``StepConfigError`` when it is unknown."""
        try:
            return self._steps[step_id]
        except KeyError:
            raise StepConfigError(f"Step {step_id!r} does not exist") from None

    def successors(self, step_id: str) -> List[str]:
        return self.get(step_id).successor_ids()

    def problems(self) -> List[str]:
        """Every reason this graph should be rejected; empty when valid."""
        found: List[str] = []
        for sid in self._duplicates:
            found.append(f"duplicate step id {sid!r}")

        if self.entry_id is not None and self.entry_id not in self._steps:
            found.append(f"entry step {self.entry_id!r} does not exist")

        for step in self._steps.values():
            for target in step.successor_ids():
                if target not in self._steps:
                    found.append(f"step {step.id!r} references missing step {target!r}")
            if isinstance(step, SplitStep):
                found.extend(self._split_problems(step))

        cycle = self._find_cycle()
        if cycle:
            found.append("cycle detected: " + " -> ".join(cycle))

        if self.entry_id in self._steps:
            reachable = self._reachable(self.entry_id)
            for sid in self._steps:
                if sid not in reachable:
                    found.append(f"unreachable step {sid!r}")
        return found

    def validate(self, workflow_id: Optional[str] = None) -> None:
        problems = self.problems()
        if problems:
            raise GraphValidationError(problems, workflow_id=workflow_id)

    # ------------------------------------------------------------------
    @staticmethod
    def _split_problems(step: SplitStep) -> List[str]:
        found = []
        paths = step.config.paths
        if not paths:
            found.append(f"split {step.id!r} has no paths")
            return found
        ids = [p.id for p in paths]
        if len(ids) != len(set(ids)):
            found.append(f"split {step.id!r} has duplicate path ids")
        if step.config.split_type == "weighted" and sum(p.percentage for p in paths) <= 0:
            found.append(f"weighted split {step.id!r} needs a positive total percentage")
        return found

    def _reachable(self, start: str) -> set[str]:
        seen = {start}
        stack = [start]
        while stack:
            current = stack.pop()
            for target in self._steps[current].successor_ids():
                if target in self._steps and target not in seen:
                    seen.add(target)
                    stack.append(target)
        return seen

    def _find_cycle(self) -> List[str]:
        # iterative three-colour DFS; returns the first cycle found as a path
        white, grey, black = 0, 1, 2
        colour = {sid: white for sid in self._steps}
        for root in self._steps:
            if colour[root] != white:
                continue
            path: List[str] = [root]
            colour[root] = grey
            stack = [iter(self._steps[root].successor_ids())]
            while stack:
                advanced = False
                for target in stack[-1]:
                    if target not in self._steps:
                        continue
                    if colour[target] == grey:
                        return path[path.index(target):] + [target]
                    if colour[target] == white:
                        colour[target] = grey
                        path.append(target)
                        stack.append(iter(self._steps[target].successor_ids()))
                        advanced = True
                        break
                if not advanced:
                    colour[path.pop()] = black
                    stack.pop()
        return []


def validate_definition(definition: WorkflowDefinition) -> StepGraph:
    """Build and validate the graph of ``definition``.

    Raises:
        GraphValidationError: listing every problem found.
    """
    graph = StepGraph.from_definition(definition)
    graph.validate(workflow_id=definition.id)
    return graph
