# alstm/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .reference import ReferenceExecutor


@dataclass(frozen=True)
class NodeEvaluation:
    """
    Lightweight description of one node evaluated by a ReferenceExecutor.
    """

    node: str
    kind: str
    step: Optional[int]
    shapes: Tuple[Tuple[int, ...], ...]


class Trace:
    """
    Recording of ReferenceExecutor rollouts.

    Responsibilities:
      - Capture the order in which nodes were evaluated and the shapes they produced.
      - Count completed timesteps and evaluations per op kind.
    """

    def __init__(self, executor: ReferenceExecutor) -> None:
        self.executor = executor
        self._events: List[NodeEvaluation] = []
        self._kind_counts: Dict[str, int] = {}
        self._steps_completed: List[int] = []
        self._rollouts = 0
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._kind_counts.clear()
        self._steps_completed.clear()
        self._rollouts = 0
        self.executor.register_event_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.executor.unregister_event_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind == "node_eval":
            event = NodeEvaluation(
                node=str(payload["node"]),
                kind=str(payload["kind"]),
                step=payload.get("step"),
                shapes=tuple(tuple(int(dim) for dim in shape) for shape in payload.get("shapes", ())),
            )
            self._events.append(event)
            self._kind_counts[event.kind] = self._kind_counts.get(event.kind, 0) + 1
        elif kind == "step_end":
            self._steps_completed.append(int(payload["step"]))
        elif kind == "rollout_end":
            self._rollouts += 1

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[NodeEvaluation, ...]:
        return tuple(self._events)

    @property
    def steps_completed(self) -> Tuple[int, ...]:
        return tuple(self._steps_completed)

    def order(self) -> List[str]:
        return [event.node for event in self._events]

    def summary(self) -> Dict[str, Any]:
        return {
            "rollouts": self._rollouts,
            "evaluations": len(self._events),
            "steps": max(self._steps_completed, default=0),
            "kinds": dict(self._kind_counts),
        }


@contextmanager
def record(executor: ReferenceExecutor) -> Iterator[Trace]:
    """
    Context manager to record ReferenceExecutor rollouts.

    Usage:
        with alstm.record(executor) as trace:
            executor(inputs)
        trace.summary()
    """
    trace = Trace(executor)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
