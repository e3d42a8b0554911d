# alstm/diagnostics.py

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .core import Graph, Node, OpKind


class GraphStructureError(ValueError):
    """Raised by assert_well_formed() when a graph has wiring problems."""

    def __init__(self, issues: List[str]) -> None:
        self.issues = list(issues)
        super().__init__("Graph is not well formed:\n  " + "\n  ".join(self.issues))


@dataclass
class GraphSummary:
    name: str
    nodes: int
    tensors: int
    steps: int
    kinds: Dict[str, int]
    stages: Dict[str, int]
    param_groups: Dict[str, int]
    outputs: List[str]
    recurrent_outputs: Dict[str, str]

    def to_text(self, top_k: Optional[int] = None) -> str:
        lines = [
            f"Graph {self.name!r}: {self.nodes} nodes, {self.tensors} tensors, {self.steps} steps",
            "Kinds: " + ", ".join(f"{kind}={count}" for kind, count in sorted(self.kinds.items())),
            "Stages: " + ", ".join(f"{stage}={count}" for stage, count in sorted(self.stages.items())),
        ]
        groups = sorted(self.param_groups.items(), key=lambda item: (-item[1], item[0]))
        if top_k is not None:
            groups = groups[:top_k]
        if groups:
            lines.append("Parameter groups:")
            for group, count in groups:
                lines.append(f"  {group:<34} bound by {count} node(s)")
        lines.append("Outputs: " + ", ".join(self.outputs))
        lines.append(
            "Recurrent outputs: "
            + ", ".join(f"{name}<-{tensor}" for name, tensor in self.recurrent_outputs.items())
        )
        return "\n".join(lines)


def summarize_graph(graph: Graph) -> GraphSummary:
    tensors: Set[str] = set(graph.input_names)
    tensors.update(b.tensor.name for b in graph.recurrent_inputs)
    for node in graph:
        tensors.update(node.output_names)
    steps = [node.step for node in graph if node.step is not None]
    return GraphSummary(
        name=graph.name,
        nodes=len(graph),
        tensors=len(tensors),
        steps=max(steps) if steps else 0,
        kinds=dict(Counter(node.kind.value for node in graph)),
        stages=dict(Counter(node.stage.value for node in graph if node.stage is not None)),
        param_groups={group: len(nodes) for group, nodes in graph.param_group_usage().items()},
        outputs=graph.output_names,
        recurrent_outputs={b.name: b.tensor.name for b in graph.recurrent_outputs},
    )


def _param_signature(node: Node, position: int) -> Tuple[str, int, int, int]:
    return (
        node.kind.value,
        position,
        int(node.attrs.get("num_output", -1)),
        int(node.attrs.get("input_width", -1)),
    )


def wiring_issues(graph: Graph) -> List[str]:
    """
    Structural checks an engine would otherwise discover at load time.

    Returns a list of human-readable problems; empty when the graph is
    well formed.
    """
    issues: List[str] = []
    recurrent_inputs = {b.tensor.name for b in graph.recurrent_inputs}
    available: Set[str] = set(graph.input_names) | recurrent_inputs
    producers: Dict[str, Node] = {}
    seen_names: Set[str] = set()

    for position, node in enumerate(graph):
        if node.id.index != position:
            issues.append(f"{node.name}: id {node.id.index} does not match position {position}")
        if node.name in seen_names:
            issues.append(f"{node.name}: duplicate node name")
        seen_names.add(node.name)

        for ref in node.inputs:
            if ref.name not in available:
                issues.append(f"{node.name}: consumes {ref.name!r} before it is produced")
                continue
            producer = producers.get(ref.name)
            if producer is not None and ref.producer != producer.id:
                issues.append(f"{node.name}: reference to {ref.name!r} names the wrong producer")
            if node.step is None:
                continue
            if ref.name in recurrent_inputs and node.step != 1:
                issues.append(f"{node.name}: step {node.step} consumes initial state {ref.name!r}")
            if producer is None or producer.step is None:
                continue
            if producer.step > node.step:
                issues.append(
                    f"{node.name}: step {node.step} consumes {ref.name!r} from later step {producer.step}"
                )
            elif producer.step < node.step and not (
                producer.kind is OpKind.RECURRENT_CELL_UPDATE and producer.step == node.step - 1
            ):
                issues.append(
                    f"{node.name}: step {node.step} consumes {ref.name!r} from step {producer.step}"
                )

        for ref in node.outputs:
            if ref.name in available:
                issues.append(f"{node.name}: tensor {ref.name!r} already produced")
            available.add(ref.name)
            producers[ref.name] = node

    for node in graph.nodes_of_kind(OpKind.RECURRENT_CELL_UPDATE):
        cell = node.outputs[0].name
        readers = graph.consumers_of(cell)
        if len(readers) != 1:
            issues.append(f"{node.name}: cell state {cell!r} has {len(readers)} consumers, expected 1")

    for binding in graph.recurrent_outputs:
        if binding.tensor.name not in producers:
            issues.append(f"recurrent output {binding.name!r} is not produced by any node")
    for ref in graph.outputs:
        if ref.name not in producers:
            issues.append(f"output {ref.name!r} is not produced by any node")

    for group, nodes in graph.param_group_usage().items():
        signatures = {
            _param_signature(node, node.param_groups.index(group)) for node in nodes
        }
        if len(signatures) > 1:
            names = ", ".join(node.name for node in nodes)
            issues.append(f"parameter group {group!r} bound with conflicting shapes by {names}")
    return issues


def assert_well_formed(graph: Graph) -> None:
    issues = wiring_issues(graph)
    if issues:
        raise GraphStructureError(issues)
