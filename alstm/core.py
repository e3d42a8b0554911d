# alstm/core.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

Shape = Tuple[int, ...]


class OpKind(str, Enum):
    """Operation kinds an unrolled graph may contain."""

    SLICE = "Slice"
    LINEAR_PROJECTION = "LinearProjection"
    ELEMENTWISE_SUM = "ElementwiseSum"
    ELEMENTWISE_SCALE = "ElementwiseScale"
    SOFTMAX = "Softmax"
    RESHAPE = "Reshape"
    CONCAT = "Concat"
    STATE_SPLIT = "StateSplit"
    RECURRENT_CELL_UPDATE = "RecurrentCellUpdate"

    @property
    def engine_type(self) -> str:
        """Layer type name an execution engine's kernel registry resolves."""
        return ENGINE_TYPE_NAMES[self]


ENGINE_TYPE_NAMES: Dict[OpKind, str] = {
    OpKind.SLICE: "Slice",
    OpKind.LINEAR_PROJECTION: "InnerProduct",
    OpKind.ELEMENTWISE_SUM: "Eltwise",
    OpKind.ELEMENTWISE_SCALE: "Scale",
    OpKind.SOFTMAX: "Softmax",
    OpKind.RESHAPE: "Reshape",
    OpKind.CONCAT: "Concat",
    OpKind.STATE_SPLIT: "Split",
    OpKind.RECURRENT_CELL_UPDATE: "LSTMUnit",
}


class Stage(str, Enum):
    """Builder stage that emitted a node."""

    SLICER = "slicer"
    STATIC_INPUT = "static_input"
    ATTENTION = "attention"
    MASKING = "masking"
    INPUT_PROJECTION = "input_projection"
    CONTINUATION_GATE = "continuation_gate"
    RECURRENT_PROJECTION = "recurrent_projection"
    GATE_SUM = "gate_sum"
    CELL_UPDATE = "cell_update"
    COLLECTOR = "collector"
    STATE_EXPORT = "state_export"


@dataclass(frozen=True, order=True)
class NodeId:
    """Index of a node record inside its graph's arena."""

    index: int

    def __repr__(self) -> str:
        return f"NodeId({self.index})"


@dataclass(frozen=True)
class TensorRef:
    """
    Reference to a named tensor plus the shape it must have at that point.

    `producer` is the id of the node that writes the tensor; declared inputs
    and recurrent-state inputs have no producer.
    """

    name: str
    shape: Shape
    producer: Optional[NodeId] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "shape", tuple(int(dim) for dim in self.shape))

    @property
    def is_graph_input(self) -> bool:
        return self.producer is None

    def __repr__(self) -> str:
        return f"TensorRef({self.name!r}, shape={self.shape})"


@dataclass(frozen=True)
class Node:
    """
    Immutable description of one computation step.

    Responsibilities:
      - Carry the operation kind, ordered bottoms/tops and op attributes.
      - Name the parameter groups it binds (weight first, then bias); two
        nodes naming the same group share one parameter store.
    """

    id: NodeId
    name: str
    kind: OpKind
    inputs: Tuple[TensorRef, ...]
    outputs: Tuple[TensorRef, ...]
    param_groups: Tuple[str, ...] = ()
    attrs: Mapping[str, Any] = field(default_factory=dict, hash=False)
    stage: Optional[Stage] = None
    step: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "param_groups", tuple(self.param_groups))
        object.__setattr__(self, "attrs", MappingProxyType(dict(self.attrs)))
        for ref in self.outputs:
            if ref.producer != self.id:
                raise ValueError(
                    f"Output {ref.name!r} of node {self.name!r} is not attributed to {self.id!r}."
                )

    @property
    def input_names(self) -> Tuple[str, ...]:
        return tuple(ref.name for ref in self.inputs)

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(ref.name for ref in self.outputs)

    def to_dict(self) -> Dict[str, Any]:
        attrs: Dict[str, Any] = {}
        for key, value in self.attrs.items():
            to_dict = getattr(value, "to_dict", None)
            attrs[key] = to_dict() if callable(to_dict) else value
        return {
            "id": self.id.index,
            "name": self.name,
            "type": self.kind.engine_type,
            "kind": self.kind.value,
            "bottom": list(self.input_names),
            "top": list(self.output_names),
            "param": list(self.param_groups),
            "attrs": attrs,
            "stage": None if self.stage is None else self.stage.value,
            "step": self.step,
        }


@dataclass(frozen=True)
class StateBinding:
    """Named recurrent-state binding (e.g. 'h_0' -> tensor h_0)."""

    name: str
    tensor: TensorRef


@dataclass(frozen=True)
class Graph:
    """
    Fully unrolled, immutable dataflow graph.

    Responsibilities:
      - Hold the ordered node list (a valid evaluation order).
      - Declare external inputs, external outputs and recurrent-state bindings.
      - Answer structural queries (producers, consumers, parameter sharing).
    """

    name: str
    nodes: Tuple[Node, ...]
    inputs: Tuple[TensorRef, ...]
    outputs: Tuple[TensorRef, ...]
    recurrent_inputs: Tuple[StateBinding, ...]
    recurrent_outputs: Tuple[StateBinding, ...]
    _by_name: Dict[str, Node] = field(init=False, repr=False, compare=False)
    _producers: Dict[str, Node] = field(init=False, repr=False, compare=False)
    _consumers: Dict[str, List[Node]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_name: Dict[str, Node] = {}
        producers: Dict[str, Node] = {}
        consumers: Dict[str, List[Node]] = {}
        for node in self.nodes:
            by_name[node.name] = node
            for ref in node.outputs:
                producers[ref.name] = node
            for ref in node.inputs:
                consumers.setdefault(ref.name, []).append(node)
        object.__setattr__(self, "_by_name", by_name)
        object.__setattr__(self, "_producers", producers)
        object.__setattr__(self, "_consumers", consumers)

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    # --- Lookups ---

    def node(self, name: str) -> Node:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"No node named {name!r}") from None

    def nodes_of_kind(self, kind: OpKind) -> List[Node]:
        return [node for node in self.nodes if node.kind is kind]

    def nodes_in_stage(self, stage: Stage) -> List[Node]:
        return [node for node in self.nodes if node.stage is stage]

    def producer_of(self, tensor: str) -> Optional[Node]:
        return self._producers.get(tensor)

    def consumers_of(self, tensor: str) -> List[Node]:
        return list(self._consumers.get(tensor, ()))

    def tensor(self, name: str) -> TensorRef:
        producer = self._producers.get(name)
        if producer is not None:
            for ref in producer.outputs:
                if ref.name == name:
                    return ref
        for ref in self.inputs:
            if ref.name == name:
                return ref
        for binding in self.recurrent_inputs:
            if binding.tensor.name == name:
                return binding.tensor
        raise KeyError(f"Unknown tensor {name!r}")

    def recurrent_input(self, name: str) -> TensorRef:
        return _lookup_binding(self.recurrent_inputs, name, "recurrent input")

    def recurrent_output(self, name: str) -> TensorRef:
        return _lookup_binding(self.recurrent_outputs, name, "recurrent output")

    @property
    def input_names(self) -> List[str]:
        return [ref.name for ref in self.inputs]

    @property
    def output_names(self) -> List[str]:
        return [ref.name for ref in self.outputs]

    @property
    def recurrent_input_names(self) -> List[str]:
        return [binding.name for binding in self.recurrent_inputs]

    @property
    def recurrent_output_names(self) -> List[str]:
        return [binding.name for binding in self.recurrent_outputs]

    def param_group_usage(self) -> "Dict[str, List[Node]]":
        """Map each parameter group to the nodes that bind it, in graph order."""
        usage: Dict[str, List[Node]] = {}
        for node in self.nodes:
            for group in node.param_groups:
                usage.setdefault(group, []).append(node)
        return usage

    def describe(self) -> Dict[str, Any]:
        """
        Plain-data description suitable for handing to an engine adapter.
        """
        return {
            "name": self.name,
            "input": [{"name": ref.name, "shape": list(ref.shape)} for ref in self.inputs],
            "recurrent_input": [
                {"name": b.name, "tensor": b.tensor.name, "shape": list(b.tensor.shape)}
                for b in self.recurrent_inputs
            ],
            "recurrent_output": [
                {"name": b.name, "tensor": b.tensor.name, "shape": list(b.tensor.shape)}
                for b in self.recurrent_outputs
            ],
            "output": [{"name": ref.name, "shape": list(ref.shape)} for ref in self.outputs],
            "layer": [node.to_dict() for node in self.nodes],
        }


def _lookup_binding(bindings: Sequence[StateBinding], name: str, what: str) -> TensorRef:
    for binding in bindings:
        if binding.name == name:
            return binding.tensor
    raise KeyError(f"No {what} binding named {name!r}")


class GraphArena:
    """
    Mutable arena used while a graph is being constructed.

    Responsibilities:
      - Allocate NodeIds in insertion order.
      - Reject duplicate node names and tensors with more than one producer.
      - Resolve tensor names to TensorRefs for the stage builders.
      - Freeze into an immutable Graph.
    """

    def __init__(self, name: str = "unrolled") -> None:
        self.name = name
        self._nodes: List[Node] = []
        self._names: Dict[str, NodeId] = {}
        self._tensors: "Dict[str, TensorRef]" = {}
        self._inputs: List[TensorRef] = []
        self._outputs: List[TensorRef] = []
        self._recurrent_inputs: List[StateBinding] = []
        self._recurrent_outputs: List[StateBinding] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def next_id(self) -> NodeId:
        return NodeId(len(self._nodes))

    def add(self, node: Node) -> Node:
        if node.id != self.next_id():
            raise ValueError(f"Node {node.name!r} carries {node.id!r}, expected {self.next_id()!r}")
        if node.name in self._names:
            raise ValueError(f"Duplicate node name {node.name!r}")
        for ref in node.inputs:
            known = self._tensors.get(ref.name)
            if known is None:
                raise ValueError(f"Node {node.name!r} consumes unknown tensor {ref.name!r}")
            if known != ref:
                raise ValueError(f"Node {node.name!r} consumes a stale reference to {ref.name!r}")
        for ref in node.outputs:
            if ref.name in self._tensors:
                raise ValueError(f"Tensor {ref.name!r} already has a producer")
        self._nodes.append(node)
        self._names[node.name] = node.id
        for ref in node.outputs:
            self._tensors[ref.name] = ref
        return node

    def tensor(self, name: str) -> TensorRef:
        try:
            return self._tensors[name]
        except KeyError:
            raise KeyError(f"Unknown tensor {name!r}") from None

    def _declare(self, name: str, shape: Sequence[int]) -> TensorRef:
        if name in self._tensors:
            raise ValueError(f"Tensor {name!r} already declared")
        ref = TensorRef(name=name, shape=tuple(int(dim) for dim in shape))
        self._tensors[name] = ref
        return ref

    def declare_input(self, name: str, shape: Sequence[int]) -> TensorRef:
        ref = self._declare(name, shape)
        self._inputs.append(ref)
        return ref

    def declare_recurrent_input(self, name: str, shape: Sequence[int]) -> TensorRef:
        ref = self._declare(name, shape)
        self._recurrent_inputs.append(StateBinding(name=name, tensor=ref))
        return ref

    def bind_recurrent_output(self, name: str, tensor: TensorRef) -> None:
        if any(b.name == name for b in self._recurrent_outputs):
            raise ValueError(f"Duplicate recurrent output binding {name!r}")
        self._recurrent_outputs.append(StateBinding(name=name, tensor=self.tensor(tensor.name)))

    def mark_output(self, tensor: TensorRef) -> None:
        if any(ref.name == tensor.name for ref in self._outputs):
            raise ValueError(f"Tensor {tensor.name!r} is already an output")
        self._outputs.append(self.tensor(tensor.name))

    def freeze(self) -> Graph:
        return Graph(
            name=self.name,
            nodes=tuple(self._nodes),
            inputs=tuple(self._inputs),
            outputs=tuple(self._outputs),
            recurrent_inputs=tuple(self._recurrent_inputs),
            recurrent_outputs=tuple(self._recurrent_outputs),
        )
