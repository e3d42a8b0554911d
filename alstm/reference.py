# alstm/reference.py

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .config import FillerSpec
from .core import Graph, Node, OpKind

EventListener = Callable[[Dict[str, Any]], None]


def lstm_unit(
    c_prev: torch.Tensor,
    gates: torch.Tensor,
    cont: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Cell update of one step.

    Args:
        c_prev: previous cell state [..., H].
        gates: gate pre-activations [..., 4H], laid out as [i', f', o', g'].
        cont: continuation flags shaped like c_prev without the feature axis.

    Returns:
        (c_t, h_t), each shaped like c_prev.
    """
    i, f, o, g = gates.chunk(4, dim=-1)
    i = torch.sigmoid(i)
    f = torch.sigmoid(f)
    o = torch.sigmoid(o)
    g = torch.tanh(g)
    cont = cont.reshape(*cont.shape, *([1] * (c_prev.dim() - cont.dim()))).to(c_prev.dtype)
    c = cont * (f * c_prev) + i * g
    h = o * torch.tanh(c)
    return c, h


def _fans(tensor: torch.Tensor) -> Tuple[int, int]:
    # Weights are [num_output, input_width]; biases are 1-d.
    if tensor.dim() < 2:
        return tensor.numel(), tensor.numel()
    return int(tensor.shape[1]), int(tensor.shape[0])


@torch.no_grad()
def apply_filler(tensor: torch.Tensor, spec: FillerSpec) -> torch.Tensor:
    """
    Fill `tensor` in place according to the filler, using Caffe's fan-in
    conventions for xavier (uniform) and msra (gaussian).
    """
    if spec.type == "constant":
        return nn.init.constant_(tensor, spec.value)
    if spec.type == "uniform":
        return nn.init.uniform_(tensor, spec.min, spec.max)
    if spec.type == "gaussian":
        return nn.init.normal_(tensor, spec.mean, spec.std)
    fan_in, _ = _fans(tensor)
    if spec.type == "xavier":
        bound = math.sqrt(3.0 / fan_in)
        return nn.init.uniform_(tensor, -bound, bound)
    if spec.type == "msra":
        return nn.init.normal_(tensor, 0.0, math.sqrt(2.0 / fan_in))
    raise ValueError(f"Unsupported filler type {spec.type!r}")


class ReferenceExecutor(nn.Module):
    """
    Straightforward torch evaluation of an unrolled Graph.

    Responsibilities:
      - Bind one nn.Parameter per parameter group, shared by every node that
        names the group.
      - Evaluate nodes in graph order, keyed by tensor name.
      - Return external outputs plus recurrent outputs keyed by binding name,
        so a following window can continue from them.
    """

    def __init__(self, graph: Graph, dtype: torch.dtype = torch.float32) -> None:
        super().__init__()
        self.graph = graph
        self.dtype = dtype
        self.params = nn.ParameterDict()
        self._listeners: List[EventListener] = []
        self._kernels: Dict[OpKind, Callable[[Node, List[torch.Tensor]], Sequence[torch.Tensor]]] = {
            OpKind.SLICE: self._slice,
            OpKind.LINEAR_PROJECTION: self._linear,
            OpKind.ELEMENTWISE_SUM: self._eltwise_sum,
            OpKind.ELEMENTWISE_SCALE: self._scale,
            OpKind.SOFTMAX: self._softmax,
            OpKind.RESHAPE: self._reshape,
            OpKind.CONCAT: self._concat,
            OpKind.STATE_SPLIT: self._split,
            OpKind.RECURRENT_CELL_UPDATE: self._cell_update,
        }
        self._bind_parameters()

    # --- Parameters ---

    def _bind_parameters(self) -> None:
        for node in self.graph.nodes_of_kind(OpKind.LINEAR_PROJECTION):
            num_output = int(node.attrs["num_output"])
            shapes = [(num_output, int(node.attrs["input_width"]))]
            fillers = [node.attrs["weight_filler"]]
            if node.attrs["bias_term"]:
                shapes.append((num_output,))
                fillers.append(node.attrs["bias_filler"])
            for group, shape, filler in zip(node.param_groups, shapes, fillers):
                if group in self.params:
                    existing = tuple(self.params[group].shape)
                    if existing != shape:
                        raise ValueError(
                            f"Parameter group {group!r} bound with shape {existing} and {shape} (node {node.name})"
                        )
                    continue
                param = nn.Parameter(torch.empty(shape, dtype=self.dtype))
                apply_filler(param, filler)
                self.params[group] = param

    def parameter(self, group: str) -> nn.Parameter:
        if group not in self.params:
            raise KeyError(f"No parameter group named {group!r}")
        return self.params[group]

    # --- Events ---

    def register_event_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_event_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(payload)

    # --- Evaluation ---

    def _device(self) -> torch.device:
        param = next(self.parameters(), None)
        if param is not None:
            return param.device
        return torch.device("cpu")

    def init_state(self, device: Optional[torch.device] = None) -> Dict[str, torch.Tensor]:
        device = device or self._device()
        return {
            binding.name: torch.zeros(binding.tensor.shape, dtype=self.dtype, device=device)
            for binding in self.graph.recurrent_inputs
        }

    def forward(  # type: ignore[override]
        self,
        inputs: Mapping[str, torch.Tensor],
        state: Optional[Mapping[str, torch.Tensor]] = None,
    ) -> Dict[str, torch.Tensor]:
        env: Dict[str, torch.Tensor] = {}
        for ref in self.graph.inputs:
            if ref.name not in inputs:
                raise KeyError(f"Inputs missing {ref.name!r} required by graph {self.graph.name!r}")
            env[ref.name] = self._checked(ref.name, inputs[ref.name], ref.shape)
        initial = self.init_state() if state is None else dict(state)
        for binding in self.graph.recurrent_inputs:
            if binding.name not in initial:
                raise KeyError(f"State missing recurrent input {binding.name!r}")
            env[binding.tensor.name] = self._checked(binding.name, initial[binding.name], binding.tensor.shape)

        self._emit({"event": "rollout_start", "nodes": len(self.graph)})
        last_step: Optional[int] = None
        for node in self.graph:
            if last_step is not None and node.step != last_step:
                self._emit({"event": "step_end", "step": last_step})
            args = [env[ref.name] for ref in node.inputs]
            results = self._kernels[node.kind](node, args)
            if len(results) != len(node.outputs):
                raise RuntimeError(f"Kernel for {node.name} produced {len(results)} outputs")
            for ref, value in zip(node.outputs, results):
                env[ref.name] = value
            self._emit(
                {
                    "event": "node_eval",
                    "node": node.name,
                    "kind": node.kind.value,
                    "step": node.step,
                    "shapes": [tuple(value.shape) for value in results],
                }
            )
            last_step = node.step
        if last_step is not None:
            self._emit({"event": "step_end", "step": last_step})
        self._emit({"event": "rollout_end", "nodes": len(self.graph)})

        outputs = {ref.name: env[ref.name] for ref in self.graph.outputs}
        for binding in self.graph.recurrent_outputs:
            outputs[binding.name] = env[binding.tensor.name]
        return outputs

    def _checked(self, name: str, tensor: torch.Tensor, shape: Tuple[int, ...]) -> torch.Tensor:
        if tuple(tensor.shape) != tuple(shape):
            raise ValueError(f"{name!r} expects shape {tuple(shape)}, got {tuple(tensor.shape)}")
        return tensor.to(self.dtype)

    # --- Kernels ---

    def _slice(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        return torch.split(args[0], 1, dim=int(node.attrs["axis"]))

    def _linear(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        flat = args[0].flatten(start_dim=int(node.attrs["axis"]))
        weight = self.params[node.param_groups[0]]
        bias = self.params[node.param_groups[1]] if node.attrs["bias_term"] else None
        return (F.linear(flat, weight, bias),)

    def _eltwise_sum(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        if node.attrs["coeff_blob"]:
            coeff, operands = args[-1], args[:-1]
            total = torch.zeros_like(operands[0])
            for operand in operands:
                scale = coeff.reshape(*coeff.shape, *([1] * (operand.dim() - coeff.dim())))
                total = total + scale * operand
            return (total,)
        return (torch.stack(args, dim=0).sum(dim=0),)

    def _scale(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        x, scale = args
        expand_axis = node.attrs.get("expand_axis")
        if expand_axis is not None:
            scale = scale.unsqueeze(int(expand_axis))
        return (x * scale,)

    def _softmax(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        return (F.softmax(args[0], dim=int(node.attrs["axis"])),)

    def _reshape(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        return (args[0].reshape(tuple(node.attrs["shape"])),)

    def _concat(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        return (torch.cat(args, dim=int(node.attrs["axis"])),)

    def _split(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        return tuple(args[0] for _ in node.outputs)

    def _cell_update(self, node: Node, args: List[torch.Tensor]) -> Sequence[torch.Tensor]:
        c_prev, gates, cont = args
        return lstm_unit(c_prev, gates, cont)
