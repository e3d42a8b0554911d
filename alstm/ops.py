# alstm/ops.py

from __future__ import annotations

import math
from typing import Any, Dict, Optional, Sequence, Tuple

from .config import FillerSpec
from .core import Node, NodeId, OpKind, Shape, Stage, TensorRef


def _tops(node_id: NodeId, names: Sequence[str], shapes: Sequence[Shape]) -> Tuple[TensorRef, ...]:
    return tuple(
        TensorRef(name=name, shape=tuple(shape), producer=node_id)
        for name, shape in zip(names, shapes)
    )


def _check_axis(axis: int, shape: Shape, what: str) -> int:
    if axis < 0:
        axis += len(shape)
    if not 0 <= axis < len(shape):
        raise ValueError(f"{what}: axis {axis} out of range for shape {shape}")
    return axis


def slice_op(
    node_id: NodeId,
    name: str,
    bottom: TensorRef,
    tops: Sequence[str],
    *,
    axis: int = 0,
    stage: Optional[Stage] = None,
) -> Node:
    """
    Split `bottom` into len(tops) unit-width pieces along `axis`.
    """
    axis = _check_axis(axis, bottom.shape, name)
    if bottom.shape[axis] != len(tops):
        raise ValueError(
            f"{name}: cannot slice axis {axis} of size {bottom.shape[axis]} into {len(tops)} pieces"
        )
    piece = bottom.shape[:axis] + (1,) + bottom.shape[axis + 1 :]
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.SLICE,
        inputs=(bottom,),
        outputs=_tops(node_id, tops, [piece] * len(tops)),
        attrs={"axis": axis},
        stage=stage,
    )


def linear_projection(
    node_id: NodeId,
    name: str,
    bottom: TensorRef,
    top: str,
    *,
    num_output: int,
    axis: int,
    bias_term: bool,
    param_groups: Sequence[str],
    weight_filler: FillerSpec,
    bias_filler: Optional[FillerSpec] = None,
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    """
    Inner product over the dims from `axis` onwards:
        top = W * flatten(bottom, axis) [+ b]
    """
    axis = _check_axis(axis, bottom.shape, name)
    expected_groups = 2 if bias_term else 1
    if len(param_groups) != expected_groups:
        raise ValueError(f"{name}: expected {expected_groups} parameter groups, got {len(param_groups)}")
    if bias_term and bias_filler is None:
        raise ValueError(f"{name}: a biased projection needs a bias filler")
    attrs: Dict[str, Any] = {
        "num_output": int(num_output),
        "axis": axis,
        "bias_term": bool(bias_term),
        "input_width": math.prod(bottom.shape[axis:]),
        "weight_filler": weight_filler,
    }
    if bias_term:
        attrs["bias_filler"] = bias_filler
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.LINEAR_PROJECTION,
        inputs=(bottom,),
        outputs=_tops(node_id, [top], [bottom.shape[:axis] + (int(num_output),)]),
        param_groups=tuple(param_groups),
        attrs=attrs,
        stage=stage,
        step=step,
    )


def elementwise_sum(
    node_id: NodeId,
    name: str,
    bottoms: Sequence[TensorRef],
    top: str,
    *,
    coeff_blob: bool = False,
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    """
    Elementwise sum of `bottoms`.

    With coeff_blob the last bottom is a per-(step, batch) coefficient that
    scales every other operand: top = sum_i coeff * bottom_i.
    """
    operands = list(bottoms[:-1]) if coeff_blob else list(bottoms)
    if not operands:
        raise ValueError(f"{name}: nothing to sum")
    shape = operands[0].shape
    for ref in operands[1:]:
        if ref.shape != shape:
            raise ValueError(f"{name}: operand {ref.name!r} has shape {ref.shape}, expected {shape}")
    if coeff_blob:
        coeff = bottoms[-1]
        if shape[: len(coeff.shape)] != coeff.shape:
            raise ValueError(f"{name}: coefficient shape {coeff.shape} does not prefix {shape}")
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.ELEMENTWISE_SUM,
        inputs=tuple(bottoms),
        outputs=_tops(node_id, [top], [shape]),
        attrs={"operation": "sum", "coeff_blob": bool(coeff_blob)},
        stage=stage,
        step=step,
    )


def elementwise_scale(
    node_id: NodeId,
    name: str,
    bottom: TensorRef,
    scale: TensorRef,
    top: str,
    *,
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    """
    Multiply `bottom` by `scale`. When `bottom` has one more axis than
    `scale` (a channel axis), the scale is broadcast over axis 2.
    """
    expand_axis: Optional[int] = None
    if len(bottom.shape) == len(scale.shape) + 1:
        expand_axis = 2
        aligned = scale.shape[:2] + (bottom.shape[2],) + scale.shape[2:]
    else:
        aligned = scale.shape
    if aligned != bottom.shape:
        raise ValueError(f"{name}: scale shape {scale.shape} does not broadcast to {bottom.shape}")
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.ELEMENTWISE_SCALE,
        inputs=(bottom, scale),
        outputs=_tops(node_id, [top], [bottom.shape]),
        attrs={"axis": 0, "expand_axis": expand_axis},
        stage=stage,
        step=step,
    )


def softmax(
    node_id: NodeId,
    name: str,
    bottom: TensorRef,
    top: str,
    *,
    axis: int = -1,
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    axis = _check_axis(axis, bottom.shape, name)
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.SOFTMAX,
        inputs=(bottom,),
        outputs=_tops(node_id, [top], [bottom.shape]),
        attrs={"axis": axis},
        stage=stage,
        step=step,
    )


def reshape(
    node_id: NodeId,
    name: str,
    bottom: TensorRef,
    top: str,
    *,
    shape: Sequence[int],
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    target = tuple(int(dim) for dim in shape)
    if math.prod(target) != math.prod(bottom.shape):
        raise ValueError(f"{name}: cannot reshape {bottom.shape} into {target}")
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.RESHAPE,
        inputs=(bottom,),
        outputs=_tops(node_id, [top], [target]),
        attrs={"shape": target},
        stage=stage,
        step=step,
    )


def concat(
    node_id: NodeId,
    name: str,
    bottoms: Sequence[TensorRef],
    top: str,
    *,
    axis: int = 0,
    stage: Optional[Stage] = None,
) -> Node:
    if not bottoms:
        raise ValueError(f"{name}: nothing to concatenate")
    first = bottoms[0].shape
    axis = _check_axis(axis, first, name)
    total = 0
    for ref in bottoms:
        if len(ref.shape) != len(first) or ref.shape[:axis] + ref.shape[axis + 1 :] != first[:axis] + first[axis + 1 :]:
            raise ValueError(f"{name}: {ref.name!r} shape {ref.shape} incompatible with {first}")
        total += ref.shape[axis]
    out = first[:axis] + (total,) + first[axis + 1 :]
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.CONCAT,
        inputs=tuple(bottoms),
        outputs=_tops(node_id, [top], [out]),
        attrs={"axis": axis},
        stage=stage,
    )


def state_split(
    node_id: NodeId,
    name: str,
    bottom: TensorRef,
    tops: Sequence[str],
    *,
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    """Copy `bottom` unchanged into every top."""
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.STATE_SPLIT,
        inputs=(bottom,),
        outputs=_tops(node_id, tops, [bottom.shape] * len(tops)),
        stage=stage,
        step=step,
    )


def recurrent_cell_update(
    node_id: NodeId,
    name: str,
    c_prev: TensorRef,
    gate_input: TensorRef,
    cont: TensorRef,
    c_top: str,
    h_top: str,
    *,
    stage: Optional[Stage] = None,
    step: Optional[int] = None,
) -> Node:
    """
    LSTM unit: (c_{t-1}, gate_input_t, cont_t) -> (c_t, h_t).

        [i', f', o', g'] := gate_input_t
        c_t := cont_t * (sigmoid(f') .* c_{t-1}) + sigmoid(i') .* tanh(g')
        h_t := sigmoid(o') .* tanh(c_t)
    """
    width = c_prev.shape[-1]
    if gate_input.shape[:-1] != c_prev.shape[:-1] or gate_input.shape[-1] != 4 * width:
        raise ValueError(
            f"{name}: gate input {gate_input.shape} does not match 4x cell state {c_prev.shape}"
        )
    if cont.shape != c_prev.shape[:-1]:
        raise ValueError(f"{name}: continuation shape {cont.shape} does not match {c_prev.shape[:-1]}")
    return Node(
        id=node_id,
        name=name,
        kind=OpKind.RECURRENT_CELL_UPDATE,
        inputs=(c_prev, gate_input, cont),
        outputs=_tops(node_id, [c_top, h_top], [c_prev.shape, c_prev.shape]),
        attrs={"num_output": width},
        stage=stage,
        step=step,
    )
