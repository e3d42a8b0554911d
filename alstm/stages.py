# alstm/stages.py
"""
Stage builders for the unrolled attention LSTM.

Each function appends the nodes of one stage to a GraphArena and returns the
TensorRefs the next stage consumes. Per-step node and tensor names carry the
timestep index so every repetition is unique; parameter groups that must be
shared across steps are named without it.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from . import ops
from .config import ALSTMConfig
from .core import GraphArena, Stage, TensorRef

ATTENTION_WEIGHTS = "attention-projection-weights"
ATTENTION_BIAS = "attention-projection-bias"
INPUT_WEIGHTS = "input-projection-weights"
INPUT_BIAS = "input-projection-bias"
RECURRENT_WEIGHTS = "recurrent-weights"
STATIC_WEIGHTS = "static-input-weights"

# Per-step tensors are [1, N, ...]; projections flatten from the feature axis.
FEATURE_AXIS = 2


def input_param_groups(config: ALSTMConfig, t: int) -> Tuple[str, str]:
    """Parameter groups of the input projection at step t."""
    if config.tie_input_weights:
        return (INPUT_WEIGHTS, INPUT_BIAS)
    return (f"{INPUT_WEIGHTS}-{t}", f"{INPUT_BIAS}-{t}")


def add_sequence_slicers(
    arena: GraphArena,
    config: ALSTMConfig,
    cont: TensorRef,
    x: TensorRef,
) -> Tuple[List[TensorRef], List[TensorRef]]:
    """
    Split cont [T, N] and x [T, N, ...] into per-step tensors cont_t / x_t.
    """
    steps = range(1, config.timesteps + 1)
    cont_slice = arena.add(
        ops.slice_op(arena.next_id(), "cont_slice", cont, [f"cont_{t}" for t in steps], stage=Stage.SLICER)
    )
    x_slice = arena.add(
        ops.slice_op(arena.next_id(), "x_slice", x, [f"x_{t}" for t in steps], stage=Stage.SLICER)
    )
    return list(cont_slice.outputs), list(x_slice.outputs)


def add_static_projection(
    arena: GraphArena,
    config: ALSTMConfig,
    x_static: TensorRef,
) -> TensorRef:
    """
    Project x_static [N, D] to the gate dimension once, shaped as a single
    timestep so it can join every step's gate sum:
        W_xc_x_static = W_xc_static * x_static
    """
    transform = arena.add(
        ops.linear_projection(
            arena.next_id(),
            "W_xc_x_static",
            x_static,
            "W_xc_x_static",
            num_output=config.gate_width,
            axis=1,
            bias_term=False,
            param_groups=(STATIC_WEIGHTS,),
            weight_filler=config.weight_filler,
            stage=Stage.STATIC_INPUT,
        )
    )
    reshaped = arena.add(
        ops.reshape(
            arena.next_id(),
            "W_xc_x_static_reshape",
            transform.outputs[0],
            "W_xc_x_static_reshaped",
            shape=(1, config.batch_size, config.gate_width),
            stage=Stage.STATIC_INPUT,
        )
    )
    return reshaped.outputs[0]


def add_attention(
    arena: GraphArena,
    config: ALSTMConfig,
    t: int,
    h_prev: TensorRef,
) -> TensorRef:
    """
    Attention mask for step t from h_{t-1}:
        m_{t-1}    := W_att * h_{t-1} + b_att
        mask_{t-1} := softmax(m_{t-1})
        reshaped to [1, N, S, S]
    """
    tm1 = t - 1
    logits = arena.add(
        ops.linear_projection(
            arena.next_id(),
            f"att_m_{tm1}",
            h_prev,
            f"m_{tm1}",
            num_output=config.attention_width,
            axis=FEATURE_AXIS,
            bias_term=True,
            param_groups=(ATTENTION_WEIGHTS, ATTENTION_BIAS),
            weight_filler=config.weight_filler,
            bias_filler=config.bias_filler,
            stage=Stage.ATTENTION,
            step=t,
        )
    )
    normalized = arena.add(
        ops.softmax(
            arena.next_id(),
            f"softmax_m_{tm1}",
            logits.outputs[0],
            f"mask_{tm1}",
            axis=-1,
            stage=Stage.ATTENTION,
            step=t,
        )
    )
    side = config.attention_side
    reshaped = arena.add(
        ops.reshape(
            arena.next_id(),
            f"mask_reshape_{tm1}",
            normalized.outputs[0],
            f"mask_reshape_{tm1}",
            shape=(1, config.batch_size, side, side),
            stage=Stage.ATTENTION,
            step=t,
        )
    )
    return reshaped.outputs[0]


def add_masking(
    arena: GraphArena,
    t: int,
    x_t: TensorRef,
    mask: TensorRef,
) -> TensorRef:
    # The mask from h_{t-1} gates the input of step t.
    node = arena.add(
        ops.elementwise_scale(
            arena.next_id(),
            f"scale_x_{t - 1}",
            x_t,
            mask,
            f"x_mask_{t}",
            stage=Stage.MASKING,
            step=t,
        )
    )
    return node.outputs[0]


def add_input_projection(
    arena: GraphArena,
    config: ALSTMConfig,
    t: int,
    x_masked: TensorRef,
) -> TensorRef:
    """W_xc_x_t := W_xc * x_mask_t + b_c"""
    node = arena.add(
        ops.linear_projection(
            arena.next_id(),
            f"x_transform_{t}",
            x_masked,
            f"W_xc_x_{t}",
            num_output=config.gate_width,
            axis=FEATURE_AXIS,
            bias_term=True,
            param_groups=input_param_groups(config, t),
            weight_filler=config.weight_filler,
            bias_filler=config.bias_filler,
            stage=Stage.INPUT_PROJECTION,
            step=t,
        )
    )
    return node.outputs[0]


def add_continuation_gate(
    arena: GraphArena,
    t: int,
    h_prev: TensorRef,
    cont_t: TensorRef,
) -> TensorRef:
    """
    Flush the hidden state at sequence boundaries:
        h_conted_{t-1} := cont_t * h_{t-1}
    """
    tm1 = t - 1
    node = arena.add(
        ops.elementwise_sum(
            arena.next_id(),
            f"h_conted_{tm1}",
            [h_prev, cont_t],
            f"h_conted_{tm1}",
            coeff_blob=True,
            stage=Stage.CONTINUATION_GATE,
            step=t,
        )
    )
    return node.outputs[0]


def add_recurrent_projection(
    arena: GraphArena,
    config: ALSTMConfig,
    t: int,
    h_conted: TensorRef,
    *,
    axis: int = FEATURE_AXIS,
) -> TensorRef:
    """W_hc_h_{t-1} := W_hc * h_conted_{t-1}"""
    node = arena.add(
        ops.linear_projection(
            arena.next_id(),
            f"transform_{t}",
            h_conted,
            f"W_hc_h_{t - 1}",
            num_output=config.gate_width,
            axis=axis,
            bias_term=False,
            param_groups=(RECURRENT_WEIGHTS,),
            weight_filler=config.weight_filler,
            stage=Stage.RECURRENT_PROJECTION,
            step=t,
        )
    )
    return node.outputs[0]


def add_gate_sum(
    arena: GraphArena,
    t: int,
    recurrent_term: TensorRef,
    input_term: TensorRef,
    static_term: Optional[TensorRef] = None,
) -> TensorRef:
    """gate_input_t := W_hc_h_{t-1} + W_xc_x_t [+ W_xc_x_static]"""
    bottoms = [recurrent_term, input_term]
    if static_term is not None:
        bottoms.append(static_term)
    node = arena.add(
        ops.elementwise_sum(
            arena.next_id(),
            f"gate_input_{t}",
            bottoms,
            f"gate_input_{t}",
            stage=Stage.GATE_SUM,
            step=t,
        )
    )
    return node.outputs[0]


def add_cell_update(
    arena: GraphArena,
    t: int,
    c_prev: TensorRef,
    gate_input: TensorRef,
    cont_t: TensorRef,
) -> Tuple[TensorRef, TensorRef]:
    node = arena.add(
        ops.recurrent_cell_update(
            arena.next_id(),
            f"unit_{t}",
            c_prev,
            gate_input,
            cont_t,
            f"c_{t}",
            f"h_{t}",
            stage=Stage.CELL_UPDATE,
            step=t,
        )
    )
    c_t, h_t = node.outputs
    return c_t, h_t


def add_output_collector(
    arena: GraphArena,
    hiddens: Sequence[TensorRef],
    masks: Sequence[TensorRef] = (),
) -> List[TensorRef]:
    """
    Concatenate per-step hidden states (and masks, when given) along the
    timestep axis. Returns one tensor per collected output.
    """
    collected = [
        arena.add(
            ops.concat(arena.next_id(), "h_concat", hiddens, "h", axis=0, stage=Stage.COLLECTOR)
        ).outputs[0]
    ]
    if masks:
        collected.append(
            arena.add(
                ops.concat(arena.next_id(), "mask_concat", masks, "mask", axis=0, stage=Stage.COLLECTOR)
            ).outputs[0]
        )
    for ref in collected:
        arena.mark_output(ref)
    return collected


def add_state_export(arena: GraphArena, c_last: TensorRef) -> TensorRef:
    """Copy the final cell state into c_T for the next truncated window."""
    node = arena.add(
        ops.state_split(
            arena.next_id(),
            "c_T_copy",
            c_last,
            ["c_T"],
            stage=Stage.STATE_EXPORT,
        )
    )
    return node.outputs[0]
