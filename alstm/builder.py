# alstm/builder.py

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Union

from . import stages
from .config import ALSTMConfig
from .core import Graph, GraphArena, TensorRef

log = logging.getLogger(__name__)

ConfigLike = Union[ALSTMConfig, Mapping[str, Any]]


class UnrolledALSTMBuilder:
    """
    Unrolls an attention LSTM over `timesteps` steps into a Graph.

    Responsibilities:
      - Declare the external inputs (x, cont, optional x_static) and the
        recurrent-state bindings (h_0, c_0 in; h_T, c_T out).
      - Drive the stage builders once per step, threading h and c.
      - Collect the per-step hidden states and attention masks.

    The builder holds no state between calls: every build() returns an
    independent Graph.
    """

    def __init__(self, config: ConfigLike, name: str = "alstm") -> None:
        if not isinstance(config, ALSTMConfig):
            config = ALSTMConfig.from_mapping(config)
        self.config = config
        self.name = name

    def build(self) -> Graph:
        cfg = self.config
        log.debug(
            "Unrolling %s: T=%d N=%d num_output=%d S=%d static_input=%s tied_input=%s",
            self.name,
            cfg.timesteps,
            cfg.batch_size,
            cfg.num_output,
            cfg.attention_side,
            cfg.static_input,
            cfg.tie_input_weights,
        )
        arena = GraphArena(name=self.name)

        x = arena.declare_input("x", (cfg.timesteps, cfg.batch_size) + cfg.feature_shape)
        cont = arena.declare_input("cont", (cfg.timesteps, cfg.batch_size))
        x_static: Optional[TensorRef] = None
        if cfg.static_input:
            assert cfg.static_input_dim is not None
            x_static = arena.declare_input("x_static", (cfg.batch_size, cfg.static_input_dim))

        h_prev = arena.declare_recurrent_input("h_0", cfg.state_shape)
        c_prev = arena.declare_recurrent_input("c_0", cfg.state_shape)

        cont_steps, x_steps = stages.add_sequence_slicers(arena, cfg, cont, x)
        static_term = None
        if x_static is not None:
            static_term = stages.add_static_projection(arena, cfg, x_static)

        hiddens: List[TensorRef] = []
        masks: List[TensorRef] = []
        for t in range(1, cfg.timesteps + 1):
            cont_t = cont_steps[t - 1]
            mask = stages.add_attention(arena, cfg, t, h_prev)
            x_masked = stages.add_masking(arena, t, x_steps[t - 1], mask)
            input_term = stages.add_input_projection(arena, cfg, t, x_masked)
            h_conted = stages.add_continuation_gate(arena, t, h_prev, cont_t)
            recurrent_term = stages.add_recurrent_projection(arena, cfg, t, h_conted)
            gate_input = stages.add_gate_sum(arena, t, recurrent_term, input_term, static_term)
            c_prev, h_prev = stages.add_cell_update(arena, t, c_prev, gate_input, cont_t)
            hiddens.append(h_prev)
            masks.append(mask)

        stages.add_output_collector(
            arena,
            hiddens,
            masks if cfg.collect_attention_masks else (),
        )
        c_final = stages.add_state_export(arena, c_prev)
        arena.bind_recurrent_output("h_T", h_prev)
        arena.bind_recurrent_output("c_T", c_final)

        graph = arena.freeze()
        log.debug(
            "Unrolled %s into %d nodes (%d parameter groups)",
            self.name,
            len(graph),
            len(graph.param_group_usage()),
        )
        return graph


def build_unrolled_graph(config: ConfigLike, name: str = "alstm") -> Graph:
    """Convenience wrapper: UnrolledALSTMBuilder(config, name).build()."""
    return UnrolledALSTMBuilder(config, name=name).build()
