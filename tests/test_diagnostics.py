import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import alstm  # noqa: E402
from alstm import ops  # noqa: E402


def _linear(arena, name, bottom, top, num_output, group):
    return arena.add(
        ops.linear_projection(
            arena.next_id(),
            name,
            bottom,
            top,
            num_output=num_output,
            axis=2,
            bias_term=False,
            param_groups=(group,),
            weight_filler=alstm.FillerSpec(),
            step=1,
        )
    )


def test_built_graphs_are_well_formed():
    for overrides in ({}, {"static_input": True, "static_input_dim": 3}, {"tie_input_weights": False}):
        cfg = alstm.ALSTMConfig(num_output=3, timesteps=4, batch_size=2, **overrides)
        graph = alstm.build_unrolled_graph(cfg)
        assert alstm.wiring_issues(graph) == []
        alstm.assert_well_formed(graph)


def test_cell_state_with_two_readers_is_reported():
    arena = alstm.GraphArena()
    c_0 = arena.declare_recurrent_input("c_0", (1, 2, 3))
    gates = arena.declare_input("gates", (1, 2, 12))
    cont = arena.declare_input("cont_1", (1, 2))
    unit = arena.add(
        ops.recurrent_cell_update(arena.next_id(), "unit_1", c_0, gates, cont, "c_1", "h_1", step=1)
    )
    c_1 = unit.outputs[0]
    arena.add(ops.state_split(arena.next_id(), "copy_a", c_1, ["c_a"]))
    arena.add(ops.state_split(arena.next_id(), "copy_b", c_1, ["c_b"]))
    graph = arena.freeze()

    issues = alstm.wiring_issues(graph)
    assert any("has 2 consumers" in issue for issue in issues)
    with pytest.raises(alstm.GraphStructureError) as excinfo:
        alstm.assert_well_formed(graph)
    assert excinfo.value.issues == issues


def test_conflicting_parameter_group_is_reported():
    arena = alstm.GraphArena()
    a = arena.declare_input("a", (1, 2, 3))
    _linear(arena, "p", a, "p_out", 4, "shared")
    _linear(arena, "q", a, "q_out", 5, "shared")
    issues = alstm.wiring_issues(arena.freeze())
    assert issues == ["parameter group 'shared' bound with conflicting shapes by p, q"]


def test_initial_state_consumed_late_is_reported():
    arena = alstm.GraphArena()
    h_0 = arena.declare_recurrent_input("h_0", (1, 2, 3))
    arena.add(ops.softmax(arena.next_id(), "late", h_0, "p", step=2))
    issues = alstm.wiring_issues(arena.freeze())
    assert issues == ["late: step 2 consumes initial state 'h_0'"]


def test_non_recurrent_cross_step_edge_is_reported():
    arena = alstm.GraphArena()
    a = arena.declare_input("a", (1, 2, 3))
    first = arena.add(ops.softmax(arena.next_id(), "first", a, "p", step=1))
    arena.add(ops.softmax(arena.next_id(), "second", first.outputs[0], "q", step=2))
    issues = alstm.wiring_issues(arena.freeze())
    assert issues == ["second: step 2 consumes 'p' from step 1"]


def test_summary_counts_and_text():
    cfg = alstm.ALSTMConfig(num_output=4, timesteps=3, batch_size=2)
    summary = alstm.summarize_graph(alstm.build_unrolled_graph(cfg))
    assert summary.nodes == 32
    assert summary.steps == 3
    assert summary.kinds["RecurrentCellUpdate"] == 3
    assert summary.stages["attention"] == 9
    assert summary.param_groups["recurrent-weights"] == 3
    assert summary.outputs == ["h", "mask"]
    assert summary.recurrent_outputs == {"h_T": "h_3", "c_T": "c_T"}

    text = summary.to_text(top_k=1)
    assert text.startswith("Graph 'alstm': 32 nodes")
    assert text.count("bound by") == 1
    assert "Recurrent outputs: h_T<-h_3, c_T<-c_T" in text
