import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import alstm  # noqa: E402
from alstm import ops, stages  # noqa: E402


def _config(**overrides) -> alstm.ALSTMConfig:
    kwargs = {
        "num_output": 4,
        "timesteps": 3,
        "batch_size": 2,
        "attention_side": 3,
        "weight_filler": alstm.FillerSpec(type="gaussian", std=0.5),
        "bias_filler": alstm.FillerSpec(type="uniform", min=-0.1, max=0.1),
    }
    kwargs.update(overrides)
    return alstm.ALSTMConfig(**kwargs)


def _inputs(cfg: alstm.ALSTMConfig, cont_value: float = 1.0):
    T, N = cfg.timesteps, cfg.batch_size
    inputs = {
        "x": torch.randn(T, N, *cfg.feature_shape),
        "cont": torch.full((T, N), cont_value),
    }
    if cfg.static_input:
        inputs["x_static"] = torch.randn(N, cfg.static_input_dim)
    return inputs


def test_lstm_unit_matches_gate_equations():
    torch.manual_seed(0)
    c_prev = torch.randn(1, 2, 4)
    gates = torch.randn(1, 2, 16)
    cont = torch.tensor([[1.0, 0.0]])
    c, h = alstm.lstm_unit(c_prev, gates, cont)

    i, f, o, g = gates.split(4, dim=-1)
    expected_c = cont.unsqueeze(-1) * torch.sigmoid(f) * c_prev + torch.sigmoid(i) * torch.tanh(g)
    torch.testing.assert_close(c, expected_c)
    torch.testing.assert_close(h, torch.sigmoid(o) * torch.tanh(expected_c))


def test_lstm_unit_boundary_drops_previous_cell():
    torch.manual_seed(1)
    gates = torch.randn(1, 3, 8)
    cont = torch.zeros(1, 3)
    c_a, h_a = alstm.lstm_unit(torch.randn(1, 3, 2), gates, cont)
    c_b, h_b = alstm.lstm_unit(torch.randn(1, 3, 2), gates, cont)
    i, _, _, g = gates.split(2, dim=-1)
    torch.testing.assert_close(c_a, torch.sigmoid(i) * torch.tanh(g))
    torch.testing.assert_close(c_a, c_b)
    torch.testing.assert_close(h_a, h_b)


def test_rollout_shapes_and_normalized_masks():
    torch.manual_seed(2)
    cfg = _config()
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    out = executor(_inputs(cfg))

    assert set(out) == {"h", "mask", "h_T", "c_T"}
    assert out["h"].shape == (3, 2, 4)
    assert out["mask"].shape == (3, 2, 3, 3)
    torch.testing.assert_close(out["mask"].sum(dim=(-2, -1)), torch.ones(3, 2))
    torch.testing.assert_close(out["h"][-1:], out["h_T"])
    assert out["c_T"].shape == (1, 2, 4)


def test_shared_groups_bind_one_parameter():
    cfg = _config(timesteps=5)
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    names = sorted(name for name, _ in executor.named_parameters())
    assert names == sorted(
        f"params.{group}"
        for group in (
            stages.ATTENTION_WEIGHTS,
            stages.ATTENTION_BIAS,
            stages.INPUT_WEIGHTS,
            stages.INPUT_BIAS,
            stages.RECURRENT_WEIGHTS,
        )
    )
    assert executor.parameter(stages.RECURRENT_WEIGHTS).shape == (16, 4)
    assert executor.parameter(stages.ATTENTION_WEIGHTS).shape == (9, 4)
    assert executor.parameter(stages.INPUT_WEIGHTS).shape == (16, 9)

    untied = alstm.ReferenceExecutor(
        alstm.build_unrolled_graph(_config(timesteps=5, tie_input_weights=False))
    )
    assert len(list(untied.parameters())) == 3 + 2 * 5


def test_boundary_at_every_step_ignores_initial_cell_state():
    torch.manual_seed(3)
    cfg = _config()
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    inputs = _inputs(cfg, cont_value=0.0)
    h_0 = torch.randn(1, 2, 4)

    first = executor(inputs, {"h_0": h_0, "c_0": torch.randn(1, 2, 4)})
    second = executor(inputs, {"h_0": h_0, "c_0": torch.randn(1, 2, 4)})
    for key in ("h", "mask", "h_T", "c_T"):
        torch.testing.assert_close(first[key], second[key])


def test_truncated_windows_chain_through_exported_state():
    torch.manual_seed(4)
    full_cfg = _config(timesteps=4)
    window_cfg = _config(timesteps=2)
    full = alstm.ReferenceExecutor(alstm.build_unrolled_graph(full_cfg))
    window = alstm.ReferenceExecutor(alstm.build_unrolled_graph(window_cfg))
    window.load_state_dict(full.state_dict())

    inputs = _inputs(full_cfg)
    expected = full(inputs)

    state = window.init_state()
    hiddens = []
    for start in (0, 2):
        chunk = {key: value[start : start + 2] for key, value in inputs.items()}
        out = window(chunk, state)
        hiddens.append(out["h"])
        state = {"h_0": out["h_T"], "c_0": out["c_T"]}

    torch.testing.assert_close(torch.cat(hiddens, dim=0), expected["h"])
    torch.testing.assert_close(state["c_0"], expected["c_T"])


def test_static_input_changes_every_step():
    torch.manual_seed(5)
    cfg = _config(static_input=True, static_input_dim=6)
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    inputs = _inputs(cfg)
    base = executor(inputs)
    shifted = executor({**inputs, "x_static": inputs["x_static"] + 1.0})
    per_step_delta = (base["h"] - shifted["h"]).abs().flatten(start_dim=1).sum(dim=1)
    assert torch.all(per_step_delta > 0)


def test_channels_rollout():
    torch.manual_seed(6)
    cfg = _config(input_channels=2, collect_attention_masks=False)
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    out = executor(_inputs(cfg))
    assert set(out) == {"h", "h_T", "c_T"}
    assert executor.parameter(stages.INPUT_WEIGHTS).shape == (16, 18)


def test_gradients_reach_every_parameter_group():
    torch.manual_seed(7)
    cfg = _config()
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    out = executor(_inputs(cfg), {"h_0": torch.randn(1, 2, 4), "c_0": torch.randn(1, 2, 4)})
    out["h"].sum().backward()
    assert all(param.grad is not None for param in executor.parameters())


def test_input_validation():
    cfg = _config()
    executor = alstm.ReferenceExecutor(alstm.build_unrolled_graph(cfg))
    inputs = _inputs(cfg)
    with pytest.raises(KeyError):
        executor({"x": inputs["x"]})
    with pytest.raises(ValueError):
        executor({**inputs, "cont": torch.ones(2, 2)})
    with pytest.raises(KeyError):
        executor(inputs, {"h_0": torch.zeros(1, 2, 4)})


def test_conflicting_shared_group_is_rejected():
    arena = alstm.GraphArena()
    a = arena.declare_input("a", (1, 2, 3))
    filler = alstm.FillerSpec()
    for name, width in (("p", 4), ("q", 5)):
        arena.add(
            ops.linear_projection(
                arena.next_id(),
                name,
                a,
                f"{name}_out",
                num_output=width,
                axis=2,
                bias_term=False,
                param_groups=("shared",),
                weight_filler=filler,
            )
        )
    graph = arena.freeze()
    with pytest.raises(ValueError, match="shared"):
        alstm.ReferenceExecutor(graph)
    assert any("conflicting shapes" in issue for issue in alstm.wiring_issues(graph))


def test_apply_filler_variants():
    torch.manual_seed(8)
    weight = torch.empty(16, 9)
    alstm.apply_filler(weight, alstm.FillerSpec(type="constant", value=0.25))
    assert torch.all(weight == 0.25)
    alstm.apply_filler(weight, alstm.FillerSpec(type="xavier"))
    assert weight.abs().max() <= (3.0 / 9) ** 0.5
    alstm.apply_filler(weight, alstm.FillerSpec(type="uniform", min=-0.01, max=0.01))
    assert weight.abs().max() <= 0.01


def test_gaussian_fillers_follow_fan_in():
    torch.manual_seed(9)
    weight = torch.empty(400, 50)
    alstm.apply_filler(weight, alstm.FillerSpec(type="msra"))
    expected_std = (2.0 / 50) ** 0.5
    assert abs(weight.mean().item()) < 0.01
    assert abs(weight.std().item() - expected_std) < 0.05 * expected_std

    alstm.apply_filler(weight, alstm.FillerSpec(type="gaussian", mean=0.5, std=0.01))
    assert abs(weight.mean().item() - 0.5) < 0.002
    assert abs(weight.std().item() - 0.01) < 0.001
