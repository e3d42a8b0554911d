# alstm/config.py

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

FILLER_TYPES = ("constant", "uniform", "gaussian", "xavier", "msra")


class ConfigurationError(ValueError):
    """Raised when an unrolling configuration cannot produce a graph."""


@dataclass(frozen=True)
class FillerSpec:
    """
    Initialization recipe for a newly introduced parameter.

    The builder never interprets it; it is forwarded verbatim onto the
    attributes of every parameterized node.
    """

    type: str = "constant"
    value: float = 0.0
    min: float = 0.0
    max: float = 1.0
    mean: float = 0.0
    std: float = 1.0

    def __post_init__(self) -> None:
        if self.type not in FILLER_TYPES:
            raise ConfigurationError(
                f"Unsupported filler type {self.type!r}; expected one of {', '.join(FILLER_TYPES)}"
            )
        if self.type == "uniform" and self.min > self.max:
            raise ConfigurationError("uniform filler requires min <= max")
        if self.type == "gaussian" and self.std < 0:
            raise ConfigurationError("gaussian filler requires std >= 0")

    @classmethod
    def coerce(cls, value: Union["FillerSpec", Mapping[str, Any], str]) -> "FillerSpec":
        if isinstance(value, FillerSpec):
            return value
        if isinstance(value, str):
            return cls(type=value)
        if isinstance(value, Mapping):
            known = {f.name for f in dataclasses.fields(cls)}
            unknown = sorted(set(value) - known)
            if unknown:
                raise ConfigurationError(f"Unknown filler keys: {', '.join(unknown)}")
            return cls(**dict(value))
        raise ConfigurationError(f"Cannot build a FillerSpec from {type(value).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _default_weight_filler() -> FillerSpec:
    return FillerSpec(type="uniform", min=-0.08, max=0.08)


@dataclass(frozen=True)
class ALSTMConfig:
    """
    Construction-time configuration of an unrolled attention LSTM.

    Semantics:
      - num_output: hidden/cell width H; gate pre-activations are 4*H wide.
      - timesteps: number of unrolled steps T.
      - batch_size: N, used to shape the recurrent-state bindings.
      - attention_side: S; attention logits are S*S wide and reshaped to SxS.
      - input_channels: optional C; per-step features are [1, N, C, S, S]
        when set and [1, N, S, S] otherwise.
      - static_input / static_input_dim: add a projection of x_static [N, D]
        to every step's gate pre-activation.
      - tie_input_weights: share the input projection across timesteps.
      - collect_attention_masks: also emit the concatenated mask sequence.
    """

    num_output: int
    timesteps: int
    batch_size: int
    attention_side: int = 6
    input_channels: Optional[int] = None
    static_input: bool = False
    static_input_dim: Optional[int] = None
    tie_input_weights: bool = True
    collect_attention_masks: bool = True
    weight_filler: FillerSpec = field(default_factory=_default_weight_filler)
    bias_filler: FillerSpec = field(default_factory=FillerSpec)

    def __post_init__(self) -> None:
        object.__setattr__(self, "weight_filler", FillerSpec.coerce(self.weight_filler))
        object.__setattr__(self, "bias_filler", FillerSpec.coerce(self.bias_filler))
        self.validate()

    def validate(self) -> None:
        for key in ("num_output", "timesteps", "batch_size", "attention_side", "input_channels", "static_input_dim"):
            value = getattr(self, key)
            if value is None and key in ("input_channels", "static_input_dim"):
                continue
            # bool is an int subclass.
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{key} must be an integer, got {value!r}")
        if self.num_output <= 0:
            raise ConfigurationError(f"num_output must be positive, got {self.num_output}")
        if self.timesteps <= 0:
            raise ConfigurationError(f"timesteps must be positive, got {self.timesteps}")
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.attention_side <= 0:
            raise ConfigurationError(f"attention_side must be positive, got {self.attention_side}")
        if self.input_channels is not None and self.input_channels <= 0:
            raise ConfigurationError("input_channels must be positive when provided")
        if self.static_input:
            if self.static_input_dim is None or self.static_input_dim <= 0:
                raise ConfigurationError("static_input requires a positive static_input_dim")
        elif self.static_input_dim is not None:
            raise ConfigurationError("static_input_dim given but static_input is disabled")

    # --- Derived shapes ---

    @property
    def gate_width(self) -> int:
        return 4 * self.num_output

    @property
    def attention_width(self) -> int:
        return self.attention_side * self.attention_side

    @property
    def feature_shape(self) -> Tuple[int, ...]:
        side = self.attention_side
        if self.input_channels is None:
            return (side, side)
        return (self.input_channels, side, side)

    @property
    def state_shape(self) -> Tuple[int, int, int]:
        return (1, self.batch_size, self.num_output)

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Any]) -> "ALSTMConfig":
        """
        Build a config from a plain dict, e.g. a demo CONFIG block.
        """
        required = ("num_output", "timesteps", "batch_size")
        missing = [key for key in required if key not in cfg]
        if missing:
            raise ConfigurationError(f"Config missing required keys: {', '.join(missing)}")
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(cfg) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")
        kwargs = dict(cfg)
        for key in ("weight_filler", "bias_filler"):
            if key in kwargs:
                kwargs[key] = FillerSpec.coerce(kwargs[key])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)
