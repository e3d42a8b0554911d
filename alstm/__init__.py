# alstm/__init__.py

from .core import (
    Graph,
    GraphArena,
    Node,
    NodeId,
    OpKind,
    Stage,
    StateBinding,
    TensorRef,
)
from .config import ALSTMConfig, ConfigurationError, FillerSpec
from .builder import UnrolledALSTMBuilder, build_unrolled_graph
from .diagnostics import (
    GraphStructureError,
    GraphSummary,
    assert_well_formed,
    summarize_graph,
    wiring_issues,
)
from .reference import ReferenceExecutor, apply_filler, lstm_unit
from .record import record, Trace, NodeEvaluation
from . import ops
from . import stages

__all__ = [
    "Graph",
    "GraphArena",
    "Node",
    "NodeId",
    "OpKind",
    "Stage",
    "StateBinding",
    "TensorRef",
    "ALSTMConfig",
    "ConfigurationError",
    "FillerSpec",
    "UnrolledALSTMBuilder",
    "build_unrolled_graph",
    "GraphStructureError",
    "GraphSummary",
    "assert_well_formed",
    "summarize_graph",
    "wiring_issues",
    "ReferenceExecutor",
    "apply_filler",
    "lstm_unit",
    "record",
    "Trace",
    "NodeEvaluation",
    "ops",
    "stages",
]
