from ndgrad.config import Config, config, no_grad, using_config
from ndgrad.errors import ShapeError, UsageError
from ndgrad.shape import Shape, broadcast_shapes
from ndgrad.ndarray import NdArray
from ndgrad.variable import Parameter, Variable
from ndgrad.function import Function
from ndgrad import functional
from ndgrad.graph import topological_order
from ndgrad.nn import Module, ModuleList

__all__ = [
    "Config",
    "config",
    "no_grad",
    "using_config",
    "ShapeError",
    "UsageError",
    "Shape",
    "broadcast_shapes",
    "NdArray",
    "Parameter",
    "Variable",
    "Function",
    "functional",
    "topological_order",
    "Module",
    "ModuleList",
]
