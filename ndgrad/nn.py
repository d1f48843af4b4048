import logging
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from ndgrad.errors import ShapeError
from ndgrad.ndarray import NdArray
from ndgrad.variable import Parameter, Variable

logger = logging.getLogger(__name__)


class Module:
    """
    Base class for composable models.

    A Module owns Parameters and sub-Modules, registered simply by assigning
    them as attributes. There is no per-module backward: the forward pass is
    built from differentiable operations, and :meth:`Variable.backward` does
    the rest.

    Attributes:
        _parameters (Dict[str, Parameter]): Parameters owned directly by this module.
        _modules (Dict[str, Module]): Direct submodules.
        _states (Dict[str, Any]): Every other public attribute.

    Examples:
        >>> class Affine(Module):
        ...     def __init__(self):
        ...         super().__init__()
        ...         self.weight = Parameter(NdArray.random_normal((3, 2)), name="weight")
        ...         self.bias = Parameter(NdArray.zeros((2,)), name="bias")
        ...
        ...     def forward(self, x):
        ...         return x @ self.weight + self.bias
        >>> sorted(Affine().parameters)
        ['bias', 'weight']
    """

    def __init__(self, *args, **kwargs) -> None:
        self._parameters: Dict[str, Parameter] = {}
        self._modules: Dict[str, "Module"] = {}
        self._states: Dict[str, Any] = {}

    def forward(self, *xs: Any) -> Variable:
        """
        Perform the forward pass.

        Raises:
            NotImplementedError: If the method is not overridden by a subclass.
        """
        raise NotImplementedError

    def __call__(self, *xs: Any) -> Variable:
        return self.forward(*xs)

    def __setattr__(self, name: str, value: Any) -> None:
        """
        Register Parameters and submodules on assignment.

        Private attributes (names starting with '_') are set normally.
        """
        if name.startswith("_"):
            super().__setattr__(name, value)
            return

        if isinstance(value, Module):
            self._modules[name] = value
        elif isinstance(value, Parameter):
            self._parameters[name] = value
        else:
            self._states[name] = value
            super().__setattr__(name, value)

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails, i.e. for registered entries.
        for container in ("_parameters", "_modules", "_states"):
            entries = self.__dict__.get(container, {})
            if name in entries:
                return entries[name]
        raise AttributeError(
            f"Module {self.__class__.__name__} has no attribute {name}"
        )

    @property
    def parameters(self) -> Dict[str, Parameter]:
        """
        Flattened mapping of every Parameter in this module and its submodules.

        Keys are dotted attribute paths:

        .. code-block:: json

            {
                "weight": "Parameter",
                "encoder.weight": "Parameter"
            }
        """
        return self._get_attr_nested("_parameters")

    def state_dict(self) -> Dict[str, NdArray]:
        """
        Snapshot every parameter value.

        Returns:
            Dict[str, NdArray]: Parameter key to an independent copy of its
            value, so later training steps do not change the snapshot.
        """
        return {k: p.value.copy() for k, p in self.parameters.items()}

    def load_state_dict(self, state_dict: Mapping[str, Any]) -> None:
        """
        Restore parameter values in place.

        Values are written into each Parameter's existing buffer, so anything
        holding a reference to the Parameter (or to a view of its value) sees
        the restored data. Keys absent from ``state_dict`` keep their value.
        Every entry is validated before any parameter is modified.

        Args:
            state_dict (Mapping[str, Any]): Parameter key to NdArray (or
                anything :class:`NdArray` accepts).

        Raises:
            KeyError: If a key does not name a parameter of this module.
            ShapeError: If a value's shape differs from the parameter's.
        """
        params = self.parameters
        staged = []
        for key, value in state_dict.items():
            if key not in params:
                raise KeyError(f"Unexpected parameter {key!r} for {type(self).__name__}")
            value = value if isinstance(value, NdArray) else NdArray(value)
            if value.shape != params[key].shape:
                raise ShapeError(
                    f"Parameter {key!r} has shape {params[key].shape}, "
                    f"state dict holds {value.shape}"
                )
            staged.append((params[key], value))

        for param, value in staged:
            param.value.buffer[...] = value.buffer
        logger.debug(f"Loaded {len(staged)} parameter(s) into {type(self).__name__}")

    def zero_grad(self) -> None:
        """Clear the gradients of every parameter in this module and its submodules."""
        for p in self.parameters.values():
            p.clear_grad()

    def num_parameters(self) -> int:
        """Total number of scalar elements across all parameters."""
        return sum(p.size for p in self.parameters.values())

    def _get_attr_nested(self, attr_name: str, prefix: str = "") -> Dict[str, Any]:
        """
        Recursively collect items from the module and its submodules.

        Args:
            attr_name (str): The container to collect (e.g. "_parameters").
            prefix (str, optional): Dotted prefix for this module's keys.

        Returns:
            Dict[str, Any]: A flattened dictionary mapping full names to values.
        """
        out = {}
        for k, v in getattr(self, attr_name).items():
            out[f"{prefix}.{k}" if prefix else k] = v

        for sub_name, mod in self._modules.items():
            sub_prefix = f"{prefix}.{sub_name}" if prefix else sub_name
            out.update(mod._get_attr_nested(attr_name, prefix=sub_prefix))
        return out


class ModuleList(Module):
    """
    A list of submodules, each registered under its index.
    """

    def __init__(self, modules: Optional[Iterable[Module]] = None):
        super().__init__()
        if modules is not None:
            for module in modules:
                self.append(module)

    def append(self, module: Module) -> None:
        setattr(self, str(len(self._modules)), module)

    def __getitem__(self, idx: int) -> Module:
        return self._modules[str(idx)]

    def __len__(self) -> int:
        return len(self._modules)

    def __iter__(self) -> Iterator[Module]:
        for idx in range(len(self)):
            yield self[idx]

    def forward(self, *xs: Any) -> Variable:
        """Run the submodules in sequence, feeding each output into the next."""
        out = xs
        for module in self:
            out = (module(*out),)
        return out[0] if len(out) == 1 else out
