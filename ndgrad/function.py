import logging
from abc import abstractmethod
from typing import Any, Optional, Tuple

from ndgrad.config import config
from ndgrad.errors import UsageError
from ndgrad.ndarray import NdArray

logger = logging.getLogger(__name__)


class Function:
    """
    Base class for differentiable operations.

    Subclasses of `Function` implement `forward` and `backward` over raw
    :class:`~ndgrad.ndarray.NdArray` values. The concrete operations live in
    :mod:`ndgrad.functional`.

    A Function instance is one node of the computation graph: it is created by
    :meth:`apply`, remembers its input Variables and keeps whatever the forward
    pass cached for its backward pass.

    Attributes:
        num_inputs (int, optional): Exact number of inputs the operation takes.
            ``None`` means the arity is not checked.
        inputs (Tuple[Variable, ...]): Input Variables, in call order.
    """

    num_inputs: Optional[int] = None

    def __init__(self, *inputs: "Variable"):
        """
        Initialize a `Function` with a set of input Variables.

        Args:
            *inputs (Variable): The input Variables for this operation.
        """
        self.inputs = inputs
        self.input_shapes = tuple(v.value.shape for v in inputs)
        self._forward_done = False

    def require_input_num(self) -> Optional[int]:
        """Return the number of inputs this operation takes (None if variadic)."""
        return self.num_inputs

    @abstractmethod
    def forward(self, *xs: NdArray, **kwargs: Any) -> NdArray:
        """
        Perform the forward pass of this operation.

        Args:
            *xs (NdArray): Values of the input Variables.
            **kwargs (Any): Operation parameters such as ``axis`` or ``stride``.

        Returns:
            NdArray: The output value.
        """
        raise NotImplementedError("Forward pass not implemented for this function")

    @abstractmethod
    def backward(self, grad: NdArray) -> Tuple[NdArray, ...]:
        """
        Perform the backward pass of this operation.

        In this context:
        - "grad" is the gradient of the loss with respect to the *output* of this operation (dL/d[out]).
        - The return value holds one gradient per input (dL/d[input]), each with the shape of that input.

        Args:
            grad (NdArray): The gradient with respect to the **output** of this operation.

        Returns:
            Tuple[NdArray, ...]: The gradients with respect to the **inputs**.
        """
        raise NotImplementedError("Backward pass not implemented for this function")

    def _check_arity(self, count: int) -> None:
        expected = self.require_input_num()
        if expected is not None and count != expected:
            raise UsageError(
                f"{type(self).__name__} takes {expected} input(s), got {count}"
            )

    def run_forward(self, *xs: NdArray, **kwargs: Any) -> NdArray:
        """
        Checked entry point for :meth:`forward`.

        Raises:
            UsageError: If the number of inputs does not match ``num_inputs``.
        """
        self._check_arity(len(xs))
        out = self.forward(*xs, **kwargs)
        if not isinstance(out, NdArray):
            raise UsageError(
                f"{type(self).__name__}.forward returned {type(out).__name__}, expected NdArray"
            )
        self._forward_done = True
        return out

    def run_backward(self, grad: NdArray) -> Tuple[NdArray, ...]:
        """
        Checked entry point for :meth:`backward`.

        Returns:
            Tuple[NdArray, ...]: One gradient per input, shaped like that input.

        Raises:
            UsageError: If forward has not run yet, or the gradients returned
                by ``backward`` do not line up with the inputs.
        """
        if not self._forward_done:
            raise UsageError(f"{type(self).__name__}.backward called before forward")
        grads = self.backward(grad)
        if isinstance(grads, NdArray):
            grads = (grads,)
        grads = tuple(grads)
        if len(grads) != len(self.input_shapes):
            raise UsageError(
                f"{type(self).__name__}.backward returned {len(grads)} gradient(s) "
                f"for {len(self.input_shapes)} input(s)"
            )
        for i, (g, shape) in enumerate(zip(grads, self.input_shapes)):
            if not isinstance(g, NdArray) or g.shape != shape:
                got = g.shape if isinstance(g, NdArray) else type(g).__name__
                raise UsageError(
                    f"{type(self).__name__}.backward gradient {i} has shape {got}, "
                    f"expected {shape}"
                )
        return grads

    @classmethod
    def apply(cls, *inputs: Any, **kwargs: Any) -> "Variable":
        """
        Construct and apply this function to the given inputs.

        This method:
        1) Wraps plain numbers and arrays as untracked Variables.
        2) Creates an instance of the function and runs its checked forward pass.
        3) Wraps the result in a new `Variable`. The output is tracked only when
           graph recording is enabled and at least one input is tracked; only a
           tracked output records this function as its creator.

        Args:
            *inputs (Variable or array-like): Inputs to the operation.
            **kwargs (Any): Additional keyword arguments passed to ``forward``.

        Returns:
            Variable: The resulting Variable.

        Raises:
            UsageError: If the number of inputs is wrong.
        """
        variables = tuple(as_variable(v) for v in inputs)
        func = cls(*variables)
        out_value = func.run_forward(*(v.value for v in variables), **kwargs)

        tracked = config.enable_backprop and any(v.requires_grad for v in variables)
        if not tracked:
            return Variable(out_value, requires_grad=False)
        return Variable(out_value, creator=func)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(inputs={len(self.inputs)})"


def as_variable(obj: Any) -> "Variable":
    """Return ``obj`` if it is a Variable, else wrap it as an untracked constant."""
    if isinstance(obj, Variable):
        return obj
    return Variable(obj, requires_grad=False)


from ndgrad.variable import Variable  # noqa: E402
