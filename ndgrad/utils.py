import logging
from typing import Any, Callable, List

import numpy as np

from ndgrad.config import no_grad
from ndgrad.ndarray import NdArray
from ndgrad.variable import Variable

logger = logging.getLogger(__name__)


def _scalar_output(fn: Callable[..., Variable], values: List[NdArray]) -> float:
    with no_grad():
        out = fn(*(Variable(v, requires_grad=False) for v in values))
    return float(np.sum(out.to_numpy()))


def numerical_gradient(
    fn: Callable[..., Variable], *inputs: Any, eps: float = 1e-6
) -> List[NdArray]:
    r"""
    Central-difference gradient of ``sum(fn(*inputs))`` with respect to every
    element of every input.

    $$
    \frac{\partial f}{\partial x_i} \approx \frac{f(x + \epsilon e_i) - f(x - \epsilon e_i)}{2 \epsilon}
    $$
    """
    values = [NdArray(x) for x in inputs]  # private copies
    grads = []
    for value in values:
        grad = np.zeros(value.size, dtype=value.buffer.dtype)
        for i in range(value.size):
            original = value.buffer[i]
            value.buffer[i] = original + eps
            f_plus = _scalar_output(fn, values)
            value.buffer[i] = original - eps
            f_minus = _scalar_output(fn, values)
            value.buffer[i] = original
            grad[i] = (f_plus - f_minus) / (2 * eps)
        grads.append(NdArray._wrap(grad, value.shape))
    return grads


def gradient_check(
    fn: Callable[..., Variable],
    *inputs: Any,
    eps: float = 1e-6,
    atol: float = 1e-5,
    rtol: float = 1e-4,
) -> bool:
    """
    Compare reverse-mode gradients of ``fn`` against :func:`numerical_gradient`.

    Args:
        fn (Callable[..., Variable]): Function of one Variable per input.
        *inputs (Any): Input values (anything :class:`NdArray` accepts).
        eps (float): Finite-difference step.
        atol (float): Absolute tolerance.
        rtol (float): Relative tolerance.

    Returns:
        bool: True if every gradient element matches within tolerance.
    """
    variables = [Variable(NdArray(x)) for x in inputs]
    fn(*variables).sum().backward()
    numeric = numerical_gradient(fn, *inputs, eps=eps)

    ok = True
    for i, (var, expected) in enumerate(zip(variables, numeric)):
        analytic = var.grad.to_numpy() if var.grad is not None else np.zeros(var.shape.dims)
        if not np.allclose(analytic, expected.to_numpy(), atol=atol, rtol=rtol):
            worst = np.max(np.abs(analytic - expected.to_numpy()))
            logger.warning(f"Gradient mismatch on input {i}: max abs error {worst:.3e}")
            ok = False
    return ok
