"""
The primitive differentiable operations.

Each operation is a :class:`~ndgrad.function.Function` subclass with a
``forward`` and a ``backward`` over NdArrays, plus a lower-case wrapper that
calls ``Op.apply``. Composite operations are built by calling the wrappers;
the set of subclasses below is closed.
"""

import logging
from numbers import Number
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from ndgrad.function import Function
from ndgrad.ndarray import NdArray
from ndgrad.shape import Shape
from ndgrad.windows import col2im, im2col, conv_output_size
from ndgrad.errors import ShapeError, UsageError

logger = logging.getLogger(__name__)

Operand = Union["Variable", NdArray, Number]


def _expand_reduced(grad: NdArray, shape: Shape, axis: Optional[int]) -> NdArray:
    """Broadcast the gradient of an axis (or global) reduction back to ``shape``."""
    if axis is None:
        return grad.broadcast_to(shape)
    dims = list(shape.dims)
    dims[axis] = 1
    return grad.reshape(dims).broadcast_to(shape)


########### Arithmetic ###############
class Add(Function):
    """
    Elementwise addition with broadcasting. See :func:`add`.
    """

    num_inputs = 2

    def forward(self, x: NdArray, y: NdArray) -> NdArray:
        return x.add(y)

    def backward(self, grad: NdArray) -> Tuple[NdArray, NdArray]:
        """
        Addition is linear, so the upstream gradient flows to both inputs,
        summed back over any broadcast axes.
        """
        x_shape, y_shape = self.input_shapes
        return grad.sum_to(x_shape), grad.sum_to(y_shape)


class Sub(Function):
    num_inputs = 2

    def forward(self, x: NdArray, y: NdArray) -> NdArray:
        return x.sub(y)

    def backward(self, grad: NdArray) -> Tuple[NdArray, NdArray]:
        x_shape, y_shape = self.input_shapes
        return grad.sum_to(x_shape), grad.neg().sum_to(y_shape)


class Mul(Function):
    num_inputs = 2

    def forward(self, x: NdArray, y: NdArray) -> NdArray:
        self.x = x
        self.y = y
        return x.mul(y)

    def backward(self, grad: NdArray) -> Tuple[NdArray, NdArray]:
        r"""
        $$
        \frac{\partial (x y)}{\partial x} = y, \quad \frac{\partial (x y)}{\partial y} = x
        $$
        """
        x_shape, y_shape = self.input_shapes
        return grad.mul(self.y).sum_to(x_shape), grad.mul(self.x).sum_to(y_shape)


class Div(Function):
    num_inputs = 2

    def forward(self, x: NdArray, y: NdArray) -> NdArray:
        self.y = y
        self.out = x.div(y)
        return self.out

    def backward(self, grad: NdArray) -> Tuple[NdArray, NdArray]:
        r"""
        $$
        \frac{\partial}{\partial x} \frac{x}{y} = \frac{1}{y}, \quad
        \frac{\partial}{\partial y} \frac{x}{y} = -\frac{x}{y^2} = -\frac{\text{out}}{y}
        $$

        The forward pass already rejected zero divisors, so dividing by ``y``
        again cannot fail.
        """
        x_shape, y_shape = self.input_shapes
        gx = grad.div(self.y)
        gy = grad.mul(self.out).div(self.y).neg()
        return gx.sum_to(x_shape), gy.sum_to(y_shape)


class Neg(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        return x.neg()

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.neg(),)


class Pow(Function):
    """
    Raise to a constant power. See :func:`pow`.
    """

    num_inputs = 1

    def forward(self, x: NdArray, exponent: Number) -> NdArray:
        self.x = x
        self.exponent = exponent
        return x.pow(exponent)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        r"""
        $$
        \frac{d}{dx} x^c = c \cdot x^{c-1}
        $$
        """
        c = self.exponent
        return (grad.mul(self.x.pow(c - 1).mul(c)),)


class Square(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.x = x
        return x.square()

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.mul(self.x).mul(2.0),)


class Sqrt(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.out = x.sqrt()
        return self.out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        r"""
        $$
        \frac{d}{dx} \sqrt{x} = \frac{1}{2\sqrt{x}}
        $$

        Infinite at ``x == 0``, as in the closed form.
        """
        return (grad.mul(self.out.pow(-1.0)).mul(0.5),)


########### Elementwise math ###############
class Exp(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.out = x.exp()
        return self.out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.mul(self.out),)


class Log(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.x = x
        return x.log()

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.mul(self.x.pow(-1.0)),)


class Sin(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.x = x
        return x.sin()

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.mul(self.x.cos()),)


class Cos(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.x = x
        return x.cos()

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.mul(self.x.sin()).neg(),)


class Tanh(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.out = x.tanh()
        return self.out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        r"""
        $$
        \frac{d}{dx} \tanh(x) = 1 - \tanh^2(x)
        $$
        """
        return (grad.mul(self.out.square().neg().add(1.0)),)


class Sigmoid(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.out = x.sigmoid()
        return self.out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        r"""
        $$
        \frac{d}{dx} \sigma(x) = \sigma(x) (1 - \sigma(x))
        $$
        """
        return (grad.mul(self.out).mul(self.out.neg().add(1.0)),)


class Relu(Function):
    num_inputs = 1

    def forward(self, x: NdArray) -> NdArray:
        self.x = x
        return x.maximum(0.0)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        # The subgradient at exactly 0 is taken as 0.
        return (grad.mul(self.x.mask(0.0)),)


class Clip(Function):
    num_inputs = 1

    def forward(self, x: NdArray, low: Number, high: Number) -> NdArray:
        self.x = x
        self.low = low
        self.high = high
        return x.clip(low, high)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        x = self.x.to_numpy()
        inside = ((x >= self.low) & (x <= self.high)).astype(x.dtype)
        return (grad.mul(NdArray._from_numpy(inside)),)


########### Reductions ###############
class Sum(Function):
    num_inputs = 1

    def forward(self, x: NdArray, axis: Optional[int] = None) -> NdArray:
        self.axis = axis
        return x.sum(axis)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (_expand_reduced(grad, self.input_shapes[0], self.axis),)


class Mean(Function):
    num_inputs = 1

    def forward(self, x: NdArray, axis: Optional[int] = None) -> NdArray:
        self.axis = axis
        out = x.mean(axis)
        self.count = x.size if axis is None else x.shape[axis]
        return out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        g = _expand_reduced(grad, self.input_shapes[0], self.axis)
        return (g.mul(1.0 / self.count),)


class Var(Function):
    """
    Population variance (divisor N). See :func:`var`.
    """

    num_inputs = 1

    def forward(self, x: NdArray, axis: Optional[int] = None) -> NdArray:
        self.x = x
        self.axis = axis
        out = x.var(axis)
        self.count = x.size if axis is None else x.shape[axis]
        return out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        r"""
        $$
        \frac{\partial\, \mathrm{var}(x)}{\partial x_i} = \frac{2 (x_i - \bar{x})}{N}
        $$
        """
        shape = self.input_shapes[0]
        mean = _expand_reduced(self.x.mean(self.axis), shape, self.axis)
        g = _expand_reduced(grad, shape, self.axis)
        return (g.mul(self.x.sub(mean)).mul(2.0 / self.count),)


class _Extreme(Function):
    """
    Shared backward of :class:`Max` and :class:`Min`.

    Along a single axis the gradient goes to the first extreme occurrence in
    each slice. For a global reduction it is split equally among all elements
    equal to the extreme value.
    """

    num_inputs = 1
    reduce = None

    def forward(self, x: NdArray, axis: Optional[int] = None) -> NdArray:
        self.x = x
        self.axis = axis
        self.out = getattr(x, self.reduce)(axis)
        return self.out

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        shape = self.input_shapes[0]
        x = self.x.to_numpy()
        extreme = _expand_reduced(self.out, shape, self.axis).to_numpy()
        mask = x == extreme

        if self.axis is None:
            weights = mask / np.sum(mask)
        else:
            first_occur = np.cumsum(mask, axis=self.axis) == 1
            weights = mask & first_occur

        g = _expand_reduced(grad, shape, self.axis)
        return (g.mul(NdArray._from_numpy(weights.astype(x.dtype))),)


class Max(_Extreme):
    reduce = "max"


class Min(_Extreme):
    reduce = "min"


########### Matrix ###############
class MatMul(Function):
    """
    Batched matrix product. See :func:`matmul`.
    """

    num_inputs = 2

    def forward(self, x: NdArray, y: NdArray) -> NdArray:
        self.x = x
        self.y = y
        return x.dot(y)

    def backward(self, grad: NdArray) -> Tuple[NdArray, NdArray]:
        r"""
        $$
        \frac{\partial L}{\partial X} = G Y^T, \quad \frac{\partial L}{\partial Y} = X^T G
        $$

        where the transposes swap the trailing two axes only. Gradients of
        broadcast batch axes are summed back to each operand's shape.
        """
        x_shape, y_shape = self.input_shapes
        gx = grad.dot(self.y.swap_last_axes()).sum_to(x_shape)
        gy = self.x.swap_last_axes().dot(grad).sum_to(y_shape)
        return gx, gy


########### Layout ###############
class Reshape(Function):
    num_inputs = 1

    def forward(self, x: NdArray, shape: Sequence[int]) -> NdArray:
        return x.reshape(*shape)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.reshape(self.input_shapes[0]),)


class BroadcastTo(Function):
    num_inputs = 1

    def forward(self, x: NdArray, shape: Sequence[int]) -> NdArray:
        return x.broadcast_to(shape)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.sum_to(self.input_shapes[0]),)


class SumTo(Function):
    num_inputs = 1

    def forward(self, x: NdArray, shape: Sequence[int]) -> NdArray:
        return x.sum_to(shape)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        return (grad.broadcast_to(self.input_shapes[0]),)


class Transpose(Function):
    num_inputs = 1

    def forward(self, x: NdArray, axes: Optional[Sequence[int]] = None) -> NdArray:
        self.axes = tuple(axes) if axes else tuple(reversed(range(x.ndim)))
        return x.transpose(*self.axes)

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        inverse = tuple(int(i) for i in np.argsort(self.axes))
        return (grad.transpose(*inverse),)


class GetItem(Function):
    num_inputs = 1

    def forward(self, x: NdArray, index: Any) -> NdArray:
        self.index = index
        return x[index]

    def backward(self, grad: NdArray) -> Tuple[NdArray]:
        # Scatter-add so that repeated indices accumulate.
        return (NdArray.zeros(self.input_shapes[0]).add_at(self.index, grad),)


########### Windowed correlation ###############
class Conv2d(Function):
    """
    2D cross-correlation of ``[B, C, H, W]`` input with an ``[OC, C, KH, KW]``
    kernel, lowered to im2col plus one matrix multiply. See :func:`conv2d`.
    """

    num_inputs = 2

    def forward(self, x: NdArray, kernel: NdArray, stride: int = 1, padding: int = 0) -> NdArray:
        if x.ndim != 4 or kernel.ndim != 4:
            raise UsageError(
                f"conv2d expects 4-D input and kernel, got {x.shape} and {kernel.shape}"
            )
        batch, channels, h, w = x.shape.dims
        out_channels, kernel_channels, kernel_h, kernel_w = kernel.shape.dims
        if channels != kernel_channels:
            raise ShapeError(
                f"Input has {channels} channels but kernel expects {kernel_channels}"
            )
        self.stride = stride
        self.padding = padding
        self.cols = im2col(x, kernel_h, kernel_w, stride, padding)  # [B*OH*OW, C*KH*KW]
        self.kernel_flat = kernel.reshape(out_channels, -1)  # [OC, C*KH*KW]
        self.out_hw = (
            conv_output_size(h, kernel_h, stride, padding),
            conv_output_size(w, kernel_w, stride, padding),
        )

        out = self.cols.dot(self.kernel_flat.swap_last_axes())  # [B*OH*OW, OC]
        out_h, out_w = self.out_hw
        return out.reshape(batch, out_h, out_w, out_channels).transpose(0, 3, 1, 2)

    def backward(self, grad: NdArray) -> Tuple[NdArray, NdArray]:
        r"""
        With $G$ the upstream gradient flattened to ``[B*OH*OW, OC]``:

        $$
        \frac{\partial L}{\partial X} = \mathrm{col2im}(G K), \quad
        \frac{\partial L}{\partial K} = (\mathrm{cols}^T G)^T
        $$
        """
        x_shape, k_shape = self.input_shapes
        out_channels, _, kernel_h, kernel_w = k_shape.dims
        g_flat = grad.transpose(0, 2, 3, 1).reshape(-1, out_channels)

        gx = col2im(
            g_flat.dot(self.kernel_flat), x_shape, kernel_h, kernel_w, self.stride, self.padding
        )
        gk = self.cols.swap_last_axes().dot(g_flat).swap_last_axes().reshape(k_shape)
        return gx, gk


########### Functional wrappers ###############
def add(x: Operand, y: Operand) -> "Variable":
    """Elementwise ``x + y`` with broadcasting."""
    return Add.apply(x, y)


def sub(x: Operand, y: Operand) -> "Variable":
    """Elementwise ``x - y`` with broadcasting."""
    return Sub.apply(x, y)


def mul(x: Operand, y: Operand) -> "Variable":
    """Elementwise ``x * y`` with broadcasting."""
    return Mul.apply(x, y)


def div(x: Operand, y: Operand) -> "Variable":
    """
    Elementwise ``x / y`` with broadcasting.

    Raises:
        ZeroDivisionError: If any element of ``y`` is exactly zero.
    """
    return Div.apply(x, y)


def neg(x: Operand) -> "Variable":
    return Neg.apply(x)


def pow(x: Operand, exponent: Number) -> "Variable":
    """Raise ``x`` to the constant power ``exponent``."""
    return Pow.apply(x, exponent=exponent)


def square(x: Operand) -> "Variable":
    return Square.apply(x)


def sqrt(x: Operand) -> "Variable":
    return Sqrt.apply(x)


def exp(x: Operand) -> "Variable":
    return Exp.apply(x)


def log(x: Operand) -> "Variable":
    """Natural logarithm."""
    return Log.apply(x)


def sin(x: Operand) -> "Variable":
    return Sin.apply(x)


def cos(x: Operand) -> "Variable":
    return Cos.apply(x)


def tanh(x: Operand) -> "Variable":
    """
    Applies the hyperbolic tangent (tanh) activation function.

    Args:
        x (Variable): The input.

    Returns:
        Variable: The result of applying tanh elementwise.
    """
    return Tanh.apply(x)


def sigmoid(x: Operand) -> "Variable":
    """
    Applies the sigmoid activation function.

    Args:
        x (Variable): The input.

    Returns:
        Variable: The result of applying the sigmoid elementwise.
    """
    return Sigmoid.apply(x)


def relu(x: Operand) -> "Variable":
    """
    Applies the Rectified Linear Unit (ReLU) activation function.

    Args:
        x (Variable): The input.

    Returns:
        Variable: ``max(x, 0)`` elementwise.
    """
    return Relu.apply(x)


def clip(x: Operand, low: Number, high: Number) -> "Variable":
    """Clamp ``x`` to ``[low, high]``; the gradient is zero outside the range."""
    return Clip.apply(x, low=low, high=high)


def sum(x: Operand, axis: Optional[int] = None) -> "Variable":
    """Sum along ``axis`` (dropped), or over every element when ``axis`` is None."""
    return Sum.apply(x, axis=axis)


def mean(x: Operand, axis: Optional[int] = None) -> "Variable":
    return Mean.apply(x, axis=axis)


def var(x: Operand, axis: Optional[int] = None) -> "Variable":
    """Population variance along ``axis`` or over every element."""
    return Var.apply(x, axis=axis)


def max(x: Operand, axis: Optional[int] = None) -> "Variable":
    """
    Maximum along ``axis`` or over every element.

    The gradient goes to the first maximum of each slice for an axis
    reduction, and is split equally among ties for a global one.
    """
    return Max.apply(x, axis=axis)


def min(x: Operand, axis: Optional[int] = None) -> "Variable":
    """Minimum along ``axis`` or over every element. Ties follow :func:`max`."""
    return Min.apply(x, axis=axis)


def matmul(x: Operand, y: Operand) -> "Variable":
    """
    Batched matrix product over the trailing two axes.

    Args:
        x (Variable): Left operand ``[..., m, k]``.
        y (Variable): Right operand ``[..., k, n]``.

    Returns:
        Variable: ``[broadcast(batch), m, n]``.

    Raises:
        ShapeError: If ranks are below 2, inner extents differ or batch axes
            do not broadcast.
    """
    return MatMul.apply(x, y)


def reshape(x: Operand, *shape: Union[int, Sequence[int]]) -> "Variable":
    """Reshape without copying the value buffer. One extent may be -1."""
    if len(shape) == 1 and isinstance(shape[0], (tuple, list, Shape)):
        shape = tuple(shape[0])
    return Reshape.apply(x, shape=shape)


def broadcast_to(x: Operand, shape: Sequence[int]) -> "Variable":
    return BroadcastTo.apply(x, shape=tuple(shape))


def sum_to(x: Operand, shape: Sequence[int]) -> "Variable":
    return SumTo.apply(x, shape=tuple(shape))


def transpose(x: Operand, *axes: int) -> "Variable":
    """Permute axes (default: reverse them)."""
    if len(axes) == 1 and isinstance(axes[0], (tuple, list)):
        axes = tuple(axes[0])
    return Transpose.apply(x, axes=axes or None)


def get_item(x: Operand, index: Any) -> "Variable":
    """Numpy-style indexing; the gradient scatter-adds into a zero array."""
    return GetItem.apply(x, index=index)


def conv2d(x: Operand, kernel: Operand, stride: int = 1, padding: int = 0) -> "Variable":
    """
    2D cross-correlation (no kernel flip).

    Args:
        x (Variable): Input ``[B, C, H, W]``.
        kernel (Variable): Weights ``[OC, C, KH, KW]``.
        stride (int): Step between windows.
        padding (int): Zero padding on each spatial border.

    Returns:
        Variable: Output ``[B, OC, OH, OW]`` where
        ``OH = (H + 2*padding - KH) // stride + 1`` and likewise for ``OW``.

    Raises:
        UsageError: If input or kernel is not 4-D, or stride/padding are out
            of range.
        ShapeError: If channel counts differ or the output would be empty.
    """
    return Conv2d.apply(x, kernel, stride=stride, padding=padding)
