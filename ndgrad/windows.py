"""
Sliding-window kernels for 2D cross-correlation.

The correlation is lowered to a single matrix multiply: :func:`im2col` unrolls
every receptive field of a ``[B, C, H, W]`` input into one row, and the kernel
is flattened to ``[OC, C*KH*KW]``. :func:`col2im` is the exact adjoint of
:func:`im2col` and is what the backward pass uses to scatter gradients back
onto the input.
"""

import logging
from typing import Tuple

import numpy as np

from ndgrad.errors import ShapeError, UsageError
from ndgrad.ndarray import NdArray
from ndgrad.shape import ShapeLike, as_shape

logger = logging.getLogger(__name__)


def conv_output_size(size: int, kernel: int, stride: int = 1, padding: int = 0) -> int:
    r"""
    Number of window positions along one spatial axis.

    $$
    \text{out} = \left\lfloor \frac{\text{size} + 2 \cdot \text{padding} - \text{kernel}}{\text{stride}} \right\rfloor + 1
    $$
    """
    return (size + 2 * padding - kernel) // stride + 1


def _check_window_args(stride: int, padding: int) -> None:
    if stride < 1:
        raise UsageError(f"stride must be >= 1, got {stride}")
    if padding < 0:
        raise UsageError(f"padding must be >= 0, got {padding}")


def _output_hw(
    h: int, w: int, kernel_h: int, kernel_w: int, stride: int, padding: int
) -> Tuple[int, int]:
    out_h = conv_output_size(h, kernel_h, stride, padding)
    out_w = conv_output_size(w, kernel_w, stride, padding)
    if out_h <= 0 or out_w <= 0:
        raise ShapeError(
            f"Kernel {kernel_h}x{kernel_w} does not fit input {h}x{w} "
            f"with stride={stride}, padding={padding}"
        )
    return out_h, out_w


def im2col(
    x: NdArray, kernel_h: int, kernel_w: int, stride: int = 1, padding: int = 0
) -> NdArray:
    """
    Unroll every receptive field of ``x`` into a row.

    Args:
        x (NdArray): Input of shape ``[B, C, H, W]``.
        kernel_h (int): Window height.
        kernel_w (int): Window width.
        stride (int): Step between windows along both spatial axes.
        padding (int): Zero padding added to each spatial border.

    Returns:
        NdArray: Matrix of shape ``[B*OH*OW, C*KH*KW]``. Rows are ordered by
        (batch, output row, output column); columns by (channel, kernel row,
        kernel column).

    Raises:
        UsageError: If ``x`` is not 4-D or stride/padding are out of range.
        ShapeError: If the window does not fit the padded input.
    """
    if x.ndim != 4:
        raise UsageError(f"im2col expects a [B, C, H, W] input, got {x.shape}")
    _check_window_args(stride, padding)
    batch, channels, h, w = x.shape.dims
    out_h, out_w = _output_hw(h, w, kernel_h, kernel_w, stride, padding)

    img = np.pad(
        x.to_numpy(),
        [(0, 0), (0, 0), (padding, padding), (padding, padding)],
        mode="constant",
    )
    cols = np.zeros((batch, channels, kernel_h, kernel_w, out_h, out_w), dtype=img.dtype)
    for i in range(kernel_h):
        i_max = i + stride * out_h
        for j in range(kernel_w):
            j_max = j + stride * out_w
            cols[:, :, i, j, :, :] = img[:, :, i:i_max:stride, j:j_max:stride]

    cols = cols.transpose(0, 4, 5, 1, 2, 3).reshape(batch * out_h * out_w, -1)
    return NdArray._from_numpy(cols)


def col2im(
    cols: NdArray,
    input_shape: ShapeLike,
    kernel_h: int,
    kernel_w: int,
    stride: int = 1,
    padding: int = 0,
) -> NdArray:
    """
    Scatter unrolled rows back onto an image, summing overlapping windows.

    This is the adjoint of :func:`im2col`: for any ``x`` and ``c`` of matching
    shapes, ``sum(im2col(x) * c) == sum(x * col2im(c))``.

    Args:
        cols (NdArray): Matrix of shape ``[B*OH*OW, C*KH*KW]``.
        input_shape (ShapeLike): The ``[B, C, H, W]`` shape to rebuild.
        kernel_h (int): Window height.
        kernel_w (int): Window width.
        stride (int): Step between windows.
        padding (int): Padding that was applied by :func:`im2col`; it is
            cropped away from the result.

    Returns:
        NdArray: Array of shape ``input_shape``.
    """
    input_shape = as_shape(input_shape)
    if input_shape.ndim != 4:
        raise UsageError(f"col2im expects a [B, C, H, W] target, got {input_shape}")
    _check_window_args(stride, padding)
    batch, channels, h, w = input_shape.dims
    out_h, out_w = _output_hw(h, w, kernel_h, kernel_w, stride, padding)
    expected = (batch * out_h * out_w, channels * kernel_h * kernel_w)
    if cols.shape != expected:
        raise ShapeError(f"col2im expects columns of shape {expected}, got {cols.shape}")

    c = cols.to_numpy().reshape(batch, out_h, out_w, channels, kernel_h, kernel_w)
    c = c.transpose(0, 3, 4, 5, 1, 2)
    img = np.zeros(
        (batch, channels, h + 2 * padding + stride - 1, w + 2 * padding + stride - 1),
        dtype=c.dtype,
    )
    for i in range(kernel_h):
        i_max = i + stride * out_h
        for j in range(kernel_w):
            j_max = j + stride * out_w
            img[:, :, i:i_max:stride, j:j_max:stride] += c[:, :, i, j, :, :]

    return NdArray._from_numpy(img[:, :, padding : h + padding, padding : w + padding], copy=True)


def correlate2d(x: NdArray, kernel: NdArray, stride: int = 1, padding: int = 0) -> NdArray:
    """
    2D cross-correlation (no kernel flip) of a batch of images.

    Args:
        x (NdArray): Input of shape ``[B, C, H, W]``.
        kernel (NdArray): Weights of shape ``[OC, C, KH, KW]``.
        stride (int): Step between windows.
        padding (int): Zero padding on each spatial border.

    Returns:
        NdArray: Output of shape ``[B, OC, OH, OW]``.

    Raises:
        UsageError: If input or kernel is not 4-D, or stride/padding are out
            of range.
        ShapeError: If the channel counts differ or the output would be empty.

    Examples:
        >>> x = NdArray.of(range(1, 10), (1, 1, 3, 3))
        >>> k = NdArray.of([[1, 0], [0, 1]], (1, 1, 2, 2))
        >>> correlate2d(x, k).tolist()
        [[[[6.0, 8.0], [12.0, 14.0]]]]
    """
    if x.ndim != 4 or kernel.ndim != 4:
        raise UsageError(
            f"correlate2d expects 4-D input and kernel, got {x.shape} and {kernel.shape}"
        )
    batch, channels, h, w = x.shape.dims
    out_channels, kernel_channels, kernel_h, kernel_w = kernel.shape.dims
    if channels != kernel_channels:
        raise ShapeError(
            f"Input has {channels} channels but kernel expects {kernel_channels}"
        )
    cols = im2col(x, kernel_h, kernel_w, stride, padding)
    out_h = conv_output_size(h, kernel_h, stride, padding)
    out_w = conv_output_size(w, kernel_w, stride, padding)

    weight = kernel.reshape(out_channels, -1).swap_last_axes()
    out = cols.dot(weight)  # [B*OH*OW, OC]
    return out.reshape(batch, out_h, out_w, out_channels).transpose(0, 3, 1, 2)
