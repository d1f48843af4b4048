"""
Dense N-dimensional numeric buffers.

An :class:`NdArray` is a flat, one-dimensional numpy buffer addressed through a
:class:`~ndgrad.shape.Shape`. Every numeric kernel used by the autodiff layer
is defined here and validated up front, so a malformed call raises before it
allocates or mutates anything.

Memory contract:
    ``reshape`` is a view. The result holds the very same ``buffer`` object as
    its source, so an in-place write through one (``set``, or assigning into
    ``buffer``) is visible through the other. Every other shape-changing
    operation (``transpose``, ``broadcast_to``, ``sum_to``, ``subarray`` and
    indexing) returns a fresh buffer.
"""

import logging
from numbers import Number
from typing import Any, Optional, Sequence, Union

import numpy as np

from ndgrad.config import config
from ndgrad.errors import ShapeError
from ndgrad.shape import Shape, ShapeLike, as_shape, broadcast_shapes

logger = logging.getLogger(__name__)

Operand = Union["NdArray", Number, np.ndarray]


class NdArray:
    """
    A flat numeric buffer plus the Shape that addresses it.

    Attributes:
        buffer (np.ndarray): One-dimensional storage of ``shape.size()``
            elements. May be shared with other NdArrays (see module docs).
        shape (Shape): Row-major layout of ``buffer``.

    Examples:
        >>> a = NdArray.of([1.0, 2.0, 3.0, 4.0])
        >>> b = a.reshape(2, 2)
        >>> b.set(99.0, 1, 1)
        >>> a.get(3)
        99.0
    """

    __slots__ = ("buffer", "shape")

    def __init__(self, data: Any, shape: Optional[ShapeLike] = None):
        """
        Copy ``data`` into a new buffer.

        Args:
            data (Any): Number, nested sequence, numpy array or NdArray.
            shape (ShapeLike, optional): Target shape. Defaults to the shape of
                ``data``. When given, only the element count has to match.

        Raises:
            ShapeError: If ``data`` does not hold ``shape.size()`` elements.
        """
        if isinstance(data, NdArray):
            data = data.to_numpy()
        arr = np.array(data, dtype=config.dtype)
        if shape is None:
            shape = Shape(arr.shape)
        else:
            shape = as_shape(shape)
            if arr.size != shape.size():
                raise ShapeError(
                    f"Data holds {arr.size} elements, shape {shape} needs {shape.size()}"
                )
        self.buffer = arr.reshape(-1)
        self.shape = shape

    @classmethod
    def _wrap(cls, buffer: np.ndarray, shape: Shape) -> "NdArray":
        # No copy: the new NdArray aliases ``buffer``.
        out = cls.__new__(cls)
        out.buffer = buffer
        out.shape = shape
        return out

    @classmethod
    def _from_numpy(cls, arr: np.ndarray, copy: bool = False) -> "NdArray":
        arr = np.asarray(arr, dtype=config.dtype)
        if copy:
            arr = arr.copy()
        flat = np.ascontiguousarray(arr).reshape(-1)
        return cls._wrap(flat, Shape(arr.shape))

    ########### Construction ###########
    @classmethod
    def of(cls, data: Any, shape: Optional[ShapeLike] = None) -> "NdArray":
        """Create an NdArray from ``data``, optionally reinterpreted as ``shape``."""
        return cls(data, shape)

    @classmethod
    def zeros(cls, shape: ShapeLike) -> "NdArray":
        shape = as_shape(shape)
        return cls._wrap(np.zeros(shape.size(), dtype=config.dtype), shape)

    @classmethod
    def ones(cls, shape: ShapeLike) -> "NdArray":
        shape = as_shape(shape)
        return cls._wrap(np.ones(shape.size(), dtype=config.dtype), shape)

    @classmethod
    def like(cls, shape: ShapeLike, value: Number) -> "NdArray":
        """Create an array of ``shape`` filled with ``value``."""
        shape = as_shape(shape)
        return cls._wrap(np.full(shape.size(), value, dtype=config.dtype), shape)

    @classmethod
    def eye(cls, n: int) -> "NdArray":
        """Create an ``n x n`` identity matrix."""
        return cls._from_numpy(np.eye(n))

    @classmethod
    def random_normal(cls, shape: ShapeLike, seed: Optional[int] = None) -> "NdArray":
        """
        Sample from the standard normal distribution.

        Args:
            shape (ShapeLike): Output shape.
            seed (int, optional): Seed for a private generator. When omitted the
                global numpy random state is used.
        """
        shape = as_shape(shape)
        rng = np.random.default_rng(seed) if seed is not None else np.random
        return cls._wrap(
            np.asarray(rng.standard_normal(shape.size()), dtype=config.dtype), shape
        )

    @classmethod
    def random_uniform(
        cls,
        low: float,
        high: float,
        shape: ShapeLike,
        seed: Optional[int] = None,
    ) -> "NdArray":
        """Sample uniformly from ``[low, high)``."""
        shape = as_shape(shape)
        rng = np.random.default_rng(seed) if seed is not None else np.random
        return cls._wrap(
            np.asarray(rng.uniform(low, high, shape.size()), dtype=config.dtype), shape
        )

    @classmethod
    def linspace(cls, start: float, stop: float, num: int) -> "NdArray":
        """Create ``num`` evenly spaced values over ``[start, stop]``."""
        return cls._from_numpy(np.linspace(start, stop, num))

    def zeros_like(self) -> "NdArray":
        return NdArray.zeros(self.shape)

    def ones_like(self) -> "NdArray":
        return NdArray.ones(self.shape)

    ########### Access ###########
    @property
    def ndim(self) -> int:
        return self.shape.ndim

    @property
    def size(self) -> int:
        return self.shape.size()

    def get(self, *index: int) -> float:
        """
        Read one element.

        Args:
            *index (int): One coordinate per axis. A single flat offset is
                also accepted for one-dimensional arrays.

        Raises:
            ShapeError: If the index does not fit the shape.
        """
        return float(self.buffer[self.shape.index_of(*index)])

    def set(self, value: float, *index: int) -> None:
        """
        Write one element in place.

        The write goes straight into ``buffer`` and is therefore observable
        through every view that shares it.

        Raises:
            ShapeError: If the index does not fit the shape.
        """
        self.buffer[self.shape.index_of(*index)] = value

    def item(self) -> float:
        """Return the only element of a one-element array."""
        if self.size != 1:
            raise ShapeError(f"item() needs exactly one element, shape is {self.shape}")
        return float(self.buffer[0])

    def to_numpy(self) -> np.ndarray:
        """Return a numpy view of the buffer in this array's shape (no copy)."""
        return self.buffer.reshape(self.shape.dims)

    def copy(self) -> "NdArray":
        return NdArray._wrap(self.buffer.copy(), self.shape)

    def tolist(self) -> Any:
        return self.to_numpy().tolist()

    ########### Elementwise binary ###########
    @staticmethod
    def _coerce(other: Operand) -> "NdArray":
        if isinstance(other, NdArray):
            return other
        return NdArray(other)

    def _binary(self, other: Operand, op) -> "NdArray":
        other = self._coerce(other)
        broadcast_shapes(self.shape, other.shape)
        return NdArray._from_numpy(op(self.to_numpy(), other.to_numpy()))

    def add(self, other: Operand) -> "NdArray":
        """Elementwise ``self + other`` with broadcasting."""
        return self._binary(other, np.add)

    def sub(self, other: Operand) -> "NdArray":
        """Elementwise ``self - other`` with broadcasting."""
        return self._binary(other, np.subtract)

    def mul(self, other: Operand) -> "NdArray":
        """Elementwise ``self * other`` with broadcasting."""
        return self._binary(other, np.multiply)

    def div(self, other: Operand) -> "NdArray":
        """
        Elementwise ``self / other`` with broadcasting.

        Raises:
            ShapeError: If the operands cannot be broadcast together.
            ZeroDivisionError: If any element of ``other`` is exactly zero.
                Very small but non-zero denominators are accepted.
        """
        other = self._coerce(other)
        broadcast_shapes(self.shape, other.shape)
        if np.any(other.buffer == 0):
            raise ZeroDivisionError(f"Division by zero: divisor of shape {other.shape} contains 0")
        return NdArray._from_numpy(np.divide(self.to_numpy(), other.to_numpy()))

    def eq(self, other: Operand) -> "NdArray":
        """1.0 where ``self == other``, else 0.0."""
        return self._binary(other, lambda a, b: (a == b).astype(config.dtype))

    def gt(self, other: Operand) -> "NdArray":
        """1.0 where ``self > other``, else 0.0."""
        return self._binary(other, lambda a, b: (a > b).astype(config.dtype))

    def lt(self, other: Operand) -> "NdArray":
        """1.0 where ``self < other``, else 0.0."""
        return self._binary(other, lambda a, b: (a < b).astype(config.dtype))

    __add__ = add
    __sub__ = sub
    __mul__ = mul
    __truediv__ = div

    def __radd__(self, other: Operand) -> "NdArray":
        return self.add(other)

    def __rmul__(self, other: Operand) -> "NdArray":
        return self.mul(other)

    def __rsub__(self, other: Operand) -> "NdArray":
        return self._coerce(other).sub(self)

    def __rtruediv__(self, other: Operand) -> "NdArray":
        return self._coerce(other).div(self)

    def __neg__(self) -> "NdArray":
        return self.neg()

    def __matmul__(self, other: "NdArray") -> "NdArray":
        return self.dot(other)

    ########### Elementwise unary ###########
    def _unary(self, fn) -> "NdArray":
        return NdArray._from_numpy(fn(self.to_numpy()))

    def neg(self) -> "NdArray":
        return self._unary(np.negative)

    def abs(self) -> "NdArray":
        return self._unary(np.abs)

    def pow(self, exponent: Number) -> "NdArray":
        return self._unary(lambda a: np.power(a, exponent))

    def square(self) -> "NdArray":
        return self._unary(np.square)

    def sqrt(self) -> "NdArray":
        return self._unary(np.sqrt)

    def exp(self) -> "NdArray":
        return self._unary(np.exp)

    def log(self) -> "NdArray":
        return self._unary(np.log)

    def sin(self) -> "NdArray":
        return self._unary(np.sin)

    def cos(self) -> "NdArray":
        return self._unary(np.cos)

    def tanh(self) -> "NdArray":
        return self._unary(np.tanh)

    def sigmoid(self) -> "NdArray":
        r"""
        Logistic function $\sigma(x) = \frac{1}{1 + e^{-x}}$.

        Written as $\frac{1}{2}(\tanh(x/2) + 1)$ so that large negative inputs
        do not overflow.
        """
        return self._unary(lambda a: 0.5 * (np.tanh(0.5 * a) + 1.0))

    def maximum(self, number: Number) -> "NdArray":
        """Elementwise ``max(self, number)``."""
        return self._unary(lambda a: np.maximum(a, number))

    def mask(self, threshold: Number) -> "NdArray":
        """1.0 where the element is strictly greater than ``threshold``, else 0.0."""
        return self._unary(lambda a: (a > threshold).astype(config.dtype))

    def clip(self, low: Number, high: Number) -> "NdArray":
        if low > high:
            raise ValueError(f"clip bounds are inverted: low={low} > high={high}")
        return self._unary(lambda a: np.clip(a, low, high))

    def softmax(self, axis: Optional[int] = None) -> "NdArray":
        """
        Numerically stable softmax along ``axis`` (default: the last axis).
        """
        if self.ndim == 0:
            return NdArray.ones(self.shape)
        axis = self.ndim - 1 if axis is None else self.shape.validate_axis(axis)
        x = self.to_numpy()
        e = np.exp(x - np.max(x, axis=axis, keepdims=True))
        return NdArray._from_numpy(e / np.sum(e, axis=axis, keepdims=True))

    ########### Reductions ###########
    def _reduce(self, fn, axis: Optional[int]) -> "NdArray":
        if axis is None:
            if self.size == 0:
                raise ShapeError(f"Cannot reduce over empty shape {self.shape}")
            return NdArray._from_numpy(fn(self.to_numpy()))
        axis = self.shape.validate_axis(axis)
        if self.shape[axis] == 0:
            raise ShapeError(f"Cannot reduce over empty axis {axis} of shape {self.shape}")
        return NdArray._from_numpy(fn(self.to_numpy(), axis=axis))

    def sum(self, axis: Optional[int] = None) -> "NdArray":
        """
        Sum along ``axis`` (dropping it), or over every element when ``axis``
        is None (scalar result).
        """
        if axis is not None:
            axis = self.shape.validate_axis(axis)
        return NdArray._from_numpy(np.sum(self.to_numpy(), axis=axis))

    def mean(self, axis: Optional[int] = None) -> "NdArray":
        """Arithmetic mean along ``axis`` or over every element."""
        return self._reduce(np.mean, axis)

    def var(self, axis: Optional[int] = None) -> "NdArray":
        r"""
        Population variance along ``axis`` or over every element.

        $$
        \mathrm{var}(x) = \frac{1}{N} \sum_i (x_i - \bar{x})^2
        $$

        The divisor is N, not N - 1.
        """
        return self._reduce(lambda a, **kw: np.var(a, ddof=0, **kw), axis)

    def max(self, axis: Optional[int] = None) -> "NdArray":
        """Maximum along ``axis`` or over every element."""
        return self._reduce(np.max, axis)

    def min(self, axis: Optional[int] = None) -> "NdArray":
        """Minimum along ``axis`` or over every element."""
        return self._reduce(np.min, axis)

    def argmax(self, axis: Optional[int] = None) -> "NdArray":
        """Index of the first maximum along ``axis`` (flat index when None)."""
        return self._reduce(np.argmax, axis)

    ########### Matrix ###########
    def dot(self, other: "NdArray") -> "NdArray":
        """
        Batched matrix product.

        The trailing two axes of each operand are the matrix axes; all leading
        axes form the batch and broadcast against each other (equal extents or
        1). For left ``[..., m, k]`` and right ``[..., k, n]`` the result is
        ``[broadcast(batch), m, n]``.

        Raises:
            ShapeError: If either operand has fewer than two axes, the inner
                extents differ, or the batch axes are incompatible.

        Examples:
            >>> a = NdArray.of([[[1, 2, 3]], [[4, 5, 6]]])  # (2, 1, 3)
            >>> b = NdArray.of([[[1, 0], [0, 1], [1, 1]]])  # (1, 3, 2)
            >>> a.dot(b).tolist()
            [[[4.0, 5.0]], [[10.0, 11.0]]]
        """
        if not isinstance(other, NdArray):
            raise TypeError(f"dot expects an NdArray, got {type(other).__name__}")
        if self.ndim < 2 or other.ndim < 2:
            raise ShapeError(
                f"dot needs operands with at least 2 axes, got {self.shape} and {other.shape}"
            )
        if self.shape[-1] != other.shape[-2]:
            raise ShapeError(
                f"dot inner dimensions differ: {self.shape} x {other.shape} "
                f"({self.shape[-1]} != {other.shape[-2]})"
            )
        broadcast_shapes(self.shape.dims[:-2], other.shape.dims[:-2])
        return NdArray._from_numpy(np.matmul(self.to_numpy(), other.to_numpy()))

    ########### Layout ###########
    def reshape(self, *shape: Union[int, Sequence[int]]) -> "NdArray":
        """
        Reinterpret the buffer under a new shape without copying.

        One extent may be ``-1``; it is inferred from the element count.

        Returns:
            NdArray: A view sharing ``buffer`` with ``self``.

        Raises:
            ShapeError: If the element count changes or more than one ``-1``
                is given.
        """
        if len(shape) == 1 and isinstance(shape[0], (tuple, list, Shape)):
            shape = tuple(shape[0])
        if -1 in shape:
            if shape.count(-1) > 1:
                raise ShapeError("Only one -1 extent is allowed in reshape")
            known = 1
            for d in shape:
                if d != -1:
                    known *= d
            if known == 0 or self.size % known != 0:
                raise ShapeError(f"Cannot reshape {self.shape} into {shape}")
            shape = tuple(self.size // known if d == -1 else d for d in shape)
        new_shape = Shape(shape)
        if new_shape.size() != self.size:
            raise ShapeError(
                f"Cannot reshape {self.shape} ({self.size} elements) into "
                f"{new_shape} ({new_shape.size()} elements)"
            )
        return NdArray._wrap(self.buffer, new_shape)

    def flatten(self) -> "NdArray":
        return self.reshape(self.size)

    def transpose(self, *axes: int) -> "NdArray":
        """
        Permute the axes (default: reverse them). Returns a copy.

        Raises:
            ShapeError: If ``axes`` is not a permutation of ``range(ndim)``.
        """
        if len(axes) == 1 and isinstance(axes[0], (tuple, list)):
            axes = tuple(axes[0])
        if not axes:
            axes = tuple(reversed(range(self.ndim)))
        if sorted(axes) != list(range(self.ndim)):
            raise ShapeError(f"Axes {axes} are not a permutation for shape {self.shape}")
        return NdArray._from_numpy(np.transpose(self.to_numpy(), axes), copy=True)

    def swap_last_axes(self) -> "NdArray":
        """Transpose the trailing two (matrix) axes, keeping batch axes in place."""
        if self.ndim < 2:
            raise ShapeError(f"swap_last_axes needs at least 2 axes, got {self.shape}")
        axes = list(range(self.ndim))
        axes[-1], axes[-2] = axes[-2], axes[-1]
        return self.transpose(*axes)

    def broadcast_to(self, shape: ShapeLike) -> "NdArray":
        """
        Expand extent-1 (or missing leading) axes to ``shape``.

        Raises:
            ShapeError: If some target extent is neither the source extent nor
                expandable from 1.
        """
        shape = as_shape(shape)
        if not self.shape.can_broadcast_to(shape):
            raise ShapeError(f"Cannot broadcast {self.shape} to {shape}")
        if shape == self.shape:
            return self.copy()
        return NdArray._from_numpy(np.broadcast_to(self.to_numpy(), shape.dims), copy=True)

    def sum_to(self, shape: ShapeLike) -> "NdArray":
        """
        Sum broadcast-expanded axes away to recover ``shape``.

        Leading axes missing from ``shape`` are summed out, and every axis
        where ``shape`` has extent 1 but ``self`` does not is summed with the
        axis kept.

        Raises:
            ShapeError: If ``shape`` could not have been broadcast to this
                array's shape.
        """
        shape = as_shape(shape)
        if not self.shape.can_sum_to(shape):
            raise ShapeError(f"Cannot sum {self.shape} to {shape}")
        x = self.to_numpy()
        lead = self.ndim - shape.ndim
        if lead > 0:
            x = x.sum(axis=tuple(range(lead)))
        axes = tuple(
            i for i, (dst, src) in enumerate(zip(shape.dims, x.shape)) if dst == 1 and src != 1
        )
        if axes:
            x = x.sum(axis=axes, keepdims=True)
        return NdArray._from_numpy(np.reshape(x, shape.dims), copy=True)

    def subarray(self, start_row: int, end_row: int, start_col: int, end_col: int) -> "NdArray":
        """
        Copy the ``[start_row:end_row, start_col:end_col]`` block of a matrix.

        Raises:
            ShapeError: If ``self`` is not a matrix or the bounds are invalid.
        """
        if not self.shape.is_matrix:
            raise ShapeError(f"subarray needs a matrix, got {self.shape}")
        if not (0 <= start_row <= end_row <= self.shape.row) or not (
            0 <= start_col <= end_col <= self.shape.column
        ):
            raise ShapeError(
                f"Bounds [{start_row}:{end_row}, {start_col}:{end_col}] exceed {self.shape}"
            )
        return NdArray._from_numpy(
            self.to_numpy()[start_row:end_row, start_col:end_col], copy=True
        )

    def __getitem__(self, index: Any) -> "NdArray":
        """
        Numpy-style indexing (ints, slices, integer arrays). Returns a copy.

        Raises:
            ShapeError: If the index is out of bounds for this shape.
        """
        index = _unwrap_index(index)
        try:
            picked = self.to_numpy()[index]
        except IndexError as e:
            raise ShapeError(f"Index {index!r} is invalid for shape {self.shape}: {e}") from e
        return NdArray._from_numpy(picked, copy=True)

    def add_at(self, index: Any, values: Operand) -> "NdArray":
        """
        Return a copy of ``self`` with ``values`` scatter-added at ``index``.

        Repeated indices accumulate, which makes this the backward of
        :meth:`__getitem__`.
        """
        out = self.copy()
        values = self._coerce(values)
        np.add.at(out.to_numpy(), _unwrap_index(index), values.to_numpy())
        return out

    ########### Windowed correlation ###########
    def conv2d(self, kernel: "NdArray", stride: int = 1, padding: int = 0) -> "NdArray":
        """
        2D cross-correlation of a ``[B, C, H, W]`` input with an
        ``[OC, C, KH, KW]`` kernel. See :func:`ndgrad.windows.correlate2d`.
        """
        from ndgrad.windows import correlate2d

        return correlate2d(self, kernel, stride=stride, padding=padding)

    def allclose(self, other: Operand, rtol: float = 1e-5, atol: float = 1e-8) -> bool:
        other = self._coerce(other)
        return self.shape == other.shape and bool(
            np.allclose(self.buffer, other.buffer, rtol=rtol, atol=atol)
        )

    def __len__(self) -> int:
        if self.ndim == 0:
            raise TypeError("len() of a scalar NdArray")
        return self.shape[0]

    def __repr__(self) -> str:
        body = np.array2string(self.to_numpy(), separator=", ", precision=4)
        return f"NdArray({body}, shape={self.shape.dims})"


def _unwrap_index(index: Any) -> Any:
    if isinstance(index, NdArray):
        return index.to_numpy().astype(np.intp)
    if isinstance(index, tuple):
        return tuple(_unwrap_index(i) for i in index)
    if isinstance(index, list):
        return np.asarray(index, dtype=np.intp)
    return index

