"""
Shapes and broadcasting rules.

A :class:`Shape` is an immutable, row-major description of an N-dimensional
layout: per-axis extents plus the derived element strides. All compatibility
checks used by the NdArray kernels (broadcasting, ``sum_to``, axis and index
validation) live here so that they fail with a :class:`ShapeError` before any
buffer is touched.
"""

import operator
from functools import reduce
from typing import Iterable, Iterator, Sequence, Tuple, Union

from ndgrad.errors import ShapeError

ShapeLike = Union["Shape", Sequence[int], int]


class Shape:
    """
    Immutable description of a tensor's dimensionality.

    Extents are non-negative integers. A shape with no extents is a scalar and
    holds exactly one element. Strides are measured in elements, row-major:
    ``strides[i]`` is the product of the extents after axis ``i``.

    Examples:
        >>> s = Shape(2, 3, 4)
        >>> s.size()
        24
        >>> s.strides
        (12, 4, 1)
        >>> Shape.of((2, 3)) == (2, 3)
        True
    """

    __slots__ = ("_dims", "_strides")

    def __init__(self, *dims: Union[int, Iterable[int]]):
        if len(dims) == 1 and isinstance(dims[0], (tuple, list, Shape)):
            dims = tuple(dims[0])
        normalized = []
        for d in dims:
            if isinstance(d, bool) or not hasattr(d, "__index__"):
                raise ShapeError(f"Shape extents must be integers, got {dims!r}")
            d = operator.index(d)
            if d < 0:
                raise ShapeError(f"Shape extents must be non-negative, got {dims!r}")
            normalized.append(d)

        strides = [1] * len(normalized)
        for i in range(len(normalized) - 2, -1, -1):
            strides[i] = strides[i + 1] * normalized[i + 1]

        object.__setattr__(self, "_dims", tuple(normalized))
        object.__setattr__(self, "_strides", tuple(strides))

    @classmethod
    def of(cls, *dims: Union[int, Iterable[int]]) -> "Shape":
        """Build a Shape from varargs or a single sequence of extents."""
        return cls(*dims)

    def __setattr__(self, name, value):
        raise AttributeError("Shape is immutable")

    @property
    def dims(self) -> Tuple[int, ...]:
        return self._dims

    @property
    def strides(self) -> Tuple[int, ...]:
        return self._strides

    @property
    def ndim(self) -> int:
        """Number of axes (0 for a scalar)."""
        return len(self._dims)

    def size(self) -> int:
        """Total element count, the product of all extents (1 for a scalar)."""
        return reduce(lambda a, b: a * b, self._dims, 1)

    def get_dimension(self, i: int) -> int:
        """
        Return the extent of axis ``i``.

        Raises:
            ShapeError: If ``i`` is not a valid axis.
        """
        return self._dims[self.validate_axis(i)]

    @property
    def is_scalar(self) -> bool:
        return len(self._dims) == 0

    @property
    def is_matrix(self) -> bool:
        return len(self._dims) == 2

    @property
    def row(self) -> int:
        if not self.is_matrix:
            raise ShapeError(f"row is only defined for matrices, got {self}")
        return self._dims[0]

    @property
    def column(self) -> int:
        if not self.is_matrix:
            raise ShapeError(f"column is only defined for matrices, got {self}")
        return self._dims[1]

    def validate_axis(self, axis: int) -> int:
        """
        Check that ``axis`` addresses one of this shape's axes.

        Negative axes are rejected rather than wrapped.

        Args:
            axis (int): Axis to validate.

        Returns:
            int: ``axis`` as a plain int (numpy integers are accepted).

        Raises:
            ShapeError: If ``axis`` is not an integer (bools included), or if
                ``axis < 0`` or ``axis >= ndim``.
        """
        if isinstance(axis, bool) or not hasattr(axis, "__index__"):
            raise ShapeError(f"Axis must be an integer, got {axis!r}")
        axis = operator.index(axis)
        if axis < 0 or axis >= self.ndim:
            raise ShapeError(f"Axis {axis} is out of range for shape {self}")
        return axis

    def index_of(self, *index: int) -> int:
        """
        Convert a multi-dimensional index into a flat row-major offset.

        Raises:
            ShapeError: If the index has the wrong arity or any coordinate is
                out of bounds.
        """
        if len(index) == 1 and isinstance(index[0], (tuple, list)):
            index = tuple(index[0])
        if len(index) != self.ndim:
            raise ShapeError(
                f"Index {index} has {len(index)} coordinates, shape {self} needs {self.ndim}"
            )
        offset = 0
        for i, (coord, extent, stride) in enumerate(
            zip(index, self._dims, self._strides)
        ):
            if coord < 0 or coord >= extent:
                raise ShapeError(
                    f"Index {coord} is out of bounds for axis {i} with extent {extent}"
                )
            offset += coord * stride
        return offset

    def can_broadcast_to(self, target: ShapeLike) -> bool:
        """
        Whether this shape expands to ``target`` under broadcasting.

        Axes are aligned from the right; every source extent must equal the
        target extent or be 1, and the source may not have more axes.
        """
        target = as_shape(target)
        if self.ndim > target.ndim:
            return False
        for src, dst in zip(reversed(self._dims), reversed(target.dims)):
            if src != dst and src != 1:
                return False
        return True

    def can_sum_to(self, target: ShapeLike) -> bool:
        """
        Whether ``target`` is reachable by summing broadcast-expanded axes.

        This is the inverse of :meth:`can_broadcast_to`: it holds exactly
        when ``target`` broadcasts to this shape.
        """
        return as_shape(target).can_broadcast_to(self)

    def __len__(self) -> int:
        return len(self._dims)

    def __iter__(self) -> Iterator[int]:
        return iter(self._dims)

    def __getitem__(self, i):
        return self._dims[i]

    def __eq__(self, other) -> bool:
        if isinstance(other, Shape):
            return self._dims == other._dims
        if isinstance(other, tuple):
            return self._dims == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._dims)

    def __repr__(self) -> str:
        return f"Shape{self._dims}" if len(self._dims) != 1 else f"Shape({self._dims[0]})"


def as_shape(shape: ShapeLike) -> Shape:
    """Coerce a Shape, an int or a sequence of ints into a Shape."""
    if isinstance(shape, Shape):
        return shape
    if hasattr(shape, "__index__"):
        return Shape(operator.index(shape))
    return Shape(tuple(shape))


def broadcast_shapes(*shapes: ShapeLike) -> Shape:
    """
    Compute the common shape of several operands.

    Shapes are aligned from the trailing axis; an axis pair is compatible when
    the extents are equal or one of them is 1. Missing leading axes count as 1.

    Args:
        *shapes (ShapeLike): Operand shapes.

    Returns:
        Shape: The broadcast shape.

    Raises:
        ShapeError: If any axis pair is incompatible.

    Examples:
        >>> broadcast_shapes((2, 1, 3), (4, 1))
        Shape(2, 4, 3)
    """
    shapes = [as_shape(s) for s in shapes]
    ndim = max((s.ndim for s in shapes), default=0)
    result = [1] * ndim
    for s in shapes:
        padded = (1,) * (ndim - s.ndim) + s.dims
        for i, extent in enumerate(padded):
            if extent == result[i] or extent == 1:
                continue
            if result[i] == 1:
                result[i] = extent
                continue
            raise ShapeError(
                f"Shapes {', '.join(str(x) for x in shapes)} are not broadcast-compatible"
            )
    return Shape(tuple(result))
