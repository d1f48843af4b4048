import logging
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from ndgrad.ndarray import NdArray
from ndgrad.shape import Shape

logger = logging.getLogger(__name__)


class Variable:
    """
    A node of the computation graph: a value plus the bookkeeping needed to
    differentiate through it.

    Leaf Variables are created by the user. Derived Variables are created by
    :meth:`Function.apply <ndgrad.function.Function.apply>` and point back to
    the Function that produced them.

    Attributes:
        value (NdArray): The data held by this node.
        grad (NdArray, optional): Accumulated gradient of the backward target
            with respect to this Variable. ``None`` until first written.
        creator (Function, optional): The producing Function, or ``None`` for
            leaves and untracked results.
        inputs (Tuple[Variable, ...]): The creator's inputs (empty for leaves).
        generation (int): 0 for leaves, otherwise one more than the largest
            parent generation. Fixed at construction.
        requires_grad (bool): Whether this Variable takes part in gradient
            computation.
        name (str, optional): Label used in reprs and state dicts.

    Note:
        ``reshape`` returns a Variable whose value shares the source's buffer.
        Mutating a value in place after it was consumed by the graph also
        changes what backward sees; doing so is the caller's responsibility.
    """

    __array_priority__ = 1000

    def __init__(
        self,
        data: Any,
        name: Optional[str] = None,
        requires_grad: bool = True,
        creator: Optional["Function"] = None,
    ):
        """
        Args:
            data (Any): Number, nested sequence, numpy array or NdArray. An
                NdArray is used as-is, without copying.
            name (str, optional): Label for this Variable.
            requires_grad (bool): Whether gradients are tracked. Forced to True
                when ``creator`` is given.
            creator (Function, optional): Producing Function. Only
                :meth:`Function.apply` passes this.
        """
        if isinstance(data, Variable):
            data = data.value
        self.value = data if isinstance(data, NdArray) else NdArray(data)
        self.name = name
        self.grad: Optional[NdArray] = None
        self.creator = creator
        self.retains_grad = False
        if creator is not None:
            self.requires_grad = True
            self.inputs: Tuple["Variable", ...] = tuple(creator.inputs)
            self.generation = 1 + max(
                (v.generation for v in self.inputs), default=0
            )
        else:
            self.requires_grad = bool(requires_grad)
            self.inputs = ()
            self.generation = 0

    ########### Properties ###########
    @property
    def shape(self) -> Shape:
        return self.value.shape

    @property
    def ndim(self) -> int:
        return self.value.ndim

    @property
    def size(self) -> int:
        return self.value.size

    @property
    def is_leaf(self) -> bool:
        """True for Variables with no creator."""
        return self.creator is None

    @property
    def data(self) -> np.ndarray:
        """The value as a numpy array (a view, not a copy)."""
        return self.value.to_numpy()

    def to_numpy(self) -> np.ndarray:
        return self.value.to_numpy()

    def item(self) -> float:
        return self.value.item()

    def __len__(self) -> int:
        return len(self.value)

    def __repr__(self) -> str:
        name = f", name={self.name!r}" if self.name else ""
        return (
            f"Variable({self.value.tolist()}, shape={self.shape.dims}, "
            f"requires_grad={self.requires_grad}{name})"
        )

    ########### Gradient management ###########
    def backward(
        self,
        grad: Optional[Union[NdArray, np.ndarray, float, int]] = None,
        retain_grad: Optional[bool] = None,
    ) -> None:
        """
        Compute gradients of this Variable with respect to every tracked
        ancestor.

        See :func:`ndgrad.graph.backward` for the traversal contract.

        Args:
            grad (optional): Seed gradient with this Variable's shape. Defaults
                to ones.
            retain_grad (bool, optional): Keep gradients of intermediate
                Variables. Defaults to ``config.retain_grad``.

        Raises:
            ShapeError: If ``grad`` does not match this Variable's shape.
        """
        graph.backward(self, grad, retain_grad=retain_grad)

    def retain_grad(self) -> None:
        """Keep this Variable's gradient after backward even if it is not a leaf."""
        self.retains_grad = True

    def clear_grad(self) -> None:
        self.grad = None

    def zero_grad(self) -> None:
        self.grad = None

    def detach(self) -> "Variable":
        """Return an untracked leaf that shares this Variable's value."""
        return Variable(self.value, name=self.name, requires_grad=False)

    def unchain(self) -> None:
        """Forget the creator, making this Variable a leaf for future backward calls."""
        self.creator = None
        self.inputs = ()

    def unchain_backward(self) -> None:
        """
        Cut the whole graph behind this Variable.

        Every ancestor loses its creator link, which releases the Functions
        and whatever they cached for backward.
        """
        if self.creator is None:
            return
        stack = [self]
        seen = set()
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            parents = node.inputs
            node.unchain()
            stack.extend(p for p in parents if p.creator is not None)

    ########### Operators ###########
    def __add__(self, other: Any) -> "Variable":
        return F.add(self, other)

    def __radd__(self, other: Any) -> "Variable":
        return F.add(other, self)

    def __sub__(self, other: Any) -> "Variable":
        return F.sub(self, other)

    def __rsub__(self, other: Any) -> "Variable":
        return F.sub(other, self)

    def __mul__(self, other: Any) -> "Variable":
        return F.mul(self, other)

    def __rmul__(self, other: Any) -> "Variable":
        return F.mul(other, self)

    def __truediv__(self, other: Any) -> "Variable":
        return F.div(self, other)

    def __rtruediv__(self, other: Any) -> "Variable":
        return F.div(other, self)

    def __neg__(self) -> "Variable":
        return F.neg(self)

    def __pow__(self, exponent: Union[int, float]) -> "Variable":
        return F.pow(self, exponent)

    def __matmul__(self, other: Any) -> "Variable":
        return F.matmul(self, other)

    def __rmatmul__(self, other: Any) -> "Variable":
        return F.matmul(other, self)

    def __getitem__(self, index: Any) -> "Variable":
        return F.get_item(self, index)

    ########### Methods ###########
    def add(self, other: Any) -> "Variable":
        return F.add(self, other)

    def sub(self, other: Any) -> "Variable":
        return F.sub(self, other)

    def mul(self, other: Any) -> "Variable":
        return F.mul(self, other)

    def div(self, other: Any) -> "Variable":
        return F.div(self, other)

    def dot(self, other: Any) -> "Variable":
        """Batched matrix product, see :func:`ndgrad.functional.matmul`."""
        return F.matmul(self, other)

    def matmul(self, other: Any) -> "Variable":
        return F.matmul(self, other)

    def pow(self, exponent: Union[int, float]) -> "Variable":
        return F.pow(self, exponent)

    def reshape(self, *shape: Union[int, Sequence[int]]) -> "Variable":
        """Reshape; the result's value shares this Variable's buffer."""
        return F.reshape(self, *shape)

    def broadcast_to(self, shape: Sequence[int]) -> "Variable":
        return F.broadcast_to(self, shape)

    def sum_to(self, shape: Sequence[int]) -> "Variable":
        return F.sum_to(self, shape)

    def transpose(self, *axes: int) -> "Variable":
        return F.transpose(self, *axes)

    @property
    def T(self) -> "Variable":
        return F.transpose(self)

    def get_item(self, index: Any) -> "Variable":
        return F.get_item(self, index)

    def sum(self, axis: Optional[int] = None) -> "Variable":
        return F.sum(self, axis)

    def mean(self, axis: Optional[int] = None) -> "Variable":
        return F.mean(self, axis)

    def var(self, axis: Optional[int] = None) -> "Variable":
        return F.var(self, axis)

    def max(self, axis: Optional[int] = None) -> "Variable":
        return F.max(self, axis)

    def min(self, axis: Optional[int] = None) -> "Variable":
        return F.min(self, axis)

    def exp(self) -> "Variable":
        return F.exp(self)

    def log(self) -> "Variable":
        return F.log(self)

    def sqrt(self) -> "Variable":
        return F.sqrt(self)

    def square(self) -> "Variable":
        return F.square(self)

    def sin(self) -> "Variable":
        return F.sin(self)

    def cos(self) -> "Variable":
        return F.cos(self)

    def tanh(self) -> "Variable":
        return F.tanh(self)

    def sigmoid(self) -> "Variable":
        return F.sigmoid(self)

    def relu(self) -> "Variable":
        return F.relu(self)

    def clip(self, low: float, high: float) -> "Variable":
        return F.clip(self, low, high)

    def conv2d(self, kernel: Any, stride: int = 1, padding: int = 0) -> "Variable":
        return F.conv2d(self, kernel, stride=stride, padding=padding)


class Parameter(Variable):
    """
    A trainable leaf Variable with a stable name.

    Parameters always require gradients and never have a creator. The ``key``
    identifies the Parameter inside a :class:`~ndgrad.nn.Module` state dict.

    Examples:
        >>> w = Parameter(NdArray.random_normal((3, 2)), name="weight")
        >>> w.key
        'weight'
    """

    def __init__(self, data: Any, name: str):
        if not name:
            raise ValueError("Parameter needs a non-empty name")
        super().__init__(data, name=name, requires_grad=True)

    @property
    def key(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"Parameter(name={self.name!r}, shape={self.shape.dims})"


from ndgrad import functional as F  # noqa: E402
from ndgrad import graph  # noqa: E402
