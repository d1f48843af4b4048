"""
Exceptions raised by the tensor and autodiff core.

Division by an exact zero is reported with the builtin ``ZeroDivisionError``
(a subclass of ``ArithmeticError``), so there is no custom class for it here.
"""


class ShapeError(ValueError):
    """
    Raised when dimensions are incompatible.

    Covers broadcasting failures, ``dot`` inner-dimension mismatches, reshape
    element-count mismatches, ``sum_to`` targets that cannot be reached,
    out-of-range axes and out-of-bounds element indices.
    """


class UsageError(RuntimeError):
    """
    Raised when the API itself is misused.

    Examples are calling a ``Function`` with the wrong number of inputs,
    invoking ``backward`` before ``forward``, a ``Function`` returning a
    malformed gradient list, or passing a tensor of the wrong rank to a
    rank-specific operation such as windowed correlation.
    """
