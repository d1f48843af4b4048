"""
Engine-wide configuration.

The configuration is a plain dataclass so it reads the same way as the rest of
the project's configs. A single module-level instance, :data:`config`, is
consulted by the core at call time.
"""

import contextlib
import logging
from dataclasses import dataclass, fields
from typing import Any, Iterator

logger = logging.getLogger(__name__)


@dataclass
class Config:
    """
    Runtime switches for the autodiff core.

    Attributes:
        enable_backprop (bool): Whether operations record the computation graph.
            When False, every derived Variable is untracked and has no creator.
        retain_grad (bool): Default for ``Variable.backward(retain_grad=...)``.
            When False, gradients of intermediate (non-leaf) Variables are
            released once they have been propagated.
        dtype (str): Element type of every NdArray buffer.
    """

    enable_backprop: bool = True
    retain_grad: bool = False
    dtype: str = "float64"


config = Config()


@contextlib.contextmanager
def using_config(name: str, value: Any) -> Iterator[None]:
    """
    Temporarily override one field of :data:`config`.

    The previous value is restored on exit, so nesting is safe.

    Args:
        name (str): Field name of :class:`Config`.
        value (Any): Temporary value.

    Raises:
        AttributeError: If ``name`` is not a field of :class:`Config`.

    Example:
        >>> with using_config("enable_backprop", False):
        ...     y = x * 2  # no graph is recorded
    """
    if name not in {f.name for f in fields(Config)}:
        raise AttributeError(f"Config has no field {name!r}")
    old_value = getattr(config, name)
    setattr(config, name, value)
    logger.debug(f"config.{name} = {value!r} (was {old_value!r})")
    try:
        yield
    finally:
        setattr(config, name, old_value)


def no_grad() -> contextlib.AbstractContextManager:
    """
    Disable graph recording inside a ``with`` block.

    Returns:
        contextlib.AbstractContextManager: Context manager toggling
        ``config.enable_backprop``.
    """
    return using_config("enable_backprop", False)
