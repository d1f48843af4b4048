"""
Reverse-mode traversal of the computation graph.

Variables are visited in decreasing generation order from an explicit heap
worklist, so a Variable is processed only after every Function that consumed
it has contributed its gradient. Ties between equal generations are broken by
insertion order, which makes the traversal deterministic. No recursion is
involved, so graph depth is bounded by memory only.
"""

import heapq
import itertools
import logging
from typing import Dict, Iterator, List, Optional, Union

import numpy as np

from ndgrad.config import config
from ndgrad.errors import ShapeError
from ndgrad.ndarray import NdArray
from ndgrad.variable import Variable

logger = logging.getLogger(__name__)


def _traverse(target: Variable) -> Iterator[Variable]:
    counter = itertools.count()
    heap = [(-target.generation, next(counter), target)]
    seen = {id(target)}
    while heap:
        _, _, var = heapq.heappop(heap)
        for parent in var.inputs:
            if parent.requires_grad and id(parent) not in seen:
                seen.add(id(parent))
                heapq.heappush(heap, (-parent.generation, next(counter), parent))
        yield var


def topological_order(target: Variable) -> List[Variable]:
    """
    List the Variables :func:`backward` would visit from ``target``, in order.

    Args:
        target (Variable): The Variable to differentiate.

    Returns:
        List[Variable]: ``target`` first, then its tracked ancestors by
        decreasing generation. Empty if ``target`` is untracked.
    """
    if not target.requires_grad:
        return []
    return list(_traverse(target))


def backward(
    target: Variable,
    grad: Optional[Union[NdArray, np.ndarray, float, int]] = None,
    retain_grad: Optional[bool] = None,
) -> None:
    """
    Propagate gradients from ``target`` to every tracked ancestor.

    1. If ``target`` is untracked there is nothing to do; the call is logged
       and ignored.
    2. The seed (ones by default) is added to ``target.grad``.
    3. Variables are popped from the worklist by decreasing generation. When a
       Variable is popped all of its gradient contributions for this call have
       arrived, so its creator's backward runs exactly once and the resulting
       input gradients are summed into the parents' pending gradients.
    4. Leaves add their pending gradient to ``.grad``. Intermediate Variables
       only do so when ``retain_grad`` is set (or the Variable called
       :meth:`Variable.retain_grad`).

    The graph itself is left intact, so backward may be called again.

    Args:
        target (Variable): The Variable to differentiate.
        grad (optional): Seed gradient; must have ``target``'s shape.
        retain_grad (bool, optional): Keep intermediate gradients. Defaults to
            ``config.retain_grad``.

    Raises:
        ShapeError: If the seed's shape differs from ``target``'s shape.
        UsageError: If a Function returns a malformed gradient list.
    """
    if not target.requires_grad:
        logger.debug(f"backward() on untracked Variable of shape {target.shape} skipped")
        return

    retain = config.retain_grad if retain_grad is None else retain_grad

    if grad is None:
        seed = target.value.ones_like()
    else:
        seed = grad if isinstance(grad, NdArray) else NdArray(grad)
        if seed.shape != target.shape:
            raise ShapeError(
                f"Seed gradient shape {seed.shape} does not match {target.shape}"
            )

    # Accumulators own their buffers; seeds and backward outputs may be views.
    target.grad = seed.copy() if target.grad is None else target.grad.add(seed)

    pending: Dict[int, NdArray] = {id(target): seed}
    visited = 0
    for var in _traverse(target):
        visited += 1
        g = pending.pop(id(var))
        if var is not target and (var.is_leaf or retain or var.retains_grad):
            var.grad = g.copy() if var.grad is None else var.grad.add(g)
        if var.creator is None:
            continue

        input_grads = var.creator.run_backward(g)
        for parent, parent_grad in zip(var.inputs, input_grads):
            if not parent.requires_grad:
                continue
            key = id(parent)
            pending[key] = (
                parent_grad if key not in pending else pending[key].add(parent_grad)
            )

    logger.debug(f"backward() visited {visited} variable(s) from target of shape {target.shape}")
