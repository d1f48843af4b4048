import logging
from unittest import TestCase

import numpy as np
import pytest

from ndgrad import functional as F
from ndgrad.config import config, no_grad, using_config
from ndgrad.errors import ShapeError, UsageError
from ndgrad.function import Function
from ndgrad.graph import topological_order
from ndgrad.ndarray import NdArray
from ndgrad.variable import Parameter, Variable


class TestVariable(TestCase):
    def setUp(self) -> None:
        self.x_scalar = Variable(2.0)
        self.y_scalar = Variable(3.0)
        self.x_vector = Variable([1.0, 2.0])
        self.x_matrix = Variable([[1.0, 2.0], [3.0, 4.0]])
        self.x_no_grad = Variable([1.0, 2.0], requires_grad=False)

    def test_init(self):
        assert self.x_scalar.grad is None  # lazy until backward
        assert self.x_scalar.requires_grad
        assert self.x_scalar.creator is None
        assert self.x_scalar.generation == 0
        assert self.x_scalar.is_leaf
        assert self.x_matrix.shape == (2, 2)
        assert self.x_matrix.ndim == 2

    def test_operators(self):
        assert (-self.x_scalar).item() == -2.0
        assert (self.x_scalar + self.y_scalar).item() == 5.0
        assert (self.x_scalar - self.y_scalar).item() == -1.0
        assert (self.x_scalar * self.y_scalar).item() == 6.0
        assert (self.y_scalar / self.x_scalar).item() == 1.5
        assert (self.x_scalar**3).item() == 8.0
        assert (2 * self.x_vector).to_numpy().tolist() == [2.0, 4.0]
        assert (1 + self.x_vector).to_numpy().tolist() == [2.0, 3.0]
        assert (self.x_matrix @ self.x_matrix).to_numpy().tolist() == [[7.0, 10.0], [15.0, 22.0]]
        assert self.x_matrix[1].to_numpy().tolist() == [3.0, 4.0]
        assert self.x_matrix.T.to_numpy().tolist() == [[1.0, 3.0], [2.0, 4.0]]

    def test_generation(self):
        a = self.x_scalar * 2  # 1
        b = a.exp()  # 2
        c = b + self.x_scalar  # 3
        assert (a.generation, b.generation, c.generation) == (1, 2, 3)
        assert c.inputs == (b, self.x_scalar)
        assert isinstance(c.creator, F.Add)

    def test_backward_multiplication(self):
        z = self.x_scalar * self.y_scalar
        z.backward()
        assert np.allclose(z.grad.to_numpy(), 1.0)
        assert self.x_scalar.grad.item() == 3.0
        assert self.y_scalar.grad.item() == 2.0

    def test_diamond_graph(self):
        # y = x^2 + x^3, both branches share x
        x = Variable(2.0)
        a = x.square()
        b = x**3
        y = a + b
        y.backward()
        assert x.grad.item() == 2 * 2.0 + 3 * 2.0**2

    def test_deep_diamond_runs_each_function_once(self):
        calls = []

        class Counted(Function):
            num_inputs = 1

            def forward(self, x):
                return x.copy()

            def backward(self, grad):
                calls.append(self)
                return (grad,)

        x = Variable(1.0)
        h = Counted.apply(x)
        y = (h * 2.0) + (h * 3.0).exp().log()
        y.backward()
        assert len(calls) == 1
        assert x.grad.item() == pytest.approx(5.0)

    def test_repeated_input(self):
        x = Variable([1.0, -2.0])
        (x * x).sum().backward()
        assert x.grad.to_numpy().tolist() == [2.0, -4.0]

    def test_seed_and_accumulation(self):
        x = Variable([1.0, 2.0])
        y = x * 3.0
        y.backward(NdArray.of([1.0, 10.0]))
        assert x.grad.to_numpy().tolist() == [3.0, 30.0]
        y.backward()
        assert x.grad.to_numpy().tolist() == [6.0, 33.0]
        assert y.grad.to_numpy().tolist() == [2.0, 11.0]

    def test_gradients_do_not_alias_seed(self):
        x = Variable([1.0, 2.0])
        y = x.reshape(2, 1)
        seed = NdArray.of([[1.0], [1.0]])
        y.backward(seed)
        seed.set(100.0, 0, 0)
        assert y.grad.to_numpy().tolist() == [[1.0], [1.0]]
        assert x.grad.to_numpy().tolist() == [1.0, 1.0]

        y.grad.set(-3.0, 1, 0)
        assert x.grad.to_numpy().tolist() == [1.0, 1.0]

    def test_seed_shape_mismatch(self):
        y = self.x_vector * 2.0
        with pytest.raises(ShapeError):
            y.backward(np.ones(3))
        assert self.x_vector.grad is None

    def test_backward_on_untracked_is_noop(self):
        y = self.x_no_grad * 2.0
        assert not y.requires_grad
        assert y.creator is None
        y.backward()
        assert y.grad is None
        assert self.x_no_grad.grad is None

    def test_untracked_parent_gets_no_gradient(self):
        y = (self.x_vector * self.x_no_grad).sum()
        y.backward()
        assert self.x_vector.grad.to_numpy().tolist() == [1.0, 2.0]
        assert self.x_no_grad.grad is None

    def test_intermediate_gradients_released(self):
        x = Variable([1.0, 2.0])
        h = x * 2.0
        y = h.sum()
        y.backward()
        assert h.grad is None
        assert y.grad is not None
        assert x.grad.to_numpy().tolist() == [2.0, 2.0]

    def test_retain_grad(self):
        x = Variable([1.0, 2.0])
        h = x * 2.0
        y = h.sum()
        y.backward(retain_grad=True)
        assert h.grad.to_numpy().tolist() == [1.0, 1.0]

        x2 = Variable([1.0, 2.0])
        h2 = x2.exp()
        h2.retain_grad()
        h2.sum().backward()
        assert np.allclose(h2.grad.to_numpy(), [1.0, 1.0])

        with using_config("retain_grad", True):
            x3 = Variable(1.0)
            h3 = x3 * 4.0
            (h3 * h3).backward()
        assert h3.grad.item() == 8.0

    def test_no_grad(self):
        with no_grad():
            y = self.x_vector * 2.0
            assert not config.enable_backprop
        assert config.enable_backprop
        assert y.creator is None
        assert not y.requires_grad
        assert y.generation == 0

    def test_backward_can_run_twice(self):
        x = Variable(3.0)
        y = x * x
        y.backward()
        y.backward()
        assert x.grad.item() == 12.0

    def test_detach_and_unchain(self):
        x = Variable([1.0, 2.0])
        h = x.exp()
        d = h.detach()
        assert d.value is h.value
        assert not d.requires_grad

        y = (h * 2.0).sum()
        y.unchain_backward()
        assert y.creator is None
        assert h.creator is None
        y.backward()
        assert x.grad is None

    def test_topological_order(self):
        x = Variable(1.0, name="x")
        a = x * 2.0
        b = a.exp()
        c = a + b
        order = topological_order(c)
        assert order[0] is c
        assert order.index(b) < order.index(a) < order.index(x)
        assert [v.generation for v in order] == sorted((v.generation for v in order), reverse=True)
        assert topological_order(Variable(1.0, requires_grad=False)) == []

    def test_deep_chain_has_no_recursion_limit(self):
        x = Variable(1.0)
        y = x
        for _ in range(3000):
            y = y + 1.0
        y.backward()
        assert x.grad.item() == 1.0

    def test_backward_logs_at_debug(self):
        logger = logging.getLogger("ndgrad.graph")
        with self.assertLogs(logger, level="DEBUG") as captured:
            Variable(1.0, requires_grad=False).backward()
        assert any("skipped" in line for line in captured.output)


class TestFunctionContract(TestCase):
    def test_wrong_arity(self):
        with pytest.raises(UsageError):
            F.Add.apply(Variable(1.0))
        with pytest.raises(UsageError):
            F.Exp.apply(Variable(1.0), Variable(2.0))

    def test_backward_before_forward(self):
        func = F.Exp(Variable(1.0))
        with pytest.raises(UsageError):
            func.run_backward(NdArray.ones(()))

    def test_require_input_num(self):
        assert F.MatMul(Variable(np.ones((1, 1))), Variable(np.ones((1, 1)))).require_input_num() == 2
        assert F.Sum(Variable(1.0)).require_input_num() == 1

    def test_bad_gradient_count(self):
        class TooFew(Function):
            num_inputs = 2

            def forward(self, x, y):
                return x.add(y)

            def backward(self, grad):
                return (grad,)

        y = TooFew.apply(Variable(1.0), Variable(2.0))
        with pytest.raises(UsageError):
            y.backward()

    def test_bad_gradient_shape(self):
        class WrongShape(Function):
            num_inputs = 1

            def forward(self, x):
                return x.sum()

            def backward(self, grad):
                return (grad,)

        y = WrongShape.apply(Variable([1.0, 2.0]))
        with pytest.raises(UsageError):
            y.backward()

    def test_constants_are_wrapped(self):
        y = F.add(Variable([1.0]), 2.0)
        assert y.to_numpy().tolist() == [3.0]
        assert not y.inputs[1].requires_grad


class TestParameter(TestCase):
    def test_parameter(self):
        w = Parameter(NdArray.ones((2, 2)), name="weight")
        assert w.requires_grad
        assert w.is_leaf
        assert w.key == "weight"
        with pytest.raises(ValueError):
            Parameter(NdArray.ones(2), name="")
