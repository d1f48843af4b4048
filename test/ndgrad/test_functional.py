from unittest import TestCase

import numpy as np
import pytest
import torch

from ndgrad import functional as F
from ndgrad.errors import ShapeError, UsageError
from ndgrad.utils import gradient_check
from ndgrad.variable import Variable


class TestElementwiseGradients(TestCase):
    def setUp(self) -> None:
        self.x = np.random.randn(3, 4)
        self.y = np.random.randn(3, 4)
        self.row = np.random.randn(1, 4)
        self.positive = np.random.rand(3, 4) + 0.5

    def test_binary_ops_with_broadcasting(self):
        assert gradient_check(F.add, self.x, self.row)
        assert gradient_check(F.sub, self.x, self.row)
        assert gradient_check(F.mul, self.x, self.row)
        assert gradient_check(F.div, self.x, self.row + np.sign(self.row) * 0.5)
        assert gradient_check(F.mul, self.x, np.random.randn(4))

    def test_unary_ops(self):
        for fn in (F.neg, F.square, F.exp, F.sin, F.cos, F.tanh, F.sigmoid):
            assert gradient_check(fn, self.x), fn.__name__
        assert gradient_check(F.sqrt, self.positive)
        assert gradient_check(F.log, self.positive)
        assert gradient_check(lambda v: F.pow(v, 3), self.x)
        assert gradient_check(lambda v: v**-1.5, self.positive)

    def test_relu_and_clip(self):
        # keep inputs away from the kinks
        x = self.x + np.sign(self.x) * 0.1
        assert gradient_check(F.relu, x)
        assert gradient_check(lambda v: F.clip(v, -0.5, 0.5), np.array([-1.0, -0.2, 0.3, 0.9]))

    def test_matches_torch(self):
        x = Variable(self.x)
        y = Variable(self.row)
        z = (x * y + x.sigmoid()).tanh().sum()
        z.backward()

        x_t = torch.tensor(self.x, requires_grad=True)
        y_t = torch.tensor(self.row, requires_grad=True)
        z_t = (x_t * y_t + torch.sigmoid(x_t)).tanh().sum()
        z_t.backward()

        assert np.isclose(z.item(), z_t.item())
        assert np.allclose(x.grad.to_numpy(), x_t.grad.numpy())
        assert np.allclose(y.grad.to_numpy(), y_t.grad.numpy())


class TestReductionGradients(TestCase):
    def setUp(self) -> None:
        self.x = np.random.randn(3, 4, 2)

    def test_sum_mean_var(self):
        for axis in (None, 0, 1, 2):
            assert gradient_check(lambda v: F.sum(v, axis), self.x), axis
            assert gradient_check(lambda v: F.mean(v, axis), self.x), axis
            assert gradient_check(lambda v: F.var(v, axis), self.x), axis

    def test_var_matches_torch_population_variance(self):
        x = Variable(self.x)
        x.var(axis=1).sum().backward()
        x_t = torch.tensor(self.x, requires_grad=True)
        torch.var(x_t, dim=1, unbiased=False).sum().backward()
        assert np.allclose(x.grad.to_numpy(), x_t.grad.numpy())

    def test_max_min_without_ties(self):
        for axis in (None, 0, 2):
            assert gradient_check(lambda v: F.max(v, axis), self.x), axis
            assert gradient_check(lambda v: F.min(v, axis), self.x), axis

    def test_max_axis_ties_go_to_first_occurrence(self):
        x = Variable([[1.0, 3.0, 3.0], [2.0, 2.0, 0.0]])
        x.max(axis=1).sum().backward()
        assert x.grad.to_numpy().tolist() == [[0.0, 1.0, 0.0], [1.0, 0.0, 0.0]]

    def test_max_global_ties_split_equally(self):
        x = Variable([[1.0, 3.0], [3.0, 0.0]])
        x.max().backward()
        assert x.grad.to_numpy().tolist() == [[0.0, 0.5], [0.5, 0.0]]

    def test_min_axis_ties_go_to_first_occurrence(self):
        x = Variable([[1.0, 1.0], [1.0, 5.0]])
        x.min(axis=0).sum().backward()
        assert x.grad.to_numpy().tolist() == [[1.0, 1.0], [0.0, 0.0]]

    def test_empty_global_reduction_fails_fast(self):
        x = Variable(np.zeros((0, 3)))
        for fn in (F.mean, F.var, F.max, F.min):
            with pytest.raises(ShapeError):
                fn(x)
        assert x.grad is None

    def test_negative_axis_rejected(self):
        with pytest.raises(ShapeError):
            F.sum(Variable(self.x), -1)


class TestMatMul(TestCase):
    def test_gradient_2d(self):
        assert gradient_check(F.matmul, np.random.randn(3, 4), np.random.randn(4, 2))

    def test_gradient_batched_broadcast(self):
        assert gradient_check(F.matmul, np.random.randn(2, 1, 3, 4), np.random.randn(5, 4, 2))
        assert gradient_check(F.matmul, np.random.randn(3, 4), np.random.randn(2, 4, 2))

    def test_matches_torch(self):
        a = np.random.randn(2, 3, 4)
        b = np.random.randn(1, 4, 5)
        x, y = Variable(a), Variable(b)
        (x @ y).sum().backward()

        x_t = torch.tensor(a, requires_grad=True)
        y_t = torch.tensor(b, requires_grad=True)
        torch.matmul(x_t, y_t).sum().backward()

        assert np.allclose(x.grad.to_numpy(), x_t.grad.numpy())
        assert np.allclose(y.grad.to_numpy(), y_t.grad.numpy())

    def test_shape_errors(self):
        with pytest.raises(ShapeError):
            F.matmul(Variable(np.ones((2, 3))), Variable(np.ones((2, 3))))
        with pytest.raises(ShapeError):
            F.matmul(Variable(np.ones(3)), Variable(np.ones((3, 1))))


class TestLayoutGradients(TestCase):
    def setUp(self) -> None:
        self.x = np.random.randn(2, 3, 4)

    def test_reshape(self):
        assert gradient_check(lambda v: F.reshape(v, 4, -1) * np.arange(6.0), self.x)

    def test_reshape_shares_value_buffer(self):
        x = Variable(self.x)
        y = x.reshape(6, 4)
        assert y.value.buffer is x.value.buffer

    def test_transpose(self):
        weights = np.random.randn(4, 3, 2)
        assert gradient_check(lambda v: F.transpose(v) * weights, self.x)
        weights = np.random.randn(3, 4, 2)
        assert gradient_check(lambda v: F.transpose(v, 1, 2, 0) * weights, self.x)

    def test_broadcast_to_and_sum_to(self):
        weights = np.random.randn(2, 3, 4)
        assert gradient_check(lambda v: F.broadcast_to(v, (2, 3, 4)) * weights, np.random.randn(3, 1))
        assert gradient_check(lambda v: F.sum_to(v, (1, 4)) * np.arange(4.0), self.x)

    def test_get_item(self):
        assert gradient_check(lambda v: v[1, :, 2:] * 3.0, self.x)
        x = Variable([1.0, 2.0, 3.0])
        F.get_item(x, [0, 0, 2]).sum().backward()
        assert x.grad.to_numpy().tolist() == [2.0, 0.0, 1.0]


class TestConv2d(TestCase):
    def test_gradient_check(self):
        x = np.random.randn(2, 2, 5, 4)
        k = np.random.randn(3, 2, 3, 2)
        assert gradient_check(lambda a, b: F.conv2d(a, b, stride=2, padding=1), x, k)
        assert gradient_check(lambda a, b: F.conv2d(a, b), x, k)

    def test_matches_torch(self):
        x_np = np.random.randn(2, 3, 6, 6)
        k_np = np.random.randn(4, 3, 3, 3)
        x, k = Variable(x_np), Variable(k_np)
        out = F.conv2d(x, k, stride=1, padding=1)
        (out * out).sum().backward()

        x_t = torch.tensor(x_np, requires_grad=True)
        k_t = torch.tensor(k_np, requires_grad=True)
        out_t = torch.nn.functional.conv2d(x_t, k_t, stride=1, padding=1)
        (out_t * out_t).sum().backward()

        assert np.allclose(out.to_numpy(), out_t.detach().numpy())
        assert np.allclose(x.grad.to_numpy(), x_t.grad.numpy())
        assert np.allclose(k.grad.to_numpy(), k_t.grad.numpy())

    def test_non_square_kernel_gradient_layout(self):
        # A kernel whose OC and C*KH*KW differ exposes a transposed kernel gradient.
        x_np = np.random.randn(1, 2, 4, 4)
        k_np = np.random.randn(5, 2, 2, 3)
        x, k = Variable(x_np), Variable(k_np)
        F.conv2d(x, k).sum().backward()

        k_t = torch.tensor(k_np, requires_grad=True)
        torch.nn.functional.conv2d(torch.tensor(x_np), k_t).sum().backward()
        assert k.grad.shape == (5, 2, 2, 3)
        assert np.allclose(k.grad.to_numpy(), k_t.grad.numpy())

    def test_errors(self):
        with pytest.raises(UsageError):
            F.conv2d(Variable(np.ones((1, 4, 4))), Variable(np.ones((1, 1, 2, 2))))
        with pytest.raises(ShapeError):
            F.conv2d(Variable(np.ones((1, 2, 4, 4))), Variable(np.ones((1, 1, 2, 2))))
        with pytest.raises(UsageError):
            F.conv2d(Variable(np.ones((1, 1, 4, 4))), Variable(np.ones((1, 1, 2, 2))), stride=0)


class TestDivision(TestCase):
    def test_exact_zero_raises(self):
        with pytest.raises(ZeroDivisionError):
            Variable([[1.0, 2.0]]) / Variable([[0.0, 1.0]])

    def test_constant_operands(self):
        x = Variable([2.0, 4.0])
        y = 1.0 / x
        y.sum().backward()
        assert np.allclose(y.to_numpy(), [0.5, 0.25])
        assert np.allclose(x.grad.to_numpy(), [-0.25, -1.0 / 16])
