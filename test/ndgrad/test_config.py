from unittest import TestCase

import pytest

from ndgrad.config import Config, config, no_grad, using_config
from ndgrad.ndarray import NdArray
from ndgrad.variable import Variable


class TestConfig(TestCase):
    def test_defaults(self):
        defaults = Config()
        assert defaults.enable_backprop
        assert not defaults.retain_grad
        assert defaults.dtype == "float64"

    def test_using_config_restores_value(self):
        with using_config("retain_grad", True):
            assert config.retain_grad
            with using_config("retain_grad", False):
                assert not config.retain_grad
            assert config.retain_grad
        assert not config.retain_grad

    def test_using_config_restores_on_error(self):
        with pytest.raises(RuntimeError):
            with no_grad():
                raise RuntimeError("boom")
        assert config.enable_backprop

    def test_unknown_field(self):
        with pytest.raises(AttributeError):
            with using_config("does_not_exist", 1):
                pass

    def test_dtype(self):
        with using_config("dtype", "float32"):
            a = NdArray.of([1, 2])
        assert a.buffer.dtype.name == "float32"
        assert NdArray.of([1, 2]).buffer.dtype.name == "float64"

    def test_no_grad_blocks_graph(self):
        x = Variable(2.0)
        with no_grad():
            y = x * x
        assert y.creator is None
        z = x * x
        assert z.creator is not None
