import numpy as np
import pytest
import torch

from ndgrad.config import config


@pytest.fixture(autouse=True)
def seed_everything():
    """
    Seed numpy and torch before every test so random inputs are reproducible.
    """
    np.random.seed(42)
    torch.manual_seed(42)
    yield


@pytest.fixture(autouse=True)
def restore_config():
    """
    Undo any change a test made to the global engine config.
    """
    saved = (config.enable_backprop, config.retain_grad, config.dtype)
    yield
    config.enable_backprop, config.retain_grad, config.dtype = saved
