"""
pytest configuration and shared fixtures.
"""

import pytest
import numpy as np


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


@pytest.fixture
def numerical_gradient():
    """Central finite differences of a scalar function."""
    def _gradient(f, x, rel_step=1e-5):
        x = np.asarray(x, dtype=np.float64)
        g = np.zeros_like(x)
        for i in range(x.shape[0]):
            h = rel_step * max(abs(x[i]), 1.0)
            up = x.copy()
            up[i] += h
            down = x.copy()
            down[i] -= h
            g[i] = (f(up) - f(down)) / (2.0 * h)
        return g
    return _gradient
