"""Conftest for tests.

Pin the precomputation thread pool to two workers before importing the
package, so the threaded build path is exercised whatever the machine.
"""

import os

os.environ.setdefault("DISPERSAL_MAX_WORKERS", "2")

import numpy as np  # noqa: E402
import pytest  # noqa: E402


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def small_pop():
    return np.array([[1.0, 2.0], [3.0, 4.0]])


@pytest.fixture
def uniform_pop():
    return np.ones((9, 9))


@pytest.fixture
def random_pop():
    return np.random.default_rng(7).integers(1, 1000, size=(12, 12)).astype(np.float64)
