"""Small helpers shared across the ML core."""

from typing import Optional, Union

import numpy as np

RandomState = Optional[Union[int, np.random.Generator]]


def make_rng(random_state: RandomState = None) -> np.random.Generator:
    """
    Return a numpy Generator for ``random_state``.

    Passing an existing Generator shares it, so one seeded source can drive
    both synthetic data generation and forest construction.
    """
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)
