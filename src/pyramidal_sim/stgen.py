"""
Stochastic presynaptic release generators.

A generator tracks a fixed number of presynaptic indices and, at every time
step, decides for each index whether it releases. Releases are Bernoulli
events with probability p = frequency * dt / 1000 per step. Pairwise
correlation c between indices is obtained by mixing a shared ("mother")
event stream into private streams: at every step each index copies the
mother draw with probability sqrt(c) and otherwise uses its own draw.
"""

from typing import List, Optional, Sequence, Union

import math

import numpy as np
from pyramidal_sim.utils import get_module_logger

# This logger will inherit its settings from the root logger, created in pyramidal_sim.env
logger = get_module_logger(__name__)

## tolerance for comparisons of simulation times
EPS = 1e-9


class PresynapticIndexError(IndexError):
    """Raised when a release indicator is read beyond the size of a generator."""


def derive_seeds(seed: int, n: int) -> List[int]:
    """
    Derives `n` independent stream seeds from a single run seed.
    """
    if n == 0:
        return []
    return [int(s) for s in np.random.SeedSequence(seed).generate_state(n)]


class PresynapticGenerator:
    def __init__(
        self,
        name: str,
        size: int,
        dt: float,
        frequency: float = 1.0,
        correlation: float = 0.0,
        latency: float = 0.0,
        duration: float = 1e9,
        rng: Optional[np.random.RandomState] = None,
        seed: Optional[int] = None,
    ) -> None:
        """
        Correlated Bernoulli release generator.

        :param name: name of the generator, used in diagnostics
        :param size: number of tracked presynaptic indices
        :param dt: time step (ms)
        :param frequency: mean release frequency per index (Hz)
        :param correlation: pairwise correlation coefficient between indices, in [0, 1]
        :param latency: start of the active window (ms)
        :param duration: length of the active window (ms)
        :param rng: :class:'np.random.RandomState' (optional)
        :param seed: seed for the rng (optional)
        """
        if size < 0:
            raise ValueError(f"generator {name}: size must be non-negative, got {size}")
        if dt <= 0.0:
            raise ValueError(f"generator {name}: time step must be positive, got {dt}")
        self.name = name
        self.size = int(size)
        self.dt = dt
        self.frequency = frequency
        self.correlation = correlation
        self.latency = latency
        self.duration = duration

        if rng is None:
            self.rng = np.random.RandomState()
        else:
            self.rng = rng
        if seed is not None:
            self.rng.seed(seed)

        self.released = np.zeros(self.size, dtype=bool)
        self.last_event = np.full(self.size, -1e9)
        self.n_events = np.zeros(self.size, dtype=np.int64)

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return (
            f"PresynapticGenerator({self.name}, size={self.size}, "
            f"frequency={self.frequency}, correlation={self.correlation})"
        )

    @property
    def frequency(self) -> float:
        return self._frequency

    @frequency.setter
    def frequency(self, value: float) -> None:
        if value < 0.0:
            raise ValueError(
                f"generator {self.name}: frequency must be non-negative, got {value}"
            )
        self._frequency = float(value)

    @property
    def correlation(self) -> float:
        return self._correlation

    @correlation.setter
    def correlation(self, value: float) -> None:
        if value < 0.0 or value > 1.0:
            raise ValueError(
                f"generator {self.name}: correlation must be in [0, 1], got {value}"
            )
        self._correlation = float(value)

    @property
    def probability(self) -> float:
        """Release probability of a single index per time step."""
        return min(self.frequency * self.dt / 1000.0, 1.0)

    def seed(self, seed: int) -> None:
        """Seeds the rng and clears the release history."""
        self.rng.seed(seed)
        self.reset()

    def reset(self) -> None:
        self.released[:] = False
        self.last_event[:] = -1e9
        self.n_events[:] = 0

    def is_active(self, t: float) -> bool:
        return (t >= self.latency - EPS) and (
            t < self.latency + self.duration - EPS
        )

    def step(self, t: float) -> np.ndarray:
        """
        Decides release for every index at time t.

        :param t: current simulation time (ms)
        :return: boolean array of release indicators
        """
        p = self.probability
        if self.size == 0 or p <= 0.0 or not self.is_active(t):
            self.released[:] = False
            return self.released

        c = self.correlation
        private = self.rng.random_sample(self.size) < p
        if c > 0.0:
            mother = self.rng.random_sample() < p
            shared = self.rng.random_sample(self.size) < math.sqrt(c)
            self.released[:] = np.where(shared, mother, private)
        else:
            self.released[:] = private
        self.last_event[self.released] = t
        self.n_events += self.released
        return self.released

    def read(
        self,
        indices: Union[int, Sequence[int], np.ndarray],
        reader: Optional[str] = None,
    ) -> np.ndarray:
        """
        Returns the release indicators of the given indices for the current step.

        :param indices: presynaptic indices
        :param reader: name of the reading mechanism, used in diagnostics
        """
        idx = np.atleast_1d(np.asarray(indices, dtype=np.int64))
        if idx.size > 0:
            bad = idx[(idx < 0) | (idx >= self.size)]
            if bad.size > 0:
                raise PresynapticIndexError(
                    f"{reader if reader is not None else 'reader'}: presynaptic index "
                    f"{int(bad[0])} out of range for generator {self.name} "
                    f"of size {self.size}"
                )
        return self.released[idx]

    def generate(self, n_steps: int, t_start: float = 0.0) -> np.ndarray:
        """
        Runs the generator for `n_steps` steps and returns the release
        indicators as an array of shape (n_steps, size).
        """
        result = np.zeros((n_steps, self.size), dtype=bool)
        for i in range(n_steps):
            result[i, :] = self.step(t_start + i * self.dt)
        return result
