"""
resources.py
------------
Description: A circuit breaker that stops batch processing before the operating system runs out of memory.
"""

from typing import Callable, Tuple

import psutil

from gaittoolbox import config
from gaittoolbox.exceptions import ResourceExhausted, ConfigurationError


def sample_system_memory() -> Tuple[int, int]:
    memory = psutil.virtual_memory()
    return memory.available, memory.total


class MemoryGuard:
    threshold: float

    def __init__(self,
                 threshold: float = config.DEFAULT_MEMORY_THRESHOLD,
                 sampler: Callable[[], Tuple[int, int]] = sample_system_memory):
        if not 0.0 <= threshold < 1.0:
            raise ConfigurationError(f'The memory threshold must be a fraction in [0, 1), got {threshold}.')
        self.threshold = threshold
        self.sampler = sampler

    def available_fraction(self) -> float:
        available, total = self.sampler()
        if total <= 0:
            return 1.0
        return available / total

    def check(self):
        fraction = self.available_fraction()
        if fraction < self.threshold:
            raise ResourceExhausted(f'Only {fraction * 100:.1f}% of system memory is available, below the '
                                    f'{self.threshold * 100:.1f}% threshold.')
