"""
Utility functions for Pipeline Pulse.

Usage:
    from scripts.lib.utils import batched, round_half_up
"""
import math
from typing import Iterable, Iterator, List


def batched(items: Iterable, size: int) -> Iterator[List]:
    """Yield successive lists of at most `size` items."""
    batch = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (2.5 -> 3), unlike round()."""
    return int(math.floor(value + 0.5))
