# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")


def parallel_channels(
    fn: Callable[[int], T], channels: int, num_threads: Optional[int] = None
) -> List[T]:
    """Run ``fn(c)`` for every channel and return the results in channel order.

    Channels share nothing writable, so no locking is involved. A single
    thread, or a single channel, runs inline on the caller's thread.
    """

    if channels <= 0:
        return []
    if num_threads == 1 or channels == 1:
        return [fn(c) for c in range(channels)]

    with ThreadPoolExecutor(max_workers=num_threads) as pool:
        return list(pool.map(fn, range(channels)))


__all__ = ["parallel_channels"]
