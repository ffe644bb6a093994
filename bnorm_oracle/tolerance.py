# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""Scale-adaptive near-equality used by both reference engines."""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

from .errors import ToleranceViolation
from .layout import Layout


def _normalizing_scale(actual, expected, floor: float):
    scale = np.maximum(np.abs(actual), np.abs(expected))
    return np.where((scale < floor) | (scale == 0), 1.0, scale)


def relative_deviation(actual, expected, floor: float):
    """``|actual - expected| / max(|actual|, |expected|)``, with the
    denominator replaced by one when it is below ``floor``."""

    actual = np.asarray(actual, dtype=np.float64)
    expected = np.asarray(expected, dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        deviation = np.abs(actual - expected) / _normalizing_scale(actual, expected, floor)
    if deviation.ndim == 0:
        return float(deviation)
    return deviation


def nearly_equal(actual, expected, epsilon: float, floor: float):
    """Return whether ``actual`` matches ``expected`` within ``epsilon``.

    Scalars give a ``bool``; arrays give an elementwise boolean array.
    NaN on either side never matches.
    """

    deviation = np.asarray(relative_deviation(actual, expected, floor))
    result = deviation <= epsilon
    if result.ndim == 0:
        return bool(result)
    return result


def compare_channel(
    quantity: str,
    channel: int,
    actual,
    expected,
    epsilon: float,
    floor: float,
    coordinates: Optional[Sequence[np.ndarray]] = None,
    limit: Optional[int] = None,
) -> List[ToleranceViolation]:
    """Compare the values of one channel and describe every mismatch.

    ``coordinates`` holds the raveled ``(n, d, h, w)`` grids matching the
    elements of ``actual``; per-channel scalars leave it as ``None``.
    """

    actual = np.atleast_1d(np.asarray(actual, dtype=np.float64))
    expected = np.atleast_1d(np.asarray(expected, dtype=np.float64))
    deviation = np.atleast_1d(relative_deviation(actual, expected, floor))
    failed = np.flatnonzero(~(deviation <= epsilon))
    if limit is not None:
        failed = failed[:limit]

    violations = []
    for i in failed:
        coordinate = None
        if coordinates is not None:
            n, d, h, w = (int(g[i]) for g in coordinates)
            coordinate = (n, channel, d, h, w)
        violations.append(
            ToleranceViolation(
                quantity=quantity,
                channel=channel,
                coordinate=coordinate,
                expected=float(expected[i]),
                actual=float(actual[i]),
                deviation=float(deviation[i]),
                epsilon=float(epsilon),
            )
        )
    return violations


def check_zero_tail(
    quantity: str, buffer: np.ndarray, layout: Layout, limit: Optional[int] = None
) -> List[ToleranceViolation]:
    """Report padded channel entries of ``buffer`` that are not exactly zero."""

    if not layout.has_padding:
        return []
    coords = layout.padding_coordinates()
    values = np.asarray(buffer).reshape(-1)[layout.offset(*coords.T)]
    bad = np.flatnonzero(values != 0)
    if limit is not None:
        bad = bad[:limit]
    return [
        ToleranceViolation(
            quantity=f"{quantity} padding",
            channel=int(coords[i, 1]),
            coordinate=tuple(int(x) for x in coords[i]),
            expected=0.0,
            actual=float(values[i]),
            deviation=float("inf"),
            epsilon=0.0,
        )
        for i in bad
    ]


__all__ = [
    "relative_deviation",
    "nearly_equal",
    "compare_channel",
    "check_zero_tail",
]
