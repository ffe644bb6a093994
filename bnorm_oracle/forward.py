# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Reference forward batch normalization.

Statistics and the normalized output are recomputed channel by channel from
``src`` and compared against what the primitive wrote to ``dst`` (and, for
training runs, to its mean/variance outputs).
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
from loguru import logger

from ._parallel import parallel_channels
from .buffers import ForwardBuffers, per_channel_array
from .config import BnormConfig
from .errors import ToleranceViolation
from .layout import Layout
from .quantize import to_destination
from .report import VerificationResult, conclude
from .tolerance import check_zero_tail, compare_channel


def channel_values(buffer: np.ndarray, layout: Layout, c: int) -> np.ndarray:
    """Values of channel ``c`` in ``(n, d, h, w)`` order, as float32."""

    flat = np.asarray(buffer).reshape(-1)
    return flat[layout.channel_offsets(c)].astype(np.float32)


def channel_statistics(values: np.ndarray) -> Tuple[float, float]:
    """Population mean and variance of one channel.

    The variance pass starts from the finished mean, so the two reductions
    run strictly one after the other.
    """

    values = np.asarray(values, dtype=np.float64)
    count = values.size
    mean = np.sum(values) / count
    variance = np.sum((values - mean) ** 2) / count
    return float(mean), float(variance)


def normalize(
    values: np.ndarray,
    mean: float,
    variance: float,
    epsilon: float,
    scale: Optional[float] = None,
    shift: Optional[float] = None,
) -> np.ndarray:
    """``(x - mean) / sqrt(variance + epsilon)``, then ``scale * y + shift``."""

    inv_std = 1.0 / np.sqrt(np.float64(variance) + epsilon)
    out = (np.asarray(values, dtype=np.float64) - mean) * inv_std
    if scale is not None:
        out = scale * out + shift
    return out


def verify_forward(
    config: BnormConfig, buffers: ForwardBuffers, *, raise_on_failure: bool = True
) -> VerificationResult:
    """Check a forward batch normalization run against the reference.

    Raises :class:`~bnorm_oracle.errors.VerificationError` when any value
    falls outside tolerance (unless ``raise_on_failure`` is false) and
    :class:`~bnorm_oracle.errors.ConfigurationError` for unusable input.
    """

    buffers.validate(config)
    if config.shape.is_empty:
        logger.debug(f"empty tensor, nothing to verify for {config.describe()}")
        return VerificationResult(config)

    logger.debug(f"verifying {config.describe()}")

    norm = config.normalization
    tol = config.tolerance
    eps = config.epsilon_compare
    quantized = config.precision.is_quantized
    output_floor = tol.quantized_output_floor if quantized else tol.output_floor
    limit = tol.max_reported

    src = np.asarray(buffers.src).reshape(-1)
    dst = np.asarray(buffers.dst).reshape(-1)
    src_layout = buffers.src_layout
    dst_layout = buffers.output_layout
    coordinates = src_layout.channel_coordinates()
    reported_mean = per_channel_array(buffers.mean)
    reported_variance = per_channel_array(buffers.variance)
    scale = per_channel_array(buffers.scale)
    shift = per_channel_array(buffers.shift)

    def check_channel(c: int) -> Tuple[float, float, List[ToleranceViolation]]:
        violations: List[ToleranceViolation] = []
        values = channel_values(src, src_layout, c)

        if norm.compute_statistics:
            mean, variance = channel_statistics(values)
            if norm.is_training:
                violations += compare_channel(
                    "mean", c, reported_mean[c], mean, eps, tol.statistics_floor
                )
                violations += compare_channel(
                    "variance", c, reported_variance[c], variance, eps, tol.statistics_floor
                )
        else:
            mean = float(reported_mean[c])
            variance = float(reported_variance[c])

        if norm.has_affine_params:
            out = normalize(
                values,
                mean,
                variance,
                norm.epsilon,
                float(scale[c]),
                float(shift[c]),
            )
        else:
            out = normalize(values, mean, variance, norm.epsilon)

        expected = to_destination(out, config.precision)
        actual = dst[dst_layout.channel_offsets(c)]
        violations += compare_channel(
            "dst", c, actual, expected, eps, output_floor, coordinates, limit
        )
        return mean, variance, violations

    per_channel = parallel_channels(check_channel, config.shape.channels, config.num_threads)

    violations: List[ToleranceViolation] = []
    for _, _, found in per_channel:
        violations.extend(found)
    if config.check_padding:
        violations.extend(check_zero_tail("dst", dst, dst_layout, limit))

    return conclude(
        config,
        violations,
        raise_on_failure,
        mean=np.array([m for m, _, _ in per_channel], dtype=np.float64),
        variance=np.array([v for _, v, _ in per_channel], dtype=np.float64),
    )


__all__ = ["verify_forward", "channel_statistics", "channel_values", "normalize"]
