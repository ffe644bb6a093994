# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Reference backward batch normalization.

The forward statistics handed to the primitive are reused verbatim; they are
never recomputed from ``src`` here.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
from loguru import logger

from ._parallel import parallel_channels
from .buffers import BackwardBuffers, per_channel_array
from .config import BackwardMode, BnormConfig
from .errors import ToleranceViolation
from .forward import channel_values
from .report import VerificationResult, conclude
from .tolerance import check_zero_tail, compare_channel


def parameter_gradients(
    values: np.ndarray, diff_dst: np.ndarray, mean: float, inv_std: float
) -> Tuple[float, float]:
    """Gradients of scale and shift for one channel."""

    values = np.asarray(values, dtype=np.float64)
    diff_dst = np.asarray(diff_dst, dtype=np.float64)
    diff_scale = inv_std * np.sum((values - mean) * diff_dst)
    diff_shift = np.sum(diff_dst)
    return float(diff_scale), float(diff_shift)


def input_gradient(
    values: np.ndarray,
    diff_dst: np.ndarray,
    mean: float,
    inv_std: float,
    diff_scale: float,
    diff_shift: float,
    gamma: float = 1.0,
    statistics_computed: bool = True,
) -> np.ndarray:
    """Gradient with respect to ``src`` for one channel.

    When the statistics were computed from the batch they depend on ``src``
    too, which adds the mean/variance correction term.
    """

    values = np.asarray(values, dtype=np.float64)
    diff_src = np.array(diff_dst, dtype=np.float64)
    if statistics_computed:
        count = values.size
        diff_src -= diff_shift / count + (values - mean) * diff_scale * inv_std / count
    return diff_src * (gamma * inv_std)


def _empty_gradient_violations(
    config: BnormConfig, buffers: BackwardBuffers
) -> List[ToleranceViolation]:
    atol = config.tolerance.empty_gradient_atol
    violations = []
    for name, values in (("diff_scale", buffers.diff_scale), ("diff_shift", buffers.diff_shift)):
        values = per_channel_array(values)
        for c in range(config.shape.channels):
            value = float(values[c])
            if not abs(value) <= atol:
                violations.append(
                    ToleranceViolation(name, c, None, 0.0, value, abs(value), atol)
                )
    return violations


def verify_backward(
    config: BnormConfig, buffers: BackwardBuffers, *, raise_on_failure: bool = True
) -> VerificationResult:
    """Check a backward batch normalization run against the reference.

    ``config.backward_mode`` selects whether the scale/shift gradients are
    checked in addition to ``diff_src``.
    """

    buffers.validate(config)
    with_params = config.backward_mode is BackwardMode.DATA_AND_PARAMS

    if config.shape.is_empty:
        logger.debug(f"empty tensor in {config.describe()}")
        violations = _empty_gradient_violations(config, buffers) if with_params else []
        return conclude(config, violations, raise_on_failure)

    logger.debug(f"verifying {config.describe()}")

    norm = config.normalization
    tol = config.tolerance
    eps = config.epsilon_compare
    limit = tol.max_reported

    src = np.asarray(buffers.src).reshape(-1)
    diff_dst = np.asarray(buffers.diff_dst).reshape(-1)
    diff_src = np.asarray(buffers.diff_src).reshape(-1)
    src_layout = buffers.src_layout
    diff_dst_layout = buffers.gradient_layout
    diff_src_layout = buffers.diff_src_output_layout
    coordinates = src_layout.channel_coordinates()

    mean = per_channel_array(buffers.mean)
    variance = per_channel_array(buffers.variance)
    scale: Optional[np.ndarray] = per_channel_array(buffers.scale)
    reported_diff_scale = per_channel_array(buffers.diff_scale)
    reported_diff_shift = per_channel_array(buffers.diff_shift)

    def check_channel(c: int) -> Tuple[float, float, List[ToleranceViolation]]:
        violations: List[ToleranceViolation] = []
        values = channel_values(src, src_layout, c)
        grads = channel_values(diff_dst, diff_dst_layout, c)

        channel_mean = float(mean[c])
        inv_std = 1.0 / np.sqrt(np.float64(variance[c]) + norm.epsilon)
        gamma = float(scale[c]) if norm.has_affine_params else 1.0

        ref_diff_scale, ref_diff_shift = parameter_gradients(
            values, grads, channel_mean, inv_std
        )
        if with_params:
            violations += compare_channel(
                "diff_scale", c, reported_diff_scale[c], ref_diff_scale, eps,
                tol.gradient_floor,
            )
            violations += compare_channel(
                "diff_shift", c, reported_diff_shift[c], ref_diff_shift, eps,
                tol.gradient_floor,
            )

        expected = input_gradient(
            values,
            grads,
            channel_mean,
            inv_std,
            ref_diff_scale,
            ref_diff_shift,
            gamma,
            statistics_computed=norm.compute_statistics,
        )
        actual = diff_src[diff_src_layout.channel_offsets(c)]
        violations += compare_channel(
            "diff_src", c, actual, expected, eps, tol.diff_src_floor, coordinates, limit
        )
        return ref_diff_scale, ref_diff_shift, violations

    per_channel = parallel_channels(check_channel, config.shape.channels, config.num_threads)

    violations: List[ToleranceViolation] = []
    for _, _, found in per_channel:
        violations.extend(found)
    if config.check_padding:
        violations.extend(check_zero_tail("diff_src", diff_src, diff_src_layout, limit))

    return conclude(
        config,
        violations,
        raise_on_failure,
        mean=np.asarray(mean[: config.shape.channels], dtype=np.float64),
        variance=np.asarray(variance[: config.shape.channels], dtype=np.float64),
        diff_scale=np.array([g for g, _, _ in per_channel], dtype=np.float64),
        diff_shift=np.array([b for _, b, _ in per_channel], dtype=np.float64),
    )


__all__ = ["verify_backward", "parameter_gradients", "input_gradient"]
