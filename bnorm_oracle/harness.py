# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Drive a batch normalization primitive through the configuration grid.

The primitive is anything implementing :class:`Primitive`: it receives
buffers allocated here and writes its outputs into them in place. Each run
is then handed to :func:`verify_forward` or :func:`verify_backward`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Type

import numpy as np
from loguru import logger

from .backward import verify_backward
from .buffers import BackwardBuffers, ForwardBuffers
from .config import BackwardMode, BnormConfig, PrecisionMode, ToleranceSettings
from .errors import UnexpectedSuccess, VerificationError
from .forward import verify_forward
from .grid import BackwardCase, ForwardCase, backward_cases, fill_data, fill_variance, forward_cases
from .layout import Layout, TensorShape
from .report import VerificationResult


class Primitive(Protocol):
    """Batch normalization implementation under test."""

    def forward(self, config: BnormConfig, buffers: ForwardBuffers) -> None:
        """Write ``dst`` and, in training with computed statistics, ``mean``
        and ``variance``."""

    def backward(self, config: BnormConfig, buffers: BackwardBuffers) -> None:
        """Write ``diff_src`` and, when asked for, ``diff_scale``/``diff_shift``."""


@dataclass(frozen=True)
class CaseResult:
    name: str
    result: VerificationResult

    @property
    def passed(self) -> bool:
        return self.result.passed


def _activation(layout: Layout, dtype, rng: np.random.Generator) -> np.ndarray:
    return layout.zero_tail(fill_data(layout.size, dtype, rng))


def run_forward_case(
    primitive: Primitive,
    case: ForwardCase,
    config: BnormConfig,
    data_layout: Layout,
    rng: np.random.Generator,
    raise_on_failure: bool = True,
) -> VerificationResult:
    """Allocate and fill buffers for one forward case, run it, verify it."""

    norm = config.normalization
    channels = config.shape.channels
    dtype = config.precision.dtype

    if norm.compute_statistics:
        # Outputs of a training run; inference leaves them untouched.
        mean = np.zeros(channels, dtype=np.float32)
        variance = np.zeros(channels, dtype=np.float32)
    else:
        mean = fill_data(channels, np.float32, rng)
        variance = fill_variance(channels, rng)
    scale = shift = None
    if norm.has_affine_params:
        scale = fill_data(channels, np.float32, rng)
        shift = fill_data(channels, np.float32, rng)

    buffers = ForwardBuffers(
        src=_activation(data_layout, dtype, rng),
        dst=_activation(data_layout, dtype, rng),
        src_layout=data_layout,
        dst_layout=data_layout,
        mean=mean,
        variance=variance,
        scale=scale,
        shift=shift,
    )
    logger.debug(f"running forward case {case.name}")
    primitive.forward(config, buffers)
    return verify_forward(config, buffers, raise_on_failure=raise_on_failure)


def run_backward_case(
    primitive: Primitive,
    case: BackwardCase,
    config: BnormConfig,
    data_layout: Layout,
    diff_layout: Layout,
    rng: np.random.Generator,
    raise_on_failure: bool = True,
) -> VerificationResult:
    """Allocate and fill buffers for one backward case, run it, verify it."""

    channels = config.shape.channels
    scale = None
    if config.normalization.has_affine_params:
        scale = fill_data(channels, np.float32, rng)
    diff_scale = diff_shift = None
    if case.mode is BackwardMode.DATA_AND_PARAMS:
        diff_scale = np.zeros(channels, dtype=np.float32)
        diff_shift = np.zeros(channels, dtype=np.float32)

    buffers = BackwardBuffers(
        src=_activation(data_layout, np.float32, rng),
        diff_dst=_activation(diff_layout, np.float32, rng),
        diff_src=_activation(diff_layout, np.float32, rng),
        mean=fill_data(channels, np.float32, rng),
        variance=fill_variance(channels, rng),
        src_layout=data_layout,
        diff_dst_layout=diff_layout,
        diff_src_layout=diff_layout,
        scale=scale,
        diff_scale=diff_scale,
        diff_shift=diff_shift,
    )
    logger.debug(f"running backward case {case.name}")
    primitive.backward(config, buffers)
    return verify_backward(config, buffers, raise_on_failure=raise_on_failure)


def _run_grid(
    results: List[CaseResult],
    primitive: Primitive,
    shape: TensorShape,
    data_layout: Layout,
    diff_layout: Layout,
    epsilon: float,
    precision: PrecisionMode,
    tolerance: ToleranceSettings,
    num_threads: Optional[int],
    rng: np.random.Generator,
    raise_on_failure: bool,
) -> None:
    for case in forward_cases(precision):
        config = BnormConfig(
            shape,
            case.normalization(epsilon),
            precision,
            tolerance=tolerance,
            num_threads=num_threads,
        )
        result = run_forward_case(
            primitive, case, config, data_layout, rng, raise_on_failure
        )
        results.append(CaseResult(case.name, result))

    for case in backward_cases(precision):
        config = BnormConfig(
            shape,
            case.normalization(epsilon),
            precision,
            backward_mode=case.mode,
            tolerance=tolerance,
            num_threads=num_threads,
        )
        result = run_backward_case(
            primitive, case, config, data_layout, diff_layout, rng, raise_on_failure
        )
        results.append(CaseResult(case.name, result))


def validate_primitive(
    primitive: Primitive,
    shape: TensorShape,
    data_format: str,
    diff_format: Optional[str] = None,
    *,
    epsilon: float = 1e-5,
    precision: PrecisionMode = PrecisionMode.F32,
    tolerance: Optional[ToleranceSettings] = None,
    num_threads: Optional[int] = None,
    seed: int = 0,
    raise_on_failure: bool = True,
    expected_error: Optional[Type[BaseException]] = None,
) -> List[CaseResult]:
    """Run every forward and backward case that applies to ``precision``.

    With ``raise_on_failure`` the first failing case raises
    :class:`~bnorm_oracle.errors.VerificationError`; otherwise every case
    runs and the caller inspects the returned results.

    ``expected_error`` marks a configuration the primitive must reject. The
    run stops at the first case where the primitive raises it and returns
    the cases completed before that. A run that finishes without it raises
    :class:`~bnorm_oracle.errors.UnexpectedSuccess`.
    """

    rng = np.random.default_rng(seed)
    data_layout = Layout.from_name(data_format, shape)
    diff_layout = Layout.from_name(diff_format or data_format, shape)
    tolerance = tolerance or ToleranceSettings()
    description = f"{shape.dims} {data_format}/{diff_format or data_format}"

    results: List[CaseResult] = []
    try:
        _run_grid(
            results,
            primitive,
            shape,
            data_layout,
            diff_layout,
            epsilon,
            precision,
            tolerance,
            num_threads,
            rng,
            raise_on_failure,
        )
    except (expected_error or ()) as exc:
        # Reference mismatches are never what the caller expected.
        if isinstance(exc, VerificationError):
            raise
        logger.info(
            f"primitive rejected {description} with {type(exc).__name__} "
            f"after {len(results)} case(s)"
        )
        return results

    if expected_error is not None:
        raise UnexpectedSuccess(
            f"expected {expected_error.__name__} for {description}, "
            f"but all {len(results)} case(s) ran"
        )

    failed = sum(not r.passed for r in results)
    logger.info(f"{len(results) - failed}/{len(results)} cases passed for {description}")
    return results


__all__ = [
    "Primitive",
    "CaseResult",
    "run_forward_case",
    "run_backward_case",
    "validate_primitive",
]
