# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Declarative table of the mode combinations every primitive is run through,
plus the deterministic data used to fill its buffers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .config import (
    BackwardMode,
    NormalizationConfig,
    NormFlags,
    PrecisionMode,
    PropKind,
)

GLOBAL = NormFlags.USE_GLOBAL_STATS
SCALE_SHIFT = NormFlags.USE_SCALE_SHIFT


@dataclass(frozen=True)
class ForwardCase:
    prop_kind: PropKind
    flags: NormFlags = NormFlags.NONE

    def normalization(self, epsilon: float) -> NormalizationConfig:
        return NormalizationConfig.from_flags(epsilon, self.flags, self.prop_kind)

    @property
    def name(self) -> str:
        return _case_name(self.prop_kind.value, self.flags)


@dataclass(frozen=True)
class BackwardCase:
    mode: BackwardMode
    flags: NormFlags = NormFlags.NONE

    def normalization(self, epsilon: float) -> NormalizationConfig:
        # Backward always pairs with a training forward pass.
        return NormalizationConfig.from_flags(epsilon, self.flags, PropKind.FORWARD_TRAINING)

    @property
    def name(self) -> str:
        return _case_name(self.mode.value, self.flags)


def _case_name(kind: str, flags: NormFlags) -> str:
    names = [kind]
    if flags & GLOBAL:
        names.append("use_global_stats")
    if flags & SCALE_SHIFT:
        names.append("use_scale_shift")
    return "|".join(names)


_TRAINING = PropKind.FORWARD_TRAINING
_INFERENCE = PropKind.FORWARD_INFERENCE

FORWARD_F32_CASES: Tuple[ForwardCase, ...] = (
    ForwardCase(_TRAINING),
    ForwardCase(_TRAINING, GLOBAL),
    ForwardCase(_TRAINING, SCALE_SHIFT),
    ForwardCase(_TRAINING, SCALE_SHIFT | GLOBAL),
    ForwardCase(_INFERENCE),
    ForwardCase(_INFERENCE, GLOBAL),
    ForwardCase(_INFERENCE, SCALE_SHIFT),
)

BACKWARD_F32_CASES: Tuple[BackwardCase, ...] = (
    BackwardCase(BackwardMode.DATA),
    BackwardCase(BackwardMode.DATA, GLOBAL),
    BackwardCase(BackwardMode.DATA, SCALE_SHIFT),
    BackwardCase(BackwardMode.DATA, SCALE_SHIFT | GLOBAL),
    BackwardCase(BackwardMode.DATA_AND_PARAMS, SCALE_SHIFT),
    BackwardCase(BackwardMode.DATA_AND_PARAMS, SCALE_SHIFT | GLOBAL),
)

# Quantized primitives only run inference on supplied statistics.
FORWARD_S8_CASES: Tuple[ForwardCase, ...] = (
    ForwardCase(_INFERENCE, GLOBAL),
    ForwardCase(_INFERENCE, GLOBAL | SCALE_SHIFT),
)


def forward_cases(precision: PrecisionMode) -> Tuple[ForwardCase, ...]:
    return FORWARD_S8_CASES if precision.is_quantized else FORWARD_F32_CASES


def backward_cases(precision: PrecisionMode) -> Tuple[BackwardCase, ...]:
    return () if precision.is_quantized else BACKWARD_F32_CASES


def fill_data(size: int, dtype, rng: np.random.Generator) -> np.ndarray:
    """Deterministic test data for a buffer of ``size`` elements.

    Floats are drawn around zero with unit spread. Integers stay well inside
    the int8 range so normalized values are not all saturated.
    """

    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        return rng.integers(-16, 17, size=size).astype(dtype)
    return rng.standard_normal(size).astype(dtype)


def fill_variance(size: int, rng: np.random.Generator) -> np.ndarray:
    """Strictly positive variances for supplied statistics."""

    return rng.uniform(0.25, 2.0, size=size).astype(np.float32)


__all__ = [
    "ForwardCase",
    "BackwardCase",
    "FORWARD_F32_CASES",
    "BACKWARD_F32_CASES",
    "FORWARD_S8_CASES",
    "forward_cases",
    "backward_cases",
    "fill_data",
    "fill_variance",
]
