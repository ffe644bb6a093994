# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Configuration records consumed by the forward and backward verifiers.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np

from .errors import ConfigurationError
from .layout import TensorShape


class PrecisionMode(enum.Enum):
    """Data type of the activations handed to the primitive."""

    F32 = "f32"
    S8 = "s8"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(np.float32) if self is PrecisionMode.F32 else np.dtype(np.int8)

    @property
    def is_quantized(self) -> bool:
        return self is PrecisionMode.S8


class PropKind(enum.Enum):
    """Propagation kind of a forward run."""

    FORWARD_TRAINING = "forward_training"
    FORWARD_INFERENCE = "forward_inference"


class BackwardMode(enum.Enum):
    """Whether a backward run also produces scale/shift gradients."""

    DATA = "backward_data"
    DATA_AND_PARAMS = "backward"


class NormFlags(enum.IntFlag):
    """mkl-dnn style batch normalization flags."""

    NONE = 0
    USE_GLOBAL_STATS = 1
    USE_SCALE_SHIFT = 2


@dataclass(frozen=True)
class NormalizationConfig:
    """Mode flags of one batch normalization run."""

    epsilon: float
    compute_statistics: bool = True
    has_affine_params: bool = False
    is_training: bool = True

    @classmethod
    def from_flags(
        cls,
        epsilon: float,
        flags: NormFlags = NormFlags.NONE,
        prop_kind: PropKind = PropKind.FORWARD_TRAINING,
    ) -> "NormalizationConfig":
        """Build a config from ``NormFlags`` and a propagation kind."""

        flags = NormFlags(flags)
        return cls(
            epsilon=float(epsilon),
            compute_statistics=not (flags & NormFlags.USE_GLOBAL_STATS),
            has_affine_params=bool(flags & NormFlags.USE_SCALE_SHIFT),
            is_training=prop_kind is PropKind.FORWARD_TRAINING,
        )

    @property
    def flags(self) -> NormFlags:
        flags = NormFlags.NONE
        if not self.compute_statistics:
            flags |= NormFlags.USE_GLOBAL_STATS
        if self.has_affine_params:
            flags |= NormFlags.USE_SCALE_SHIFT
        return flags

    @property
    def exposes_statistics(self) -> bool:
        """``True`` when mean/variance buffers take part in the forward check.

        Statistics are read either because they were supplied (global
        stats) or because a training run reports the ones it computed.
        """

        return not self.compute_statistics or self.is_training


@dataclass(frozen=True)
class ToleranceSettings:
    """Comparison constants.

    The floors were tuned empirically against real primitives; they are
    not derived from an error analysis. A floor of ``inf`` turns the
    relative comparison into an absolute one.
    """

    epsilon_factor: float = 1e-4
    statistics_floor: float = 1.0
    output_floor: float = 1e-2
    # int8 output is always compared in absolute terms.
    quantized_output_floor: float = math.inf
    gradient_floor: float = 1e-2
    diff_src_floor: float = 1e-2
    empty_gradient_atol: float = 1e-7
    max_reported: int = 32

    def epsilon_for(self, shape: TensorShape) -> float:
        """Bound on the relative deviation, growing with the reduction size."""

        return self.epsilon_factor * shape.reduction_size


@dataclass(frozen=True)
class BnormConfig:
    """Everything that identifies a single verification run."""

    shape: TensorShape
    normalization: NormalizationConfig
    precision: PrecisionMode = PrecisionMode.F32
    backward_mode: Optional[BackwardMode] = None
    tolerance: ToleranceSettings = field(default_factory=ToleranceSettings)
    num_threads: Optional[int] = None
    check_padding: bool = True

    def __post_init__(self):
        if not isinstance(self.precision, PrecisionMode):
            raise ConfigurationError(
                f"Unsupported precision {self.precision!r}; expected one of "
                + ", ".join(m.value for m in PrecisionMode)
            )
        if self.normalization.epsilon < 0:
            raise ConfigurationError("epsilon must be non-negative")
        if self.num_threads is not None and self.num_threads < 1:
            raise ConfigurationError("num_threads must be positive")

    @property
    def epsilon_compare(self) -> float:
        return self.tolerance.epsilon_for(self.shape)

    def with_backward(self, mode: BackwardMode) -> "BnormConfig":
        return replace(self, backward_mode=mode)

    def describe(self) -> str:
        """Human readable name used in failure reports."""

        norm = self.normalization
        s = self.shape
        parts = [
            f"mb={s.batch} c={s.channels} d={s.depth} h={s.height} w={s.width}",
            f"eps={norm.epsilon:g}",
            self.precision.value,
        ]
        if self.backward_mode is not None:
            parts.append(self.backward_mode.value)
        else:
            parts.append("training" if norm.is_training else "inference")
        parts.append("computed_stats" if norm.compute_statistics else "global_stats")
        if norm.has_affine_params:
            parts.append("scale_shift")
        return "[" + ", ".join(parts) + "]"


__all__ = [
    "PrecisionMode",
    "PropKind",
    "BackwardMode",
    "NormFlags",
    "NormalizationConfig",
    "ToleranceSettings",
    "BnormConfig",
]
