# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

from __future__ import annotations

from loguru import logger

from . import grid, harness, layout, quantize, tolerance
from .backward import verify_backward
from .buffers import BackwardBuffers, ForwardBuffers, split_weights
from .config import (
    BackwardMode,
    BnormConfig,
    NormalizationConfig,
    NormFlags,
    PrecisionMode,
    PropKind,
    ToleranceSettings,
)
from .errors import (
    ConfigurationError,
    ToleranceViolation,
    UnexpectedSuccess,
    VerificationError,
)
from .forward import verify_forward
from .harness import validate_primitive
from .layout import Layout, TensorShape
from .report import VerificationResult
from .tolerance import nearly_equal, relative_deviation

__version__ = "0.1.0"

# Library code stays silent until the application calls logger.enable("bnorm_oracle").
logger.disable(__name__)

__all__ = [
    "grid",
    "harness",
    "layout",
    "quantize",
    "tolerance",
    "verify_forward",
    "verify_backward",
    "validate_primitive",
    "ForwardBuffers",
    "BackwardBuffers",
    "split_weights",
    "BackwardMode",
    "BnormConfig",
    "NormalizationConfig",
    "NormFlags",
    "PrecisionMode",
    "PropKind",
    "ToleranceSettings",
    "ConfigurationError",
    "ToleranceViolation",
    "UnexpectedSuccess",
    "VerificationError",
    "VerificationResult",
    "Layout",
    "TensorShape",
    "nearly_equal",
    "relative_deviation",
]
