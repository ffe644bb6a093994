# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""Conversion of reference output to the primitive's destination type."""

from __future__ import annotations

import numpy as np

from .config import PrecisionMode


def saturate(values, dtype=np.int8) -> np.ndarray:
    """Clamp ``values`` to the representable range of integer ``dtype``."""

    info = np.iinfo(dtype)
    values = np.asarray(values, dtype=np.float32)
    # NaN has no integer image; mkl-dnn maps it to zero.
    values = np.where(np.isnan(values), np.float32(0), values)
    return np.clip(values, info.min, info.max)


def out_round(values, dtype=np.int8) -> np.ndarray:
    """Round half to even, the default floating point rounding mode."""

    return np.rint(values).astype(dtype)


def to_destination(values, precision: PrecisionMode) -> np.ndarray:
    """Express float reference values the way the primitive stores them.

    ``F32`` output is compared as-is. Quantized output is saturated first
    and rounded second, so out-of-range values pin to the type limits
    instead of wrapping.
    """

    if not precision.is_quantized:
        return np.asarray(values, dtype=np.float32)
    return out_round(saturate(values, precision.dtype), precision.dtype)


__all__ = ["saturate", "out_round", "to_destination"]
