# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Read-only views of the buffers a primitive consumed and produced.

Activations and their gradients are flat physical buffers described by a
:class:`~bnorm_oracle.layout.Layout`. Statistics, affine parameters and their
gradients are dense float arrays with one entry per logical channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config import BackwardMode, BnormConfig, PrecisionMode
from .errors import ConfigurationError
from .layout import Layout


def split_weights(weights: np.ndarray, channels: int) -> Tuple[np.ndarray, np.ndarray]:
    """Split an mkl-dnn ``[scale; shift]`` weights buffer into its halves."""

    weights = np.asarray(weights, dtype=np.float32).reshape(-1)
    if weights.size < 2 * channels:
        raise ConfigurationError(
            f"Weights buffer holds {weights.size} values, expected {2 * channels}"
        )
    return weights[:channels], weights[channels : 2 * channels]


def per_channel_array(values: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Flatten a per-channel array such as ``(1, C, 1, 1)`` to ``(C,)``."""

    if values is None:
        return None
    return np.asarray(values).reshape(-1)


def _flat(name: str, buffer: np.ndarray) -> np.ndarray:
    if buffer is None:
        raise ConfigurationError(f"'{name}' buffer is required for this configuration")
    return np.asarray(buffer).reshape(-1)


def _check_activation(name: str, buffer, layout: Layout, config: BnormConfig, dtype):
    flat = _flat(name, buffer)
    if layout.shape != config.shape:
        raise ConfigurationError(
            f"'{name}' layout describes {layout.shape.dims}, "
            f"configuration expects {config.shape.dims}"
        )
    if flat.size < layout.size:
        raise ConfigurationError(
            f"'{name}' holds {flat.size} elements but its layout needs {layout.size}"
        )
    if flat.dtype != dtype:
        raise ConfigurationError(
            f"'{name}' has dtype {flat.dtype}, expected {np.dtype(dtype)} "
            f"for {config.precision.value}"
        )


def _check_channel_array(name: str, values, channels: int):
    flat = _flat(name, values)
    if flat.size < channels:
        raise ConfigurationError(
            f"'{name}' holds {flat.size} values, expected one per channel ({channels})"
        )
    if not np.issubdtype(flat.dtype, np.floating):
        raise ConfigurationError(f"'{name}' must be a floating point array")


@dataclass(frozen=True)
class ForwardBuffers:
    """Inputs and outputs of a forward run."""

    src: np.ndarray
    dst: np.ndarray
    src_layout: Layout
    dst_layout: Optional[Layout] = None
    mean: Optional[np.ndarray] = None
    variance: Optional[np.ndarray] = None
    scale: Optional[np.ndarray] = None
    shift: Optional[np.ndarray] = None

    @property
    def output_layout(self) -> Layout:
        return self.src_layout if self.dst_layout is None else self.dst_layout

    def validate(self, config: BnormConfig) -> None:
        """Fail fast on anything the reference cannot check."""

        dtype = config.precision.dtype
        _check_activation("src", self.src, self.src_layout, config, dtype)
        _check_activation("dst", self.dst, self.output_layout, config, dtype)
        if config.shape.is_empty:
            return
        channels = config.shape.channels
        if config.normalization.exposes_statistics:
            _check_channel_array("mean", self.mean, channels)
            _check_channel_array("variance", self.variance, channels)
        if config.normalization.has_affine_params:
            _check_channel_array("scale", self.scale, channels)
            _check_channel_array("shift", self.shift, channels)


@dataclass(frozen=True)
class BackwardBuffers:
    """Inputs and outputs of a backward run.

    ``mean`` and ``variance`` are the statistics of the matching forward
    pass; the reference reuses them as they are.
    """

    src: np.ndarray
    diff_dst: np.ndarray
    diff_src: np.ndarray
    mean: np.ndarray
    variance: np.ndarray
    src_layout: Layout
    diff_dst_layout: Optional[Layout] = None
    diff_src_layout: Optional[Layout] = None
    scale: Optional[np.ndarray] = None
    diff_scale: Optional[np.ndarray] = None
    diff_shift: Optional[np.ndarray] = None

    @property
    def gradient_layout(self) -> Layout:
        return self.src_layout if self.diff_dst_layout is None else self.diff_dst_layout

    @property
    def diff_src_output_layout(self) -> Layout:
        if self.diff_src_layout is not None:
            return self.diff_src_layout
        return self.gradient_layout

    def validate(self, config: BnormConfig) -> None:
        if config.precision is not PrecisionMode.F32:
            raise ConfigurationError(
                f"Backward verification supports f32 only, got {config.precision.value}"
            )
        if config.backward_mode is None:
            raise ConfigurationError("Backward verification needs a backward_mode")

        channels = config.shape.channels
        if config.backward_mode is BackwardMode.DATA_AND_PARAMS:
            _check_channel_array("diff_scale", self.diff_scale, channels)
            _check_channel_array("diff_shift", self.diff_shift, channels)
        if config.shape.is_empty:
            return

        dtype = np.float32
        _check_activation("src", self.src, self.src_layout, config, dtype)
        _check_activation("diff_dst", self.diff_dst, self.gradient_layout, config, dtype)
        _check_activation(
            "diff_src", self.diff_src, self.diff_src_output_layout, config, dtype
        )
        _check_channel_array("mean", self.mean, channels)
        _check_channel_array("variance", self.variance, channels)
        if config.normalization.has_affine_params:
            _check_channel_array("scale", self.scale, channels)


__all__ = ["ForwardBuffers", "BackwardBuffers", "split_weights", "per_channel_array"]
