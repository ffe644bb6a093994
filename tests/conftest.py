# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

import sys
from pathlib import Path

import numpy as np
import pytest
from loguru import logger

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bnorm_oracle import (  # noqa: E402
    BackwardBuffers,
    BackwardMode,
    BnormConfig,
    ForwardBuffers,
    Layout,
    NormalizationConfig,
    PrecisionMode,
)
from bnorm_oracle.grid import fill_data, fill_variance  # noqa: E402

_AXES = (0, 2, 3, 4)


def _bcast(values):
    return np.asarray(values, dtype=np.float64).reshape(1, -1, 1, 1, 1)


class NumpyBatchNorm:
    """Vectorized batch normalization standing in for the primitive under test."""

    ddof = 0

    def forward(self, config, buffers):
        norm = config.normalization
        x = buffers.src_layout.unpack(buffers.src).astype(np.float64)
        if norm.compute_statistics:
            mean = x.mean(axis=_AXES)
            var = x.var(axis=_AXES, ddof=self.ddof)
            if norm.is_training:
                buffers.mean[:] = mean
                buffers.variance[:] = var
        else:
            mean = buffers.mean
            var = buffers.variance

        y = (x - _bcast(mean)) * (1.0 / np.sqrt(_bcast(var) + norm.epsilon))
        if norm.has_affine_params:
            y = _bcast(buffers.scale) * y + _bcast(buffers.shift)
        if config.precision.is_quantized:
            y = np.rint(np.clip(y.astype(np.float32), -128, 127))
        buffers.dst[:] = buffers.output_layout.pack(y, dtype=buffers.dst.dtype)

    def backward(self, config, buffers):
        norm = config.normalization
        x = buffers.src_layout.unpack(buffers.src).astype(np.float64)
        dy = buffers.gradient_layout.unpack(buffers.diff_dst).astype(np.float64)
        count = config.shape.reduction_size

        inv_std = 1.0 / np.sqrt(np.asarray(buffers.variance, dtype=np.float64) + norm.epsilon)
        x_hat = (x - _bcast(buffers.mean)) * _bcast(inv_std)
        diff_gamma = (dy * x_hat).sum(axis=_AXES)
        diff_beta = dy.sum(axis=_AXES)

        gamma = buffers.scale if norm.has_affine_params else np.ones_like(inv_std)
        dx = dy
        if norm.compute_statistics:
            dx = dy - (_bcast(diff_beta) + x_hat * _bcast(diff_gamma)) / count
        dx = dx * _bcast(np.asarray(gamma, dtype=np.float64) * inv_std)

        buffers.diff_src[:] = buffers.diff_src_output_layout.pack(dx, dtype=np.float32)
        if config.backward_mode is BackwardMode.DATA_AND_PARAMS:
            buffers.diff_scale[:] = diff_gamma
            buffers.diff_shift[:] = diff_beta


@pytest.fixture
def primitive():
    return NumpyBatchNorm()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def forward_run(primitive, rng):
    """Build filled buffers for ``config``, run the primitive on them."""

    def build(config, src_layout=None, dst_layout=None, run=True):
        shape = config.shape
        norm = config.normalization
        dtype = config.precision.dtype
        src_layout = src_layout or Layout.plain(shape)
        dst_layout = dst_layout or src_layout
        channels = shape.channels

        if norm.compute_statistics:
            mean = np.zeros(channels, dtype=np.float32)
            variance = np.zeros(channels, dtype=np.float32)
        else:
            mean = fill_data(channels, np.float32, rng)
            variance = fill_variance(channels, rng)
        buffers = ForwardBuffers(
            src=src_layout.zero_tail(fill_data(src_layout.size, dtype, rng)),
            dst=np.zeros(dst_layout.size, dtype=dtype),
            src_layout=src_layout,
            dst_layout=dst_layout,
            mean=mean,
            variance=variance,
            scale=fill_data(channels, np.float32, rng) if norm.has_affine_params else None,
            shift=fill_data(channels, np.float32, rng) if norm.has_affine_params else None,
        )
        if run:
            primitive.forward(config, buffers)
        return buffers

    return build


@pytest.fixture
def backward_run(primitive, rng):
    """Build filled backward buffers for ``config``, run the primitive on them."""

    def build(config, src_layout=None, diff_layout=None, run=True):
        shape = config.shape
        channels = shape.channels
        src_layout = src_layout or Layout.plain(shape)
        diff_layout = diff_layout or src_layout
        with_params = config.backward_mode is BackwardMode.DATA_AND_PARAMS

        src = src_layout.zero_tail(fill_data(src_layout.size, np.float32, rng))
        buffers = BackwardBuffers(
            src=src,
            diff_dst=diff_layout.zero_tail(fill_data(diff_layout.size, np.float32, rng)),
            diff_src=np.zeros(diff_layout.size, dtype=np.float32),
            mean=src_layout.unpack(src).mean(axis=_AXES).astype(np.float32),
            variance=src_layout.unpack(src).var(axis=_AXES).astype(np.float32),
            src_layout=src_layout,
            diff_dst_layout=diff_layout,
            scale=(
                fill_data(channels, np.float32, rng)
                if config.normalization.has_affine_params
                else None
            ),
            diff_scale=np.zeros(channels, dtype=np.float32) if with_params else None,
            diff_shift=np.zeros(channels, dtype=np.float32) if with_params else None,
        )
        if run:
            primitive.backward(config, buffers)
        return buffers

    return build


def make_config(shape, precision=PrecisionMode.F32, backward_mode=None, **norm):
    norm.setdefault("epsilon", 1e-5)
    return BnormConfig(
        shape, NormalizationConfig(**norm), precision, backward_mode=backward_mode
    )


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def log_messages():
    """Messages logged by the package at WARNING and above."""

    messages = []
    logger.enable("bnorm_oracle")
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    yield messages
    logger.remove(handler_id)
    logger.disable("bnorm_oracle")
