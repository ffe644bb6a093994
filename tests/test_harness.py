# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

import dataclasses

import numpy as np
import pytest

from bnorm_oracle import (
    BackwardMode,
    NormFlags,
    PrecisionMode,
    PropKind,
    TensorShape,
    UnexpectedSuccess,
    VerificationError,
    validate_primitive,
)
from bnorm_oracle.grid import (
    BACKWARD_F32_CASES,
    FORWARD_F32_CASES,
    FORWARD_S8_CASES,
    backward_cases,
    fill_data,
    fill_variance,
    forward_cases,
)


def test_grid_contents():
    assert len(FORWARD_F32_CASES) == 7
    assert len(BACKWARD_F32_CASES) == 6
    assert forward_cases(PrecisionMode.S8) == FORWARD_S8_CASES
    assert backward_cases(PrecisionMode.S8) == ()
    assert all(case.flags & NormFlags.USE_GLOBAL_STATS for case in FORWARD_S8_CASES)
    assert all(
        case.flags & NormFlags.USE_SCALE_SHIFT
        for case in BACKWARD_F32_CASES
        if case.mode is BackwardMode.DATA_AND_PARAMS
    )
    names = [case.name for case in FORWARD_F32_CASES + BACKWARD_F32_CASES]
    assert len(set(names)) == len(names)
    assert "forward_inference|use_global_stats" in names


def test_case_normalization():
    case = FORWARD_F32_CASES[3]
    assert case.prop_kind is PropKind.FORWARD_TRAINING
    norm = case.normalization(1e-3)
    assert norm.epsilon == 1e-3
    assert not norm.compute_statistics
    assert norm.has_affine_params
    assert norm.is_training


def test_fill_is_deterministic():
    a = fill_data(16, np.float32, np.random.default_rng(7))
    b = fill_data(16, np.float32, np.random.default_rng(7))
    np.testing.assert_array_equal(a, b)
    ints = fill_data(1000, np.int8, np.random.default_rng(7))
    assert ints.dtype == np.int8
    assert ints.min() >= -16 and ints.max() <= 16
    assert np.all(fill_variance(100, np.random.default_rng(7)) > 0)


@pytest.mark.parametrize(
    "dims,data_format,diff_format",
    [
        ((2, 3, 4, 4), "nchw", None),
        ((2, 3, 4, 4), "nChw8c", "nchw"),
        ((2, 17, 3, 5), "nChw16c", "nChw16c"),
        ((3, 4, 4, 5), "nhwc", "nChw8c"),
        ((2, 20, 2, 3, 3), "nCdhw16c", "ncdhw"),
        ((2, 5, 2, 2, 2), "ndhwc", None),
        ((8, 6), "nc", None),
    ],
)
def test_f32_grid_passes(dims, data_format, diff_format, primitive):
    results = validate_primitive(
        primitive,
        TensorShape.from_dims(dims),
        data_format,
        diff_format,
        epsilon=1e-5,
    )
    assert len(results) == 13
    assert all(r.passed for r in results)


def test_s8_grid_passes(primitive):
    results = validate_primitive(
        primitive, TensorShape(2, 3, 1, 4, 4), "nChw8c", precision=PrecisionMode.S8
    )
    assert [r.name for r in results] == [
        "forward_inference|use_global_stats",
        "forward_inference|use_global_stats|use_scale_shift",
    ]
    assert all(r.passed for r in results)


def test_empty_shape_passes(primitive):
    results = validate_primitive(primitive, TensorShape(0, 3, 1, 4, 4), "nchw")
    assert all(r.passed for r in results)


def test_threaded_grid(primitive):
    results = validate_primitive(
        primitive, TensorShape(2, 12, 1, 3, 3), "nChw8c", num_threads=4
    )
    assert all(r.passed for r in results)


def test_unbiased_variance_is_caught(primitive):
    primitive.ddof = 1

    with pytest.raises(VerificationError) as excinfo:
        validate_primitive(primitive, TensorShape(2, 3, 1, 4, 4), "nchw")
    assert "variance" in str(excinfo.value)

    results = validate_primitive(
        primitive, TensorShape(2, 3, 1, 4, 4), "nchw", raise_on_failure=False
    )
    failed = [r.name for r in results if not r.passed]
    # Only forward runs that compute their own statistics are affected.
    assert failed == [
        "forward_training",
        "forward_training|use_scale_shift",
        "forward_inference",
        "forward_inference|use_scale_shift",
    ]


class DroppedCorrection:
    """Treats computed statistics as constants in backward."""

    def __init__(self, inner):
        self.inner = inner

    def forward(self, config, buffers):
        self.inner.forward(config, buffers)

    def backward(self, config, buffers):
        norm = config.normalization
        if norm.compute_statistics:
            config = dataclasses.replace(
                config, normalization=dataclasses.replace(norm, compute_statistics=False)
            )
        self.inner.backward(config, buffers)


def test_dropped_backward_correction_is_caught(primitive):
    results = validate_primitive(
        DroppedCorrection(primitive),
        TensorShape(2, 3, 1, 4, 4),
        "nchw",
        raise_on_failure=False,
    )
    failed = [r.name for r in results if not r.passed]
    assert failed == [
        "backward_data",
        "backward_data|use_scale_shift",
        "backward|use_scale_shift",
    ]
    assert all(
        v.quantity == "diff_src" for r in results for v in r.result.violations
    )


class ForwardOnly:
    """A primitive without a backward implementation."""

    def __init__(self, inner):
        self.inner = inner

    def forward(self, config, buffers):
        self.inner.forward(config, buffers)

    def backward(self, config, buffers):
        raise NotImplementedError("backward batch normalization")


def test_expected_rejection_stops_the_run(primitive):
    results = validate_primitive(
        ForwardOnly(primitive),
        TensorShape(2, 3, 1, 4, 4),
        "nchw",
        expected_error=NotImplementedError,
    )
    assert [r.name for r in results] == [case.name for case in FORWARD_F32_CASES]
    assert all(r.passed for r in results)


def test_missing_expected_rejection_fails(primitive):
    with pytest.raises(UnexpectedSuccess, match="NotImplementedError"):
        validate_primitive(
            primitive,
            TensorShape(2, 3, 1, 4, 4),
            "nchw",
            expected_error=NotImplementedError,
        )


def test_other_primitive_errors_propagate(primitive):
    with pytest.raises(NotImplementedError):
        validate_primitive(
            ForwardOnly(primitive),
            TensorShape(2, 3, 1, 4, 4),
            "nchw",
            expected_error=KeyError,
        )


def test_mismatch_is_not_an_expected_rejection(primitive):
    primitive.ddof = 1
    with pytest.raises(VerificationError):
        validate_primitive(
            primitive,
            TensorShape(2, 3, 1, 4, 4),
            "nchw",
            expected_error=AssertionError,
        )
