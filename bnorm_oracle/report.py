# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""Outcome of a single verification run."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import numpy as np
from loguru import logger

from .config import BnormConfig
from .errors import ToleranceViolation, VerificationError


@dataclass(frozen=True, eq=False)
class VerificationResult:
    """Violations found plus the reference per-channel values behind them.

    ``mean`` and ``variance`` are the statistics the reference normalized
    with. Backward results also carry the reference parameter gradients.
    Arrays are ``None`` when the run short-circuited on an empty tensor.
    """

    config: BnormConfig
    violations: Tuple[ToleranceViolation, ...] = ()
    mean: Optional[np.ndarray] = None
    variance: Optional[np.ndarray] = None
    diff_scale: Optional[np.ndarray] = None
    diff_shift: Optional[np.ndarray] = None

    @property
    def passed(self) -> bool:
        return not self.violations

    @property
    def description(self) -> str:
        return self.config.describe()

    def to_error(self) -> VerificationError:
        return VerificationError(
            self.description, self.violations, self.config.tolerance.max_reported
        )

    def raise_for_violations(self) -> None:
        if self.violations:
            raise self.to_error()


def conclude(
    config: BnormConfig,
    violations: Iterable[ToleranceViolation],
    raise_on_failure: bool,
    **arrays: Optional[np.ndarray],
) -> VerificationResult:
    """Bundle the run into a result, raising when asked and anything failed."""

    result = VerificationResult(config, tuple(violations), **arrays)
    if result.passed:
        logger.debug(f"verified {result.description}")
        return result

    channels = ", ".join(str(c) for c in sorted({v.channel for v in result.violations}))
    logger.warning(
        f"{len(result.violations)} mismatch(es) in channel(s) {channels} "
        f"for {result.description}"
    )
    if raise_on_failure:
        raise result.to_error()
    return result


__all__ = ["VerificationResult", "conclude"]
