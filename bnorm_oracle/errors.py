# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""Failure types raised by the reference engines."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple


class ConfigurationError(ValueError):
    """An unsupported or inconsistent configuration was requested."""


@dataclass(frozen=True)
class ToleranceViolation:
    """A single scalar comparison that exceeded its epsilon bound.

    ``coordinate`` is the logical ``(n, c, d, h, w)`` position for
    elementwise quantities and ``None`` for per-channel ones such as
    ``mean`` or ``diff_scale``.
    """

    quantity: str
    channel: int
    coordinate: Optional[Tuple[int, int, int, int, int]]
    expected: float
    actual: float
    deviation: float
    epsilon: float

    def __str__(self) -> str:
        where = f"channel {self.channel}"
        if self.coordinate is not None:
            where += " at (n, c, d, h, w)=" + str(self.coordinate)
        return (
            f"{self.quantity} mismatch, {where}: expected {self.expected!r}, "
            f"got {self.actual!r} (relative deviation {self.deviation:.3g} "
            f"> {self.epsilon:.3g})"
        )


class VerificationError(AssertionError):
    """Raised when the primitive output disagrees with the reference."""

    def __init__(
        self,
        description: str,
        violations: Sequence[ToleranceViolation],
        max_reported: int = 32,
    ):
        self.description = description
        self.violations = tuple(violations)
        lines = [f"{len(self.violations)} mismatch(es) for {description}"]
        lines.extend(f"  {v}" for v in self.violations[:max_reported])
        hidden = len(self.violations) - max_reported
        if hidden > 0:
            lines.append(f"  ... {hidden} more not shown")
        super().__init__("\n".join(lines))

    @property
    def channels(self) -> Tuple[int, ...]:
        """Sorted channel indices with at least one violation."""

        return tuple(sorted({v.channel for v in self.violations}))



class UnexpectedSuccess(AssertionError):
    """A primitive expected to reject a configuration ran it to completion."""


__all__ = ["ConfigurationError", "ToleranceViolation", "VerificationError", "UnexpectedSuccess"]
