# Copyright (c) 2025 Soumyadip Sarkar.
# All rights reserved.
#
# This source code is licensed under the Apache-style license found in the
# LICENSE file in the root directory of this source tree.

"""
Logical shapes and physical memory layouts of batch normalization tensors.

A :class:`Layout` maps a logical ``(n, c, d, h, w)`` coordinate to an offset
in a flat backing buffer. Only three arrangements exist, so the layout is a
tagged record whose ``kind`` selects one of the offset functions below rather
than a class hierarchy. Every offset function is plain integer arithmetic and
therefore accepts Python ints as well as broadcastable NumPy index arrays.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import Any, Callable, Dict, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError

PLAIN = "plain"
CHANNELS_LAST = "channels_last"
BLOCKED = "blocked"


@dataclass(frozen=True)
class TensorShape:
    """Logical ``(batch, channels, depth, height, width)`` extents."""

    batch: int
    channels: int
    depth: int = 1
    height: int = 1
    width: int = 1

    def __post_init__(self):
        for name, value in zip(("batch", "channels", "depth", "height", "width"), self.dims):
            if not isinstance(value, numbers.Integral) or value < 0:
                raise ConfigurationError(f"{name} must be a non-negative integer, got {value!r}")
            # NumPy integers become plain ints so shapes compare and hash alike.
            object.__setattr__(self, name, int(value))

    @classmethod
    def from_dims(cls, dims: Sequence[int]) -> "TensorShape":
        """Build a shape from ``(N, C)``, ``(N, C, H, W)`` or ``(N, C, D, H, W)``."""

        dims = tuple(int(d) for d in dims)
        if len(dims) == 2:
            return cls(dims[0], dims[1])
        if len(dims) == 4:
            return cls(dims[0], dims[1], 1, dims[2], dims[3])
        if len(dims) == 5:
            return cls(*dims)
        raise ConfigurationError(f"Expected 2, 4 or 5 logical dims, got {len(dims)}")

    @property
    def dims(self) -> Tuple[int, int, int, int, int]:
        return (self.batch, self.channels, self.depth, self.height, self.width)

    @property
    def spatial_size(self) -> int:
        return self.depth * self.height * self.width

    @property
    def reduction_size(self) -> int:
        """Number of elements reduced into one channel's statistics."""
        return self.batch * self.spatial_size

    @property
    def element_count(self) -> int:
        return self.reduction_size * self.channels

    @property
    def is_empty(self) -> bool:
        return self.element_count == 0


# Offset functions. ``cp`` is the padded channel extent and ``k`` the block
# size; both come from the layout, never from the logical shape.


def _plain_offset(s: TensorShape, cp: int, k: int, n, c, d, h, w):
    return (((n * cp + c) * s.depth + d) * s.height + h) * s.width + w


def _channels_last_offset(s: TensorShape, cp: int, k: int, n, c, d, h, w):
    return (((n * s.depth + d) * s.height + h) * s.width + w) * cp + c


def _blocked_offset(s: TensorShape, cp: int, k: int, n, c, d, h, w):
    blocks = cp // k
    outer = (((n * blocks + c // k) * s.depth + d) * s.height + h) * s.width + w
    return outer * k + c % k


_OFFSET_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    PLAIN: _plain_offset,
    CHANNELS_LAST: _channels_last_offset,
    BLOCKED: _blocked_offset,
}

# mkl-dnn format name -> (kind, block, logical ndims)
_FORMAT_NAMES: Dict[str, Tuple[str, int, int]] = {
    "nc": (PLAIN, 1, 2),
    "nchw": (PLAIN, 1, 4),
    "ncdhw": (PLAIN, 1, 5),
    "nhwc": (CHANNELS_LAST, 1, 4),
    "ndhwc": (CHANNELS_LAST, 1, 5),
    "nChw8c": (BLOCKED, 8, 4),
    "nChw16c": (BLOCKED, 16, 4),
    "nCdhw8c": (BLOCKED, 8, 5),
    "nCdhw16c": (BLOCKED, 16, 5),
}


@dataclass(frozen=True)
class Layout:
    """Physical arrangement of a tensor with logical extents ``shape``.

    ``padded_channels`` is the channel extent actually allocated. Blocked
    layouts round it up to a multiple of ``block``; plain and channels-last
    layouts may carry explicit padding as well.
    """

    kind: str
    shape: TensorShape
    padded_channels: int
    block: int = 1

    def __post_init__(self):
        if self.kind not in _OFFSET_FUNCTIONS:
            raise ConfigurationError(f"Unknown layout kind '{self.kind}'")
        if self.block < 1:
            raise ConfigurationError("block size must be positive")
        if self.padded_channels < self.shape.channels:
            raise ConfigurationError(
                f"padded_channels ({self.padded_channels}) is smaller than "
                f"channels ({self.shape.channels})"
            )
        if self.kind == BLOCKED and self.padded_channels % self.block:
            raise ConfigurationError(
                f"padded_channels ({self.padded_channels}) must be a multiple of "
                f"the block size ({self.block})"
            )

    # Constructors

    @classmethod
    def plain(cls, shape: TensorShape, padded_channels: int | None = None) -> "Layout":
        return cls(PLAIN, shape, _default_padding(shape, padded_channels))

    @classmethod
    def channels_last(
        cls, shape: TensorShape, padded_channels: int | None = None
    ) -> "Layout":
        return cls(CHANNELS_LAST, shape, _default_padding(shape, padded_channels))

    @classmethod
    def blocked(cls, shape: TensorShape, block: int) -> "Layout":
        if block < 1:
            raise ConfigurationError("block size must be positive")
        padded = -(-shape.channels // block) * block
        return cls(BLOCKED, shape, padded, block)

    @classmethod
    def from_name(cls, name: str, shape: TensorShape) -> "Layout":
        """Build a layout from an mkl-dnn format name such as ``nChw16c``."""

        try:
            kind, block, ndims = _FORMAT_NAMES[name]
        except KeyError:
            raise ConfigurationError(f"Unsupported memory format '{name}'") from None
        if ndims < 5 and shape.depth != 1:
            raise ConfigurationError(f"Format '{name}' cannot describe depth {shape.depth}")
        if ndims == 2 and (shape.height != 1 or shape.width != 1):
            raise ConfigurationError(f"Format '{name}' has no spatial dimensions")
        if kind == BLOCKED:
            return cls.blocked(shape, block)
        return cls(kind, shape, shape.channels)

    # Mapping

    @property
    def size(self) -> int:
        """Number of elements in the physical buffer, padding included."""
        return self.shape.batch * self.padded_channels * self.shape.spatial_size

    @property
    def has_padding(self) -> bool:
        return self.padded_channels > self.shape.channels

    def offset(self, n, c, d, h, w):
        """Physical offset of logical coordinate ``(n, c, d, h, w)``."""
        fn = _OFFSET_FUNCTIONS[self.kind]
        return fn(self.shape, self.padded_channels, self.block, n, c, d, h, w)

    def channel_coordinates(self) -> Tuple[np.ndarray, ...]:
        """``(n, d, h, w)`` index grids of one channel, each raveled."""

        s = self.shape
        grids = np.indices((s.batch, s.depth, s.height, s.width), dtype=np.int64)
        return tuple(g.ravel() for g in grids)

    def channel_offsets(self, c: int) -> np.ndarray:
        """Offsets of every element of channel ``c`` in ``(n, d, h, w)`` order."""

        n, d, h, w = self.channel_coordinates()
        return np.asarray(self.offset(n, c, d, h, w), dtype=np.int64)

    def logical_offsets(self) -> np.ndarray:
        """Offsets of the whole logical tensor, shaped ``(N, C, D, H, W)``."""

        n, c, d, h, w = np.indices(self.shape.dims, dtype=np.int64)
        return np.asarray(self.offset(n, c, d, h, w), dtype=np.int64)

    def padding_coordinates(self) -> np.ndarray:
        """``(k, 5)`` array of coordinates that fall in the channel padding."""

        s = self.shape
        tail = self.padded_channels - s.channels
        grids = np.indices((s.batch, tail, s.depth, s.height, s.width), dtype=np.int64)
        grids[1] += s.channels
        return np.stack([g.ravel() for g in grids], axis=1)

    def padding_offsets(self) -> np.ndarray:
        coords = self.padding_coordinates()
        return np.asarray(self.offset(*coords.T), dtype=np.int64)

    # Buffer helpers

    def pack(self, logical: np.ndarray, dtype=None) -> np.ndarray:
        """Scatter a logical ``(N, C[, D], H, W)`` or ``(N, C)`` array into a
        zero padded physical buffer."""

        logical = np.asarray(logical)
        if logical.ndim not in (2, 4, 5):
            raise ConfigurationError(f"Expected 2, 4 or 5 dims, got {logical.ndim}")
        if TensorShape.from_dims(logical.shape) != self.shape:
            raise ConfigurationError(
                f"Array of shape {logical.shape} does not match layout shape {self.shape.dims}"
            )
        buffer = np.zeros(self.size, dtype=logical.dtype if dtype is None else dtype)
        buffer[self.logical_offsets()] = logical.reshape(self.shape.dims)
        return buffer

    def unpack(self, buffer: np.ndarray) -> np.ndarray:
        """Gather a physical buffer back into a ``(N, C, D, H, W)`` array."""

        buffer = np.asarray(buffer).reshape(-1)
        if buffer.size < self.size:
            raise ConfigurationError(
                f"Buffer holds {buffer.size} elements, layout needs {self.size}"
            )
        return buffer[self.logical_offsets()]

    def zero_tail(self, buffer: np.ndarray) -> np.ndarray:
        """Clear the channel padding of ``buffer`` in place and return it."""

        if self.has_padding:
            buffer[self.padding_offsets()] = 0
        return buffer

    def describe(self) -> str:
        if self.kind == BLOCKED:
            return f"{self.kind}{self.block}(cp={self.padded_channels})"
        if self.has_padding:
            return f"{self.kind}(cp={self.padded_channels})"
        return self.kind


def _default_padding(shape: TensorShape, padded_channels: int | None) -> int:
    return shape.channels if padded_channels is None else int(padded_channels)


def format_names() -> Tuple[str, ...]:
    """Memory format names accepted by :meth:`Layout.from_name`."""

    return tuple(_FORMAT_NAMES)


__all__ = [
    "PLAIN",
    "CHANNELS_LAST",
    "BLOCKED",
    "TensorShape",
    "Layout",
    "format_names",
]
