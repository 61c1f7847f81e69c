"""Random sources for the Monte Carlo engine."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class RandomSource(Protocol):
    """Anything that yields uniform floats in ``[0, 1)``."""

    def next_uniform(self) -> float:
        ...


class NumpyRandomSource:
    """PCG64-backed source; unseeded instances draw fresh OS entropy."""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def next_uniform(self) -> float:
        return float(self._rng.random())

    def uniforms(self, size) -> np.ndarray:
        return self._rng.random(size)


def draw_uniforms(source: RandomSource, size) -> np.ndarray:
    """Draw an array of uniforms, in bulk when the source supports it."""
    bulk = getattr(source, "uniforms", None)
    if bulk is not None:
        return np.asarray(bulk(size), dtype=np.float64)
    shape = (size,) if isinstance(size, int) else tuple(size)
    out = np.empty(int(np.prod(shape)), dtype=np.float64)
    for i in range(out.size):
        out[i] = source.next_uniform()
    return out.reshape(shape)


def standard_normals(source: RandomSource, shape) -> np.ndarray:
    """Return N(0, 1) variates of ``shape`` using the Box-Muller transform.

    Each variate consumes two consecutive uniforms. ``1 - u1`` keeps the
    logarithm finite since uniforms may be exactly 0.
    """
    shape = (shape,) if isinstance(shape, int) else tuple(shape)
    u = draw_uniforms(source, shape + (2,))
    u1 = u[..., 0]
    u2 = u[..., 1]
    return np.sqrt(-2.0 * np.log1p(-u1)) * np.cos(2.0 * np.pi * u2)
