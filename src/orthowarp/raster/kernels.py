"""Separable resampling kernels and a windowed convolution sampler.

Sample positions are continuous pixel coordinates where ``(0.0, 0.0)`` is
the top-left corner of the first pixel, so pixel centres sit at ``i + 0.5``.
Weights are renormalized over the taps that land on valid source pixels:
a constant source always resamples to the same constant.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

import numpy as np

from orthowarp.raster.errors import ConfigurationError

# Smallest usable sum of weights; below it the pixel is treated as nodata.
MIN_WEIGHT = 1e-6


def _nearest(x: np.ndarray) -> np.ndarray:
    return ((x > -0.5) & (x <= 0.5)).astype("float64")


def _triangle(x: np.ndarray) -> np.ndarray:
    return np.clip(1.0 - np.abs(x), 0.0, None)


def _keys_cubic(x: np.ndarray, a: float = -0.5) -> np.ndarray:
    ax = np.abs(x)
    near = ((a + 2.0) * ax - (a + 3.0)) * ax * ax + 1.0
    far = ((a * ax - 5.0 * a) * ax + 8.0 * a) * ax - 4.0 * a
    return np.where(ax <= 1.0, near, np.where(ax < 2.0, far, 0.0))


def _lanczos3(x: np.ndarray) -> np.ndarray:
    weights = np.sinc(x) * np.sinc(x / 3.0)
    weights[np.abs(x) >= 3.0] = 0.0
    return weights


@dataclass(frozen=True)
class Kernel:
    """A separable resampling kernel with a finite support radius."""

    name: str
    radius: float
    func: Callable[[np.ndarray], np.ndarray]
    scalable: bool = True

    def weights(self, dx: np.ndarray, scale: float = 1.0) -> np.ndarray:
        if not self.scalable or scale <= 1.0:
            return self.func(dx)
        return self.func(dx / scale)

    def support(self, scale: float = 1.0) -> int:
        """Number of taps on each side of the sample position."""
        if not self.scalable:
            return int(math.ceil(self.radius))
        return int(math.ceil(self.radius * max(scale, 1.0)))


KERNELS: dict[str, Kernel] = {
    "nearest": Kernel("nearest", 1.0, _nearest, scalable=False),
    "bilinear": Kernel("bilinear", 1.0, _triangle),
    "cubic": Kernel("cubic", 2.0, _keys_cubic),
    "lanczos": Kernel("lanczos", 3.0, _lanczos3),
}


def get_kernel(name: str) -> Kernel:
    """Return a kernel by name."""
    try:
        return KERNELS[name.lower()]
    except KeyError as exc:
        choices = ", ".join(sorted(KERNELS))
        raise ConfigurationError(f"Unknown resampling kernel {name!r}; choose {choices}") from exc


@dataclass(frozen=True)
class SampleResult:
    """Resampled values plus the pixels that had usable source taps."""

    values: np.ndarray
    valid: np.ndarray


def sample(
    data: np.ndarray,
    valid: np.ndarray | None,
    cols: np.ndarray,
    rows: np.ndarray,
    kernel: Kernel,
    *,
    scale: tuple[float, float] = (1.0, 1.0),
) -> SampleResult:
    """Resample ``data`` at continuous pixel positions.

    ``data`` is (bands, height, width); ``valid`` is a boolean (height, width)
    array marking usable source pixels. ``cols``/``rows`` share the output
    shape; non-finite positions produce invalid output pixels. Accumulation
    is float64 and no rounding happens here.
    """
    if data.ndim != 3:
        raise ValueError("Source data must have shape (bands, height, width).")
    bands, height, width = data.shape
    if valid is None:
        valid = np.ones((height, width), dtype=bool)
    out_shape = cols.shape
    finite = np.isfinite(cols) & np.isfinite(rows)
    px = np.where(finite, cols - 0.5, 0.0)
    py = np.where(finite, rows - 0.5, 0.0)
    base_x = np.floor(px).astype("int64")
    base_y = np.floor(py).astype("int64")
    frac_x = px - base_x
    frac_y = py - base_y

    scale_x, scale_y = scale
    reach_x = kernel.support(scale_x)
    reach_y = kernel.support(scale_y)

    x_weights = []
    for ox in range(-reach_x + 1, reach_x + 1):
        x_weights.append((ox, kernel.weights(frac_x - ox, scale_x)))
    y_weights = []
    for oy in range(-reach_y + 1, reach_y + 1):
        y_weights.append((oy, kernel.weights(frac_y - oy, scale_y)))

    acc = np.zeros((bands, *out_shape), dtype="float64")
    wsum = np.zeros(out_shape, dtype="float64")
    for oy, wy in y_weights:
        iy = base_y + oy
        in_y = (iy >= 0) & (iy < height)
        iy_c = np.clip(iy, 0, height - 1)
        for ox, wx in x_weights:
            ix = base_x + ox
            tap_ok = in_y & (ix >= 0) & (ix < width)
            ix_c = np.clip(ix, 0, width - 1)
            tap_ok &= valid[iy_c, ix_c]
            weight = np.where(tap_ok, wy * wx, 0.0)
            if not weight.any():
                continue
            wsum += weight
            acc += data[:, iy_c, ix_c] * weight

    usable = finite & (wsum > MIN_WEIGHT)
    safe = np.where(usable, wsum, 1.0)
    values = acc / safe
    values[:, ~usable] = 0.0
    return SampleResult(values=values, valid=usable)


def quantize(values: np.ndarray, dtype: str | np.dtype) -> np.ndarray:
    """Round and clip float samples into the output dtype."""
    target = np.dtype(dtype)
    if np.issubdtype(target, np.integer):
        info = np.iinfo(target)
        return np.clip(np.rint(values), info.min, info.max).astype(target)
    return values.astype(target)
