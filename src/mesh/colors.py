"""Elevation to vertex colour ramp."""

from __future__ import annotations

import numpy as np

from shared.constants import COLOR_HIGH, COLOR_LOW, COLOR_MAX_M, COLOR_MIN_M


def lerp(a: float, b: float, t: float) -> float:
    """Linear interpolation between a and b."""
    return a + (b - a) * t


def ramp_t(value: float, vmin: float, vmax: float) -> float:
    """Normalized position of ``value`` in ``[vmin, vmax]``, clamped to [0, 1]."""
    if vmax <= vmin:
        return 0.0 if value <= vmin else 1.0
    t = (value - vmin) / (vmax - vmin)
    return min(1.0, max(0.0, t))


def color_for_elevation(
    elevation: float,
    reference: float = 0.0,
    *,
    low: tuple[float, float, float] = COLOR_LOW,
    high: tuple[float, float, float] = COLOR_HIGH,
    vmin: float = COLOR_MIN_M,
    vmax: float = COLOR_MAX_M,
) -> tuple[float, float, float]:
    """RGB in [0, 1] for one elevation measured above ``reference``."""
    t = ramp_t(elevation - reference, vmin, vmax)
    return (lerp(low[0], high[0], t), lerp(low[1], high[1], t), lerp(low[2], high[2], t))


class ElevationColorRamp:
    """Two-colour linear ramp over a clamped elevation range (vectorised)."""

    def __init__(
        self,
        low: tuple[float, float, float] = COLOR_LOW,
        high: tuple[float, float, float] = COLOR_HIGH,
        vmin: float = COLOR_MIN_M,
        vmax: float = COLOR_MAX_M,
        reference: float = 0.0,
    ) -> None:
        self.low = np.asarray(low, dtype=np.float32)
        self.high = np.asarray(high, dtype=np.float32)
        self.vmin = float(vmin)
        self.vmax = float(vmax)
        self.reference = float(reference)

    def colors(self, elevations: np.ndarray) -> np.ndarray:
        """Return an (N, 3) float32 array of colours for ``elevations``."""
        rel = np.asarray(elevations, dtype=np.float64) - self.reference
        span = self.vmax - self.vmin
        if span <= 0.0:
            t = (rel > self.vmin).astype(np.float64)
        else:
            t = np.clip((rel - self.vmin) / span, 0.0, 1.0)
        t32 = t.astype(np.float32)[:, None]
        return self.low[None, :] + (self.high - self.low)[None, :] * t32
