"""
Tempo Estimation.

Autocorrelation tempogram of the onset envelope, scored in three passes:
- Prominent peaks only, refined to sub-frame lag by parabolic interpolation
- A mild multiplicative prior towards common dance-music tempos
- Octave-error correction (double slow tempos, halve fast ones)

Degenerate envelopes never raise; they return the default tempo with zero
confidence and ``used_fallback`` set.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy.signal import correlate, find_peaks

from pyloopanalysis.analysis.config import TempoConfig
from pyloopanalysis.analysis.constants import EPSILON
from pyloopanalysis.exceptions import InvalidInputError


@dataclass(frozen=True, slots=True)
class Tempogram:
    """Normalised autocorrelation over the admissible lag range."""

    lags: np.ndarray
    bpms: np.ndarray
    values: np.ndarray


@dataclass(frozen=True, slots=True)
class TempoCandidate:
    bpm: float
    strength: float


@dataclass(frozen=True, slots=True)
class TempoEstimate:
    bpm: float
    confidence: float
    candidates: tuple[TempoCandidate, ...] = ()
    tempogram: Tempogram | None = None
    used_fallback: bool = False
    fallback_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bpm": round(self.bpm, 3),
            "confidence": round(self.confidence, 4),
            "candidates": [
                {"bpm": round(c.bpm, 3), "strength": round(c.strength, 4)} for c in self.candidates
            ],
            "used_fallback": self.used_fallback,
            "fallback_reason": self.fallback_reason,
        }


def parabolic_offset(left: float, center: float, right: float) -> float:
    """Vertex of the parabola through three equally spaced samples, relative to the centre one."""
    denom = left - 2.0 * center + right
    if abs(denom) < EPSILON:
        return 0.0
    return float(np.clip(0.5 * (left - right) / denom, -0.5, 0.5))


def _apply_prior(bpm: float, strength: float, config: TempoConfig) -> float:
    if config.prior_weight > 0 and any(abs(bpm - t) <= config.prior_width for t in config.common_tempos):
        return strength * (1.0 + config.prior_weight)
    return strength


def _correct_octave(
    candidates: list[TempoCandidate], min_bpm: float, max_bpm: float, config: TempoConfig
) -> float:
    best = candidates[0]
    bpm = best.bpm
    tol = config.octave_tolerance

    if bpm < config.octave_low:
        target = 2.0 * bpm
        doubled = [
            c for c in candidates[1:]
            if abs(c.bpm - target) <= tol * target and c.strength >= config.octave_ratio * best.strength
        ]
        if doubled and doubled[0].bpm <= max_bpm:
            logging.debug(f"Octave correction: {bpm:.2f} -> {doubled[0].bpm:.2f} BPM")
            return doubled[0].bpm

    elif bpm > config.octave_high:
        target = bpm / 2.0
        halves = [c for c in candidates[1:] if abs(c.bpm - target) <= tol * target]
        corrected = halves[0].bpm if halves else target
        if corrected >= min_bpm:
            logging.debug(f"Octave correction: {bpm:.2f} -> {corrected:.2f} BPM")
            return corrected

    return bpm


def _default_estimate(bpm: float, reason: str) -> TempoEstimate:
    return TempoEstimate(bpm=bpm, confidence=0.0, used_fallback=True, fallback_reason=reason)


def estimate_tempo(
    envelope,
    sr: int,
    hop_length: int,
    min_bpm: float | None = None,
    max_bpm: float | None = None,
    config: TempoConfig | None = None,
) -> TempoEstimate:
    """
    Estimate the global tempo of an onset envelope.

    Args:
        envelope: Onset strength, one value per frame.
        sr: Sample rate of the analysed audio.
        hop_length: Samples between envelope frames.
        min_bpm: Lower bound; overrides ``config.min_bpm``.
        max_bpm: Upper bound; overrides ``config.max_bpm``.
        config: Prior, octave-correction and fallback settings.

    Returns:
        TempoEstimate whose bpm always lies in ``[min_bpm, max_bpm]``.
    """
    config = config or TempoConfig()
    min_bpm = config.min_bpm if min_bpm is None else float(min_bpm)
    max_bpm = config.max_bpm if max_bpm is None else float(max_bpm)
    if min_bpm <= 0 or max_bpm <= min_bpm:
        raise InvalidInputError(f"Invalid tempo range [{min_bpm}, {max_bpm}].")
    if sr <= 0 or hop_length <= 0:
        raise InvalidInputError("Sample rate and hop length must be positive.")

    default_bpm = float(np.clip(config.default_bpm, min_bpm, max_bpm))

    env = np.asarray(envelope, dtype=np.float64)
    if env.ndim != 1:
        raise InvalidInputError(f"Onset envelope must be 1-D, got shape {env.shape}.")

    n = env.shape[0]
    frame_rate = sr / hop_length
    min_lag = max(1, math.ceil(60.0 * frame_rate / max_bpm))
    max_lag = min(math.floor(60.0 * frame_rate / min_bpm), n - 2)

    if n < 3 or not np.isfinite(env).all() or np.ptp(env) <= EPSILON:
        logging.debug("Flat or unusable onset envelope, using default tempo")
        return _default_estimate(default_bpm, "no clear periodicity in the onset envelope")
    if max_lag < min_lag:
        logging.debug(f"Envelope of {n} frames too short for lags [{min_lag}, ...], using default tempo")
        return _default_estimate(default_bpm, "onset envelope too short for the tempo range")

    # === Normalised autocorrelation, one lag beyond each bound ===
    x = env - env.mean()
    x /= x.std()
    energy = float(np.dot(x, x))
    full = correlate(x, x, mode="full", method="fft")[n - 1:] / energy

    lo = max(1, min_lag - 1)
    hi = min(max_lag + 1, n - 1)
    lags = np.arange(lo, hi + 1)
    ac = full[lo:hi + 1]

    in_range = (lags >= min_lag) & (lags <= max_lag)
    tempogram = Tempogram(
        lags=lags[in_range],
        bpms=60.0 * frame_rate / lags[in_range],
        values=ac[in_range],
    )

    # === Prominent peaks ===
    peaks, _ = find_peaks(ac, prominence=config.min_prominence * float(np.max(np.abs(ac))))
    peaks = [p for p in peaks if min_lag <= lags[p] <= max_lag]

    fallback_reason = None
    candidates = []
    for p in peaks:
        lag = lags[p] + parabolic_offset(ac[p - 1], ac[p], ac[p + 1])
        bpm = float(60.0 * frame_rate / lag)
        candidates.append(TempoCandidate(bpm=bpm, strength=_apply_prior(bpm, float(ac[p]), config)))

    if not candidates:
        # No prominent periodicity: strongest admissible lag
        strongest = int(np.argmax(tempogram.values))
        bpm = float(tempogram.bpms[strongest])
        candidates = [TempoCandidate(bpm=bpm, strength=float(tempogram.values[strongest]))]
        fallback_reason = "no prominent tempogram peak"
        logging.debug("No prominent tempo peak, using strongest lag")

    candidates.sort(key=lambda c: c.strength, reverse=True)
    bpm = _correct_octave(candidates, min_bpm, max_bpm, config)
    bpm = float(np.clip(bpm, min_bpm, max_bpm))

    chosen_lag = 60.0 * frame_rate / bpm
    confidence = float(np.clip(np.interp(chosen_lag, lags, ac), 0.0, 1.0))

    logging.debug(f"Tempo: {bpm:.2f} BPM (confidence {confidence:.3f}, {len(candidates)} candidates)")
    return TempoEstimate(
        bpm=bpm,
        confidence=confidence,
        candidates=tuple(candidates),
        tempogram=tempogram,
        used_fallback=fallback_reason is not None,
        fallback_reason=fallback_reason,
    )


def estimate_tempo_curve(
    envelope,
    sr: int,
    hop_length: int,
    config: TempoConfig | None = None,
    global_bpm: float | None = None,
) -> np.ndarray:
    """
    Per-frame tempo from sliding-window estimates.

    Each window of ``dynamic_window_seconds`` (stepped by
    ``dynamic_hop_seconds``) is estimated on its own and placed at its
    centre; values in between are linearly interpolated. Windows with no
    confident estimate take the global tempo.
    """
    config = config or TempoConfig()
    env = np.asarray(envelope, dtype=np.float64)
    n = env.shape[0]
    if global_bpm is None:
        global_bpm = estimate_tempo(env, sr, hop_length, config=config).bpm

    frame_rate = sr / hop_length
    win = max(3, int(round(config.dynamic_window_seconds * frame_rate)))
    step = max(1, int(round(config.dynamic_hop_seconds * frame_rate)))
    if n <= win:
        return np.full(n, float(global_bpm))

    centers = []
    bpms = []
    for start in range(0, n - win + 1, step):
        local = estimate_tempo(env[start:start + win], sr, hop_length, config=config)
        centers.append(start + win / 2.0)
        bpms.append(global_bpm if local.used_fallback or local.confidence <= 0 else local.bpm)

    logging.debug(f"Tempo curve: {len(centers)} windows, {min(bpms):.1f}-{max(bpms):.1f} BPM")
    return np.interp(np.arange(n), centers, bpms)
