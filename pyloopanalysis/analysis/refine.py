"""
Loop Refinement.

Turns a frame-resolution candidate into sample-accurate loop points:
- Loop length fine-tuned by normalised cross-correlation of the start
- Both points snapped to quiet zero crossings, keeping the length
- Rescored on the audio itself (repetition or internal consistency)
"""

from __future__ import annotations

import dataclasses
import logging

import numpy as np
from scipy.signal import correlate

from pyloopanalysis.analysis.candidates import LoopCandidate
from pyloopanalysis.analysis.config import RefineConfig
from pyloopanalysis.analysis.constants import EPSILON, ZERO_CROSSING_ENERGY_WINDOW
from pyloopanalysis.analysis.signal import Signal
from pyloopanalysis.analysis.spectral import frame_signal


def is_zero_crossing(samples: np.ndarray, index: int) -> bool:
    """True when the sign changes between ``index`` and ``index + 1``."""
    if index < 0 or index + 1 >= samples.shape[0]:
        return False
    return bool(np.sign(samples[index]) != np.sign(samples[index + 1]))


def nearest_zero_crossing(
    samples: np.ndarray,
    target: int,
    radius: int,
    energy_window: int = ZERO_CROSSING_ENERGY_WINDOW,
) -> int:
    """
    Quietest zero crossing within ``radius`` samples of ``target``.

    A crossing is reported at the last sample before the sign changes. Among
    all crossings the one with the lowest surrounding energy wins; equal
    energies go to the one nearest ``target``. Returns ``target`` (clipped to
    the buffer) when there is no crossing in range.
    """
    n = samples.shape[0]
    target = int(np.clip(target, 0, n - 1))
    lo = max(0, target - radius)
    hi = min(n, target + radius + 1)
    if hi - lo < 2:
        return target

    signs = np.sign(samples[lo:hi])
    crossings = lo + np.flatnonzero(np.diff(signs) != 0)
    if crossings.size == 0:
        return target

    # Mean power around each crossing
    a = max(0, lo - energy_window)
    b = min(n, hi + energy_window)
    cum = np.concatenate(([0.0], np.cumsum(np.square(samples[a:b], dtype=np.float64))))
    left = np.maximum(crossings - energy_window, a) - a
    right = np.minimum(crossings + energy_window + 1, b) - a
    energy = (cum[right] - cum[left]) / (right - left)

    quietest = crossings[energy <= energy.min() * (1.0 + 1e-6) + EPSILON]
    return int(quietest[np.argmin(np.abs(quietest - target))])


def _ncc(a: np.ndarray, b: np.ndarray) -> float:
    denom = np.sqrt(np.dot(a, a) * np.dot(b, b))
    if denom <= EPSILON:
        return 0.0
    return float(np.dot(a, b) / denom)


def _refine_end(samples: np.ndarray, start: int, end: int, radius: int, template_length: int) -> int:
    """Move ``end`` within ``radius`` to where the audio best repeats the start."""
    n = samples.shape[0]
    radius = min(radius, end - start - 1)
    length = min(template_length, n - end - radius, end - start - radius)
    if radius <= 0 or length < 64 or end - radius < 0:
        return end

    template = samples[start:start + length]
    region = samples[end - radius:end + radius + length]
    scores = correlate(region, template, mode="valid")

    cum = np.concatenate(([0.0], np.cumsum(np.square(region))))
    window_energy = cum[length:] - cum[:-length]
    scores = scores / np.sqrt(np.maximum(window_energy * np.dot(template, template), EPSILON))

    return end - radius + int(np.argmax(scores))


def _consistency_score(segment: np.ndarray, config: RefineConfig) -> float:
    """1 - coefficient of variation of short-window RMS, clipped to [0, 1]."""
    if segment.shape[0] < config.consistency_window:
        return 0.0
    frames = frame_signal(segment, config.consistency_window, config.consistency_hop)
    rms = np.sqrt(np.mean(np.square(frames), axis=1))
    mean = rms.mean()
    if mean <= EPSILON:
        return 0.0
    return float(np.clip(1.0 - rms.std() / mean, 0.0, 1.0))


def refine(
    samples: Signal | np.ndarray,
    candidate: LoopCandidate,
    sr: int | None = None,
    config: RefineConfig | None = None,
    search_radius: int | None = None,
) -> LoopCandidate:
    """
    Refine a structural candidate to sample-accurate loop points.

    Args:
        samples: The analysed audio.
        candidate: Candidate on the STFT frame grid.
        sr: Sample rate (defaults to the candidate's).
        config: Refinement settings.
        search_radius: Length-search radius in samples; defaults to one lag
            step of the recurrence grid.

    Returns:
        A new ``LoopCandidate``; the input is left untouched.
    """
    config = config or RefineConfig()
    if isinstance(samples, Signal):
        sr = samples.sr
        samples = samples.samples
    sr = sr or candidate.sr
    x = np.asarray(samples, dtype=np.float64)
    n = x.shape[0]

    # === Frames -> samples ===
    start = int(np.clip(candidate.start_frame * candidate.hop_length, 0, n - 1))
    end = int(np.clip(candidate.end_frame * candidate.hop_length, start + 1, n))

    # === Length search ===
    if config.length_search:
        radius = search_radius if search_radius is not None else candidate.frame_step * candidate.hop_length
        end = _refine_end(x, start, end, radius, config.template_length)

    # === Zero crossings ===
    zc_radius = int(sr * config.zero_crossing_ms / 1000)
    new_start = nearest_zero_crossing(x, start, zc_radius, config.energy_window)
    shifted_end = min(n, end + new_start - start)
    # A loop closing on the buffer end has no following sample to cross into
    if shifted_end == n or is_zero_crossing(x, shifted_end):
        new_end = shifted_end
    else:
        new_end = nearest_zero_crossing(x, shifted_end, zc_radius, config.energy_window)
    if new_end <= new_start:
        new_start, new_end = start, end
    start, end = new_start, new_end

    # === Rescore ===
    length = end - start
    if end + length <= n:
        score = _ncc(x[start:end], x[end:end + length])
        method = "cross_correlation"
    else:
        score = _consistency_score(x[start:end], config) * config.consistency_scale
        method = "consistency"

    w = config.correlation_weight
    confidence = float(np.clip((1.0 - w) * candidate.correlation + w * max(score, 0.0), 0.0, 1.0))
    logging.debug(
        f"Refined loop {start}-{end} ({length / sr:.3f}s): {method}={score:.3f}, confidence={confidence:.3f}"
    )

    return dataclasses.replace(
        candidate,
        start_sample=start,
        end_sample=end,
        length_seconds=length / sr,
        confidence=confidence,
        score_method=method,
    )
