"""
Beat Tracking - Dynamic programming over the onset envelope.

Ellis-style tracker:
- Local score: onset envelope smoothed by a beat-period Gaussian
- Forward DP: every frame links back to the best previous beat, penalised by
  the squared log deviation from the expected beat period
- Backtrack from the last confident local maximum
- Weak leading/trailing beats are trimmed
- Beat times refined to sub-frame precision on the nearest onset peak

Supports a constant tempo or a per-frame tempo curve.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
from numba import njit

from pyloopanalysis.analysis.constants import (
    BEAT_FIRST_THRESHOLD,
    BEAT_KERNEL_SCALE,
    BEAT_REFINE_RADIUS,
    BEAT_SEARCH_MAX,
    BEAT_SEARCH_MIN,
    BEAT_TAIL_THRESHOLD,
    BEAT_TRIM_THRESHOLD,
    EPSILON,
    TIGHTNESS,
)
from pyloopanalysis.analysis.tempo import parabolic_offset
from pyloopanalysis.exceptions import InvalidInputError


@dataclass(frozen=True, slots=True)
class BeatSequence:
    """
    Strictly increasing beat frame indices.

    ``positions`` holds the sub-frame beat locations (in frames) that
    ``times`` is computed from; when absent the integer frames are used.
    """

    frames: np.ndarray
    bpm: float
    frame_rate: float
    sr: int | None = None
    hop_length: int | None = None
    positions: np.ndarray | None = None

    @property
    def times(self) -> np.ndarray:
        positions = self.frames if self.positions is None else self.positions
        return positions / self.frame_rate

    def __len__(self) -> int:
        return int(self.frames.shape[0])

    def to_dict(self) -> dict[str, Any]:
        return {
            "frames": self.frames.tolist(),
            "times": [round(t, 4) for t in self.times.tolist()],
        }


# =============================================================================
# NUMBA KERNELS
# =============================================================================


@njit(cache=True)
def _beat_local_score(onsets: np.ndarray, frames_per_beat: np.ndarray) -> np.ndarray:
    """Gaussian-weighted onset sum around each frame (kernel width follows fpb)."""
    n = onsets.shape[0]
    local = np.zeros(n, dtype=np.float64)
    for i in range(n):
        fpb = frames_per_beat[i]
        half = int(fpb)
        acc = 0.0
        for j in range(-half, half + 1):
            idx = i + j
            if 0 <= idx < n:
                acc += np.exp(-0.5 * (j * BEAT_KERNEL_SCALE / fpb) ** 2) * onsets[idx]
        local[i] = acc
    return local


@njit(cache=True)
def _beat_track_dp(local: np.ndarray, frames_per_beat: np.ndarray, tightness: float):
    n = local.shape[0]
    backlink = np.full(n, -1, dtype=np.int64)
    cum = np.zeros(n, dtype=np.float64)

    score_thresh = BEAT_FIRST_THRESHOLD * local.max()
    cum[0] = local[0]
    first_beat = True

    for i in range(1, n):
        fpb = frames_per_beat[i]
        log_fpb = np.log(fpb)
        start = max(0, i - int(np.floor(BEAT_SEARCH_MAX * fpb + 0.5)))
        end = min(i - 1, max(0, i - int(np.floor(BEAT_SEARCH_MIN * fpb + 0.5))))

        best_score = -np.inf
        best_loc = -1
        for loc in range(start, end + 1):
            penalty = np.log(max(1, i - loc)) - log_fpb
            score = cum[loc] - tightness * penalty * penalty
            if score > best_score:
                best_score = score
                best_loc = loc

        if best_loc >= 0:
            cum[i] = local[i] + best_score
        else:
            cum[i] = local[i]

        # Leading silence does not start a beat path
        if first_beat and local[i] < score_thresh:
            backlink[i] = -1
        else:
            backlink[i] = best_loc
            first_beat = False

    return backlink, cum


@njit(cache=True)
def _local_max(x: np.ndarray) -> np.ndarray:
    n = x.shape[0]
    maxima = np.zeros(n, dtype=np.bool_)
    for i in range(1, n - 1):
        if x[i] > x[i - 1] and x[i] > x[i + 1]:
            maxima[i] = True
    if n == 1:
        maxima[0] = True
    elif n > 1:
        maxima[0] = x[0] > x[1]
        maxima[n - 1] = x[n - 1] > x[n - 2]
    return maxima


# =============================================================================
# PATH SELECTION
# =============================================================================


def _last_beat(cum: np.ndarray) -> int:
    """Last local maximum of the cumulative score that is reasonably strong."""
    maxima = _local_max(cum)
    if not maxima.any():
        return cum.shape[0] - 1

    values = np.sort(cum[maxima])
    threshold = BEAT_TAIL_THRESHOLD * values[values.shape[0] // 2]
    candidates = np.flatnonzero(maxima & (cum >= threshold))
    return int(candidates[-1]) if candidates.size else cum.shape[0] - 1


def _backtrack(backlink: np.ndarray, tail: int) -> np.ndarray:
    path = []
    n = tail
    while n >= 0:
        path.append(n)
        n = int(backlink[n])
    return np.array(path[::-1], dtype=np.int64)


def _trim_beats(local: np.ndarray, beats: np.ndarray) -> np.ndarray:
    """Drop weak beats at both ends (<= half the RMS beat strength)."""
    if beats.size == 0:
        return beats
    scores = local[beats]
    threshold = BEAT_TRIM_THRESHOLD * np.sqrt(np.mean(scores**2))

    strong = np.flatnonzero(scores > threshold)
    if strong.size == 0:
        return beats[:0]
    return beats[strong[0]:strong[-1] + 1]


def _refine_positions(onsets: np.ndarray, beats: np.ndarray, radius: int = BEAT_REFINE_RADIUS) -> np.ndarray:
    """Move each beat onto the nearest onset peak, interpolated between frames."""
    n = onsets.shape[0]
    positions = beats.astype(np.float64)
    for k, frame in enumerate(beats):
        lo = max(0, frame - radius)
        hi = min(n, frame + radius + 1)
        peak = lo + int(np.argmax(onsets[lo:hi]))
        if onsets[peak] <= 0:
            continue
        offset = 0.0
        if 0 < peak < n - 1:
            offset = parabolic_offset(onsets[peak - 1], onsets[peak], onsets[peak + 1])
        positions[k] = peak + offset
    # Neighbouring beats sharing one peak keep their order
    return np.maximum.accumulate(positions)


def _frames_per_beat(bpm, n: int, frame_rate: float) -> np.ndarray:
    tempo = np.asarray(bpm, dtype=np.float64)
    if tempo.ndim == 0:
        tempo = np.full(n, float(tempo))
    elif tempo.ndim != 1 or tempo.shape[0] != n:
        raise InvalidInputError(
            f"Tempo curve must have one value per envelope frame ({n}), got shape {tempo.shape}."
        )
    if not np.isfinite(tempo).all() or np.any(tempo <= 0):
        raise InvalidInputError("BPM must be strictly positive.")
    return np.maximum(np.round(frame_rate * 60.0 / tempo), 1.0)


def track_beats(
    envelope,
    bpm,
    frame_rate: float,
    tightness: float = TIGHTNESS,
    trim: bool = True,
    sr: int | None = None,
    hop_length: int | None = None,
) -> BeatSequence:
    """
    Track beats through an onset envelope.

    Args:
        envelope: Onset strength per frame.
        bpm: Tempo, either a scalar or one value per envelope frame.
        frame_rate: Envelope frames per second (``sr / hop_length``).
        tightness: How strictly beats follow the tempo.
        trim: Remove weak beats at the start and end.
        sr: Sample rate, recorded on the result.
        hop_length: Hop length, recorded on the result.

    Returns:
        BeatSequence; empty (bpm 0) when the envelope has no onsets.

    Raises:
        InvalidInputError: Non-positive tempo, tightness or frame rate, or a
            tempo curve whose length differs from the envelope.
    """
    if tightness <= 0:
        raise InvalidInputError("Tightness must be strictly positive.")
    if frame_rate <= 0:
        raise InvalidInputError("Frame rate must be strictly positive.")

    onsets = np.asarray(envelope, dtype=np.float64)
    if onsets.ndim != 1:
        raise InvalidInputError(f"Onset envelope must be 1-D, got shape {onsets.shape}.")
    n = onsets.shape[0]
    fpb = _frames_per_beat(bpm, n, frame_rate)

    empty = BeatSequence(
        frames=np.zeros(0, dtype=np.int64), bpm=0.0, frame_rate=frame_rate, sr=sr, hop_length=hop_length
    )
    if n == 0 or not np.isfinite(onsets).all() or not np.any(onsets):
        logging.debug("No onsets, returning an empty beat sequence")
        return empty

    # === Local score ===
    std = onsets.std(ddof=1) if n > 1 else 0.0
    normalized = onsets / (std + EPSILON)
    local = _beat_local_score(normalized, fpb)

    # === Dynamic programming ===
    backlink, cum = _beat_track_dp(local, fpb, float(tightness))
    beats = _backtrack(backlink, _last_beat(cum))

    if trim:
        beats = _trim_beats(local, beats)

    frames = np.ascontiguousarray(beats, dtype=np.int64)
    if frames.size == 0:
        return empty

    logging.debug(f"Tracked {frames.size} beats over {n} frames")
    return BeatSequence(
        frames=frames,
        bpm=float(np.mean(np.asarray(bpm, dtype=np.float64))),
        frame_rate=frame_rate,
        sr=sr,
        hop_length=hop_length,
        positions=_refine_positions(onsets, frames),
    )
