"""
Structure Analysis - Self-similarity based loop discovery.

Pipeline:
- 12-bin chroma from the STFT power spectrum
- Frame aggregation to bound the O(n^2) matrices
- Time-delay embedding (stack memory) for short-term context
- Cosine recurrence matrix (affinity or k-NN connectivity)
- Lag matrix, summed per lag into a periodicity curve
- Peaks of that curve become loop-length candidates
- Loudness-envelope autocorrelation when pitch content never changes
"""

from __future__ import annotations

import logging
import math

import numpy as np
from numba import njit
from scipy.ndimage import uniform_filter1d
from scipy.signal import correlate, find_peaks

from pyloopanalysis.analysis.candidates import LoopCandidate, is_musical_length, rank_candidates
from pyloopanalysis.analysis.config import SpectralConfig, StructureConfig
from pyloopanalysis.analysis.constants import (
    CHROMA_FMAX,
    CHROMA_FMIN,
    EPSILON,
    LOUDNESS_FLOOR_DB,
    N_CHROMA,
    RECURRENCE_WIDTH,
    STACK_DELAY,
    STACK_STEPS,
    STFT_BATCH_SIZE,
)
from pyloopanalysis.analysis.signal import Signal
from pyloopanalysis.analysis.spectral import Spectrogram, map_frame_batches, stft
from pyloopanalysis.exceptions import InsufficientDataError, InvalidInputError


# =============================================================================
# FEATURES
# =============================================================================


def chroma_filter(frequencies: np.ndarray, fmin: float = CHROMA_FMIN, fmax: float = CHROMA_FMAX) -> np.ndarray:
    """(n_bins, 12) 0/1 matrix folding STFT bins into pitch classes (C = 0)."""
    fold = np.zeros((frequencies.shape[0], N_CHROMA), dtype=np.float64)
    valid = np.flatnonzero((frequencies >= fmin) & (frequencies <= fmax))
    if valid.size:
        midi = np.round(12.0 * np.log2(frequencies[valid] / 440.0) + 69.0).astype(np.int64)
        fold[valid, midi % N_CHROMA] = 1.0
    return fold


def chroma_features(
    spectrogram: Spectrogram,
    fmin: float = CHROMA_FMIN,
    fmax: float = CHROMA_FMAX,
    n_workers: int = 1,
    batch_size: int = STFT_BATCH_SIZE,
) -> np.ndarray:
    """
    Per-frame chroma, shape (n_frames, 12), each frame scaled to max 1.

    Silent frames stay all-zero.
    """
    fold = chroma_filter(spectrogram.frequencies, fmin, fmax)

    def _fold(batch: np.ndarray) -> np.ndarray:
        power = np.abs(batch.astype(np.complex128)) ** 2
        return power @ fold

    chroma = map_frame_batches(_fold, spectrogram.frames, n_workers, batch_size)
    peak = chroma.max(axis=1, keepdims=True)
    return np.where(peak > EPSILON, chroma / np.maximum(peak, EPSILON), 0.0)


def aggregate_frames(features: np.ndarray, factor: int) -> np.ndarray:
    """Average consecutive blocks of ``factor`` frames (last block may be shorter)."""
    if factor <= 1:
        return features
    starts = np.arange(0, features.shape[0], factor)
    counts = np.diff(np.append(starts, features.shape[0]))
    return np.add.reduceat(features, starts, axis=0) / counts[:, None]


def stack_memory(features: np.ndarray, n_steps: int = STACK_STEPS, delay: int = STACK_DELAY) -> np.ndarray:
    """
    Forward time-delay embedding.

    Row ``i`` concatenates frames ``i, i + delay, ..., i + (n_steps - 1) * delay``,
    each unit-normalised, giving ``n - (n_steps - 1) * delay`` rows.
    """
    n, dim = features.shape
    n_valid = n - (n_steps - 1) * delay
    if n_valid <= 0:
        return np.zeros((0, dim * n_steps), dtype=np.float64)

    blocks = []
    for step in range(n_steps):
        block = features[step * delay:step * delay + n_valid]
        norm = np.linalg.norm(block, axis=1, keepdims=True)
        blocks.append(np.where(norm > EPSILON, block / np.maximum(norm, EPSILON), 0.0))
    return np.hstack(blocks)


# =============================================================================
# RECURRENCE
# =============================================================================


def _band_mask(n: int, width: int) -> np.ndarray:
    idx = np.arange(n)
    return np.abs(idx[:, None] - idx[None, :]) <= width


def _knn_mask(sim: np.ndarray, band: np.ndarray, k: int) -> np.ndarray:
    n = sim.shape[0]
    masked = np.where(band, -np.inf, sim)
    k = max(1, min(k, n - 1))
    nearest = np.argpartition(-masked, kth=k - 1, axis=1)[:, :k]
    mask = np.zeros((n, n), dtype=bool)
    mask[np.arange(n)[:, None], nearest] = True
    return mask & np.isfinite(masked)


def recurrence_matrix(
    features: np.ndarray,
    mode: str = "affinity",
    k: int | None = None,
    width: int = RECURRENCE_WIDTH,
    sym: bool = True,
) -> np.ndarray:
    """
    Cosine recurrence matrix of row-wise feature vectors.

    Args:
        features: (n, dim) feature rows.
        mode: "affinity" keeps max(0, similarity); "connectivity" keeps 1 for
            each row's ``k`` nearest neighbours.
        k: Neighbours per row. Defaults to ``2 * ceil(sqrt(n - 2 * width + 1))``
            for connectivity; affinity is only k-NN masked when given.
        width: Frames around the main diagonal that are zeroed.
        sym: Mutual links only (connectivity) or average with the transpose
            (affinity).

    Returns:
        Non-negative float32 (n, n) matrix.
    """
    if mode not in ("affinity", "connectivity"):
        raise InvalidInputError(f"Unknown recurrence mode {mode!r}.")
    data = np.asarray(features, dtype=np.float64)
    if data.ndim != 2:
        raise InvalidInputError(f"Expected (n, dim) features, got shape {data.shape}.")

    n = data.shape[0]
    if n == 0:
        return np.zeros((0, 0), dtype=np.float32)

    norm = np.linalg.norm(data, axis=1, keepdims=True)
    unit = np.where(norm > EPSILON, data / np.maximum(norm, EPSILON), 0.0)
    sim = np.clip(unit @ unit.T, -1.0, 1.0)
    band = _band_mask(n, width)

    if mode == "connectivity":
        if k is None:
            k = 2 * math.ceil(math.sqrt(max(1, n - 2 * width + 1)))
        rec = _knn_mask(sim, band, k).astype(np.float64)
        if sym:
            rec = np.minimum(rec, rec.T)
    else:
        rec = np.maximum(sim, 0.0)
        if k is not None:
            rec = rec * _knn_mask(sim, band, k)
        if sym:
            rec = 0.5 * (rec + rec.T)

    rec[band] = 0.0
    return rec.astype(np.float32)


@njit(cache=True)
def _lag_matrix(rec: np.ndarray) -> np.ndarray:
    n = rec.shape[0]
    lag = np.zeros((n, n), dtype=rec.dtype)
    for i in range(n):
        for j in range(i, n):
            lag[j - i, i] = rec[i, j]
    return lag


def recurrence_to_lag(rec: np.ndarray) -> np.ndarray:
    """Lag matrix ``L[lag, i] = R[i, i + lag]`` (zero past the end)."""
    rec = np.ascontiguousarray(rec)
    if rec.ndim != 2 or rec.shape[0] != rec.shape[1]:
        raise InvalidInputError(f"Recurrence matrix must be square, got shape {rec.shape}.")
    return _lag_matrix(rec)


def lag_energy(lag: np.ndarray) -> np.ndarray:
    """Summed similarity per lag."""
    return lag.sum(axis=1, dtype=np.float64)


def _start_index(diagonal: np.ndarray, threshold: float) -> int:
    """First position where the smoothed diagonal reaches ``threshold`` of its max."""
    if diagonal.size == 0:
        return 0
    smooth = uniform_filter1d(diagonal.astype(np.float64), size=3)
    peak = smooth.max()
    if peak <= EPSILON:
        return 0
    return int(np.argmax(smooth >= threshold * peak))


# =============================================================================
# LOUDNESS
# =============================================================================


def loudness_envelope(spectrogram: Spectrogram, floor_db: float = LOUDNESS_FLOOR_DB) -> np.ndarray:
    """Per-frame energy in dB relative to the loudest frame, clipped at ``-floor_db``."""
    power = np.sum(np.abs(spectrogram.frames.astype(np.complex128)) ** 2, axis=1)
    peak = float(power.max()) if power.size else 0.0
    if peak <= EPSILON:
        return np.full(power.shape[0], -floor_db)
    return np.maximum(10.0 * np.log10(np.maximum(power / peak, EPSILON)), -floor_db)


def _lag_range(n: int, frame_rate: float, config: StructureConfig, min_lag: int = 1) -> tuple[int, int]:
    min_lag = max(min_lag, math.ceil(config.min_loop_seconds * frame_rate))
    max_lag = n - 2
    if config.max_loop_seconds is not None:
        max_lag = min(max_lag, math.floor(config.max_loop_seconds * frame_rate))
    return min_lag, max_lag


def _curve_peaks(curve: np.ndarray, min_lag: int, max_lag: int, prominence: float) -> tuple[list[int], float]:
    """Prominent peaks of a per-lag curve inside ``[min_lag, max_lag]`` and the range maximum."""
    range_max = float(curve[min_lag:max_lag + 1].max())
    if range_max <= EPSILON:
        return [], range_max
    lo = max(0, min_lag - 1)
    hi = min(curve.shape[0] - 1, max_lag + 1)
    peaks, _ = find_peaks(curve[lo:hi + 1], prominence=prominence * range_max)
    return [lo + int(p) for p in peaks if min_lag <= lo + p <= max_lag], range_max


# =============================================================================
# CANDIDATES
# =============================================================================


def _make_candidate(
    signal: Signal,
    spectrogram: Spectrogram,
    start: int,
    lag_frames: int,
    factor: int,
    strength: float,
    tempo_bpm: float,
    config: StructureConfig,
    method: str,
) -> LoopCandidate:
    start_frame = start * factor
    end_frame = (start + lag_frames) * factor
    length = (end_frame - start_frame) * spectrogram.hop_length / signal.sr
    return LoopCandidate(
        start_frame=start_frame,
        end_frame=end_frame,
        length_seconds=length,
        correlation=strength,
        confidence=strength,
        is_musical_boundary=tempo_bpm > 0 and is_musical_length(length, tempo_bpm, config.musical_alignment),
        sr=signal.sr,
        hop_length=spectrogram.hop_length,
        start_sample=start_frame * spectrogram.hop_length,
        end_sample=min(end_frame * spectrogram.hop_length, signal.n_samples),
        score_method=method,
        frame_step=factor,
    )


def _recurrence_candidates(
    signal: Signal,
    spectrogram: Spectrogram,
    config: StructureConfig,
    spectral: SpectralConfig,
    tempo_bpm: float,
) -> list[LoopCandidate]:
    # ===== PHASE 1: Features =====
    chroma = chroma_features(spectrogram, config.fmin, config.fmax, spectral.n_workers, spectral.batch_size)
    factor = max(1, math.ceil(chroma.shape[0] / config.max_frames))
    chroma = aggregate_frames(chroma, factor)
    stacked = stack_memory(chroma, config.n_steps, config.delay)

    n = stacked.shape[0]
    frame_rate = signal.sr / (spectrogram.hop_length * factor)
    min_lag, max_lag = _lag_range(n, frame_rate, config, min_lag=config.width + 1)

    if max_lag < min_lag or not np.any(stacked):
        logging.debug(f"No usable structure: {n} embedded frames, lag range [{min_lag}, {max_lag}]")
        return []

    # ===== PHASE 2: Recurrence -> lag =====
    rec = recurrence_matrix(stacked, config.mode, config.k, config.width, config.sym)
    lag = recurrence_to_lag(rec)
    energy = lag_energy(lag)

    # ===== PHASE 3: Periodicity peaks =====
    peaks, range_max = _curve_peaks(energy, min_lag, max_lag, config.peak_prominence)
    candidates = []
    for lag_frames in peaks:
        start = _start_index(lag[lag_frames, :n - lag_frames], config.start_threshold)
        strength = float(np.clip(energy[lag_frames] / range_max, 0.0, 1.0))
        candidates.append(_make_candidate(
            signal, spectrogram, start, lag_frames, factor, strength, tempo_bpm, config, "structure"
        ))

    logging.debug(f"Recurrence: {len(peaks)} lag peaks (aggregation x{factor})")
    return candidates


def _loudness_candidates(
    signal: Signal,
    spectrogram: Spectrogram,
    config: StructureConfig,
    tempo_bpm: float,
) -> list[LoopCandidate]:
    """
    Loop lengths from the autocorrelation of the loudness envelope.

    Catches repetition that pitch classes cannot see, such as a single note
    re-struck at a fixed period.
    """
    env = loudness_envelope(spectrogram)
    factor = max(1, math.ceil(env.shape[0] / config.max_frames))
    env = aggregate_frames(env[:, None], factor)[:, 0]

    n = env.shape[0]
    span = float(np.ptp(env)) if n else 0.0
    frame_rate = signal.sr / (spectrogram.hop_length * factor)
    min_lag, max_lag = _lag_range(n, frame_rate, config)
    if n < 3 or span < config.loudness_min_range_db or max_lag < min_lag:
        logging.debug(f"Loudness envelope too flat or short ({span:.1f} dB over {n} frames)")
        return []

    x = env - env.mean()
    curve = correlate(x, x, mode="full", method="fft")[n - 1:] / float(np.dot(x, x))
    peaks, range_max = _curve_peaks(curve, min_lag, max_lag, config.peak_prominence)

    candidates = []
    for lag_frames in peaks:
        agreement = 1.0 - np.abs(env[:n - lag_frames] - env[lag_frames:]) / span
        start = _start_index(agreement, config.start_threshold)
        strength = float(np.clip(curve[lag_frames] / range_max, 0.0, 1.0))
        candidates.append(_make_candidate(
            signal, spectrogram, start, lag_frames, factor, strength, tempo_bpm, config, "loudness"
        ))

    logging.debug(f"Loudness: {len(peaks)} lag peaks over {span:.1f} dB (aggregation x{factor})")
    return candidates


def find_loop_candidates(
    signal: Signal | np.ndarray,
    sr: int | None = None,
    config: StructureConfig | None = None,
    spectrogram: Spectrogram | None = None,
    tempo_bpm: float = 0.0,
    spectral: SpectralConfig | None = None,
) -> list[LoopCandidate]:
    """
    Rank loop candidates from the periodicity of the recurrence matrix.

    When the chroma recurrence yields nothing (a single repeated pitch, for
    instance) the loudness envelope's autocorrelation is searched instead.

    Args:
        signal: Analysed audio (``Signal`` or raw samples with ``sr``).
        sr: Sample rate when ``signal`` is a raw array.
        config: Structure settings.
        spectrogram: Precomputed STFT of ``signal``; computed when omitted.
        tempo_bpm: Detected tempo used to flag beat-aligned lengths (0 = none).
        spectral: STFT settings used when ``spectrogram`` is omitted.

    Returns:
        Up to ``config.top_k`` candidates, best first. Empty when the signal is
        too short, silent or shows no periodicity.
    """
    config = config or StructureConfig()
    spectral = spectral or SpectralConfig()
    if not isinstance(signal, Signal):
        if sr is None:
            raise InvalidInputError("A sample rate is required for raw sample buffers.")
        signal = Signal.from_samples(signal, sr)

    if spectrogram is None:
        try:
            spectrogram = stft(
                signal,
                spectral.frame_length,
                spectral.hop_length,
                spectral.window,
                n_workers=spectral.n_workers,
                batch_size=spectral.batch_size,
            )
        except InsufficientDataError:
            logging.debug("Signal shorter than one frame, no structure candidates")
            return []

    candidates = _recurrence_candidates(signal, spectrogram, config, spectral, tempo_bpm)
    if not candidates and config.loudness_fallback:
        candidates = _loudness_candidates(signal, spectrogram, config, tempo_bpm)

    ranked = rank_candidates(candidates, config.top_k)
    logging.debug(f"Structure: {len(ranked)} candidates")
    return ranked
