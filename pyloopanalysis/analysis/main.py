"""
Main Analysis Entry Point.

Orchestrates the complete analysis pipeline:
1. STFT
2. Onset envelope
3. Tempo (global, optionally a per-frame curve)
4. Beat tracking
5. Structural loop candidates
6. Sample-accurate refinement and selection

After input validation nothing here raises: every stage that cannot produce
a result degrades to a documented default, recorded in ``fallback_reasons``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from pyloopanalysis.cache import AnalysisCache

from pyloopanalysis.analysis.beats import BeatSequence, track_beats
from pyloopanalysis.analysis.candidates import LoopCandidate, is_musical_length, rank_candidates
from pyloopanalysis.analysis.config import AnalysisConfig
from pyloopanalysis.analysis.onset import onset_strength
from pyloopanalysis.analysis.refine import refine
from pyloopanalysis.analysis.signal import Signal
from pyloopanalysis.analysis.spectral import stft
from pyloopanalysis.analysis.structure import find_loop_candidates
from pyloopanalysis.analysis.tempo import TempoEstimate, estimate_tempo, estimate_tempo_curve


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    tempo: TempoEstimate
    beats: BeatSequence
    loop: LoopCandidate
    candidates: tuple[LoopCandidate, ...]
    used_fallback: bool
    fallback_reasons: tuple[str, ...]
    onset_envelope: np.ndarray
    duration: float
    tempo_curve: np.ndarray | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable summary (the onset envelope is left out)."""
        return {
            "tempo": self.tempo.to_dict(),
            "beats": self.beats.to_dict(),
            "loop": self.loop.to_dict(),
            "candidates": [c.to_dict() for c in self.candidates],
            "used_fallback": self.used_fallback,
            "fallback_reasons": list(self.fallback_reasons),
            "duration": round(self.duration, 6),
        }


def _freeze(*arrays: np.ndarray | None) -> None:
    for arr in arrays:
        if arr is not None:
            arr.flags.writeable = False


def fallback_loop(signal: Signal, bpm: float, config: AnalysisConfig) -> LoopCandidate:
    """``fallback_bars`` bars at ``bpm`` from the start, clipped to the signal."""
    hop = config.spectral.hop_length
    n_beats = config.fallback_bars * config.beats_per_bar
    wanted = int(round(n_beats * 60.0 / bpm * signal.sr))
    end = min(signal.n_samples, wanted)
    return LoopCandidate(
        start_frame=0,
        end_frame=end // hop,
        length_seconds=end / signal.sr,
        correlation=0.0,
        confidence=0.0,
        is_musical_boundary=end == wanted,
        sr=signal.sr,
        hop_length=hop,
        start_sample=0,
        end_sample=end,
        score_method="fallback",
    )


def analyze(
    signal: Signal | np.ndarray,
    sr: int | None = None,
    config: AnalysisConfig | None = None,
    cache: AnalysisCache | None = None,
) -> AnalysisResult:
    """
    Analyse a mono signal: tempo, beats and the best loop.

    Args:
        signal: A ``Signal`` or raw mono samples (then ``sr`` is required).
        sr: Sample rate for raw samples.
        config: Analysis settings; defaults everywhere when omitted.
        cache: Optional result cache consulted before and filled after.

    Returns:
        AnalysisResult. Degraded stages are listed in ``fallback_reasons``.

    Raises:
        InvalidInputError: Invalid samples or sample rate.
        InsufficientDataError: Signal shorter than one analysis frame.
    """
    config = config or AnalysisConfig()
    if not isinstance(signal, Signal):
        signal = Signal.from_samples(signal, sr)

    if cache is not None:
        cached = cache.get(signal, config)
        if cached is not None:
            logging.info("Analysis served from cache")
            return cached

    spectral = config.spectral
    reasons = []
    t0 = time.perf_counter()

    # ===== PHASE 1: STFT =====
    spec = stft(
        signal,
        spectral.frame_length,
        spectral.hop_length,
        spectral.window,
        n_workers=spectral.n_workers,
        batch_size=spectral.batch_size,
    )
    logging.info(f"STFT ({spec.n_frames} frames): {time.perf_counter() - t0:.3f}s")

    # ===== PHASE 2: Onsets & Tempo =====
    t1 = time.perf_counter()
    envelope = onset_strength(spec)
    tempo = estimate_tempo(envelope, signal.sr, spectral.hop_length, config=config.tempo)
    if tempo.used_fallback:
        reasons.append(f"tempo: {tempo.fallback_reason}")

    tempo_curve = None
    if config.tempo.dynamic:
        tempo_curve = estimate_tempo_curve(envelope, signal.sr, spectral.hop_length, config.tempo, tempo.bpm)
    logging.info(f"Tempo {tempo.bpm:.2f} BPM (confidence {tempo.confidence:.2f}): {time.perf_counter() - t1:.3f}s")

    # ===== PHASE 3: Beats =====
    t2 = time.perf_counter()
    beats = track_beats(
        envelope,
        tempo_curve if tempo_curve is not None else tempo.bpm,
        spec.frame_rate,
        config.beats.tightness,
        config.beats.trim,
        sr=signal.sr,
        hop_length=spectral.hop_length,
    )
    if len(beats) == 0:
        reasons.append("beats: no beats detected")
    logging.info(f"Tracked {len(beats)} beats in {time.perf_counter() - t2:.3f}s")

    # ===== PHASE 4: Structure =====
    t3 = time.perf_counter()
    structural = find_loop_candidates(
        signal,
        config=config.structure,
        spectrogram=spec,
        tempo_bpm=tempo.bpm,
        spectral=spectral,
    )
    logging.info(f"Found {len(structural)} structural candidates in {time.perf_counter() - t3:.3f}s")

    # ===== PHASE 5: Refinement =====
    t4 = time.perf_counter()
    refined = []
    for candidate in structural:
        loop = refine(signal, candidate, config=config.refine)
        refined.append(dataclasses.replace(
            loop,
            is_musical_boundary=is_musical_length(
                loop.length_seconds, tempo.bpm, config.structure.musical_alignment
            ),
        ))
    candidates = rank_candidates(refined)
    logging.info(f"Refinement: {time.perf_counter() - t4:.3f}s")

    # ===== PHASE 6: Selection =====
    if not candidates:
        reasons.append("structure: no repeating pattern found")
        loop = fallback_loop(signal, tempo.bpm, config)
    elif candidates[0].confidence < config.acceptance_threshold:
        reasons.append(
            f"structure: best candidate confidence {candidates[0].confidence:.2f} "
            f"below {config.acceptance_threshold:.2f}"
        )
        loop = fallback_loop(signal, tempo.bpm, config)
    else:
        loop = candidates[0]

    _freeze(
        envelope,
        beats.frames,
        beats.positions,
        tempo_curve,
        *((tempo.tempogram.lags, tempo.tempogram.bpms, tempo.tempogram.values) if tempo.tempogram else ()),
    )
    result = AnalysisResult(
        tempo=tempo,
        beats=beats,
        loop=loop,
        candidates=tuple(candidates),
        used_fallback=bool(reasons),
        fallback_reasons=tuple(reasons),
        onset_envelope=envelope,
        duration=signal.duration,
        tempo_curve=tempo_curve,
    )

    logging.info(f"Total: {time.perf_counter() - t0:.3f}s")
    if reasons:
        logging.info(f"Fallbacks: {'; '.join(reasons)}")
    else:
        logging.info(f"Best loop: {loop.start_seconds:.3f}s - {loop.end_seconds:.3f}s ({loop.confidence:.2f})")

    if cache is not None:
        cache.put(signal, config, result)
    return result
