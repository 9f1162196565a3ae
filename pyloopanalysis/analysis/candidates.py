"""
Loop Candidates.

The ``LoopCandidate`` record shared by structure analysis and refinement,
plus musical-alignment and ranking helpers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from pyloopanalysis.analysis.constants import MUSICAL_ALIGNMENT_MIN, beat_alignment


@dataclass(frozen=True, slots=True)
class LoopCandidate:
    """A loop region with its evidence. Frames index the hop grid, samples the audio."""

    start_frame: int
    end_frame: int
    length_seconds: float
    correlation: float        # Structural evidence (lag-energy peak height, 0-1)
    confidence: float         # 0-1
    is_musical_boundary: bool
    sr: int
    hop_length: int
    start_sample: int = 0
    end_sample: int = 0
    score_method: str = "structure"
    frame_step: int = 1       # STFT frames per lag step of the recurrence grid

    @property
    def start_seconds(self) -> float:
        return self.start_sample / self.sr

    @property
    def end_seconds(self) -> float:
        return self.end_sample / self.sr

    @property
    def n_samples(self) -> int:
        return self.end_sample - self.start_sample

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_frame": self.start_frame,
            "end_frame": self.end_frame,
            "start_sample": self.start_sample,
            "end_sample": self.end_sample,
            "start_seconds": round(self.start_seconds, 6),
            "end_seconds": round(self.end_seconds, 6),
            "length_seconds": round(self.length_seconds, 6),
            "correlation": round(self.correlation, 4),
            "confidence": round(self.confidence, 4),
            "is_musical_boundary": self.is_musical_boundary,
            "score_method": self.score_method,
        }


def is_musical_length(length_seconds: float, bpm: float, threshold: float = MUSICAL_ALIGNMENT_MIN) -> bool:
    """True when the loop length sits on the beat grid of ``bpm``."""
    return beat_alignment(length_seconds, bpm) >= threshold


def rank_key(candidate: LoopCandidate) -> tuple[float, bool, float]:
    """Highest confidence first; ties go to musical boundaries, then shorter loops."""
    return (-candidate.confidence, not candidate.is_musical_boundary, candidate.length_seconds)


def rank_candidates(candidates: Iterable[LoopCandidate], top_k: int | None = None) -> list[LoopCandidate]:
    ranked = sorted(candidates, key=rank_key)
    return ranked if top_k is None else ranked[:top_k]
