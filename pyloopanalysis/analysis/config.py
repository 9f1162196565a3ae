"""
Analysis configuration.

One validated dataclass per pipeline stage, nested into ``AnalysisConfig``.
Bounds are checked at construction time so a bad value fails before any
audio is touched.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from pyloopanalysis.analysis import constants as C
from pyloopanalysis.exceptions import ConfigError

_WINDOWS = ("hann", "hamming", "blackman", "boxcar", "rectangular")
_RECURRENCE_MODES = ("affinity", "connectivity")


def _check_range(name: str, value: float, low: float | None = None, high: float | None = None) -> None:
    if low is not None and value < low:
        raise ConfigError(f"{name}={value} must be >= {low}")
    if high is not None and value > high:
        raise ConfigError(f"{name}={value} must be <= {high}")


@dataclass(frozen=True)
class SpectralConfig:
    frame_length: int = C.FRAME_LENGTH
    hop_length: int = C.HOP_LENGTH
    window: str = C.WINDOW
    n_workers: int = 1
    batch_size: int = C.STFT_BATCH_SIZE

    def __post_init__(self):
        _check_range("frame_length", self.frame_length, 16, 1 << 16)
        _check_range("hop_length", self.hop_length, 1, self.frame_length)
        _check_range("n_workers", self.n_workers, 1, 64)
        _check_range("batch_size", self.batch_size, 1)
        if self.window not in _WINDOWS:
            raise ConfigError(f"window must be one of {_WINDOWS}, got {self.window!r}")


@dataclass(frozen=True)
class TempoConfig:
    min_bpm: float = C.MIN_BPM
    max_bpm: float = C.MAX_BPM
    default_bpm: float = C.DEFAULT_BPM
    min_prominence: float = C.TEMPO_MIN_PROMINENCE
    common_tempos: tuple[float, ...] = C.COMMON_TEMPOS
    prior_width: float = C.TEMPO_PRIOR_WIDTH
    prior_weight: float = C.TEMPO_PRIOR_WEIGHT
    octave_low: float = C.OCTAVE_LOW_BPM
    octave_high: float = C.OCTAVE_HIGH_BPM
    octave_ratio: float = C.OCTAVE_RATIO
    octave_tolerance: float = C.OCTAVE_TOLERANCE
    dynamic: bool = False
    dynamic_window_seconds: float = C.DYNAMIC_WINDOW_SECONDS
    dynamic_hop_seconds: float = C.DYNAMIC_HOP_SECONDS

    def __post_init__(self):
        # JSON round trips hand back lists
        object.__setattr__(self, "common_tempos", tuple(float(t) for t in self.common_tempos))
        _check_range("min_bpm", self.min_bpm, 1.0)
        if self.max_bpm <= self.min_bpm:
            raise ConfigError(f"max_bpm={self.max_bpm} must be larger than min_bpm={self.min_bpm}")
        _check_range("default_bpm", self.default_bpm, self.min_bpm, self.max_bpm)
        _check_range("min_prominence", self.min_prominence, 0.0, 1.0)
        _check_range("prior_width", self.prior_width, 0.0)
        _check_range("prior_weight", self.prior_weight, 0.0)
        _check_range("octave_ratio", self.octave_ratio, 0.0, 1.0)
        _check_range("octave_tolerance", self.octave_tolerance, 0.0, 0.5)
        if self.octave_high <= self.octave_low:
            raise ConfigError("octave_high must be larger than octave_low")
        _check_range("dynamic_window_seconds", self.dynamic_window_seconds, 1.0)
        _check_range("dynamic_hop_seconds", self.dynamic_hop_seconds, 0.1)


@dataclass(frozen=True)
class BeatConfig:
    tightness: float = C.TIGHTNESS
    trim: bool = True

    def __post_init__(self):
        if self.tightness <= 0:
            raise ConfigError(f"tightness={self.tightness} must be strictly positive")


@dataclass(frozen=True)
class StructureConfig:
    n_steps: int = C.STACK_STEPS
    delay: int = C.STACK_DELAY
    mode: str = C.RECURRENCE_MODE
    k: int | None = None
    width: int = C.RECURRENCE_WIDTH
    sym: bool = True
    fmin: float = C.CHROMA_FMIN
    fmax: float = C.CHROMA_FMAX
    max_frames: int = C.MAX_RECURRENCE_FRAMES
    min_loop_seconds: float = C.MIN_LOOP_SECONDS
    max_loop_seconds: float | None = None
    peak_prominence: float = C.LAG_PEAK_PROMINENCE
    top_k: int = C.TOP_K_CANDIDATES
    start_threshold: float = C.START_THRESHOLD
    musical_alignment: float = C.MUSICAL_ALIGNMENT_MIN
    loudness_fallback: bool = True
    loudness_min_range_db: float = C.LOUDNESS_MIN_RANGE_DB

    def __post_init__(self):
        _check_range("n_steps", self.n_steps, 1, 64)
        _check_range("delay", self.delay, 1)
        if self.mode not in _RECURRENCE_MODES:
            raise ConfigError(f"mode must be one of {_RECURRENCE_MODES}, got {self.mode!r}")
        if self.k is not None:
            _check_range("k", self.k, 1)
        _check_range("width", self.width, 0)
        if self.fmax <= self.fmin or self.fmin <= 0:
            raise ConfigError("chroma frequency range must satisfy 0 < fmin < fmax")
        _check_range("max_frames", self.max_frames, 16)
        _check_range("min_loop_seconds", self.min_loop_seconds, 0.0)
        if self.max_loop_seconds is not None and self.max_loop_seconds <= self.min_loop_seconds:
            raise ConfigError("max_loop_seconds must be larger than min_loop_seconds")
        _check_range("peak_prominence", self.peak_prominence, 0.0, 1.0)
        _check_range("top_k", self.top_k, 1, 100)
        _check_range("start_threshold", self.start_threshold, 0.0, 1.0)
        _check_range("musical_alignment", self.musical_alignment, 0.0, 1.0)
        _check_range("loudness_min_range_db", self.loudness_min_range_db, 0.0, C.LOUDNESS_FLOOR_DB)


@dataclass(frozen=True)
class RefineConfig:
    zero_crossing_ms: float = C.ZERO_CROSSING_SEARCH_MS
    energy_window: int = C.ZERO_CROSSING_ENERGY_WINDOW
    template_length: int = C.TEMPLATE_LENGTH
    length_search: bool = True
    consistency_window: int = C.CONSISTENCY_WINDOW
    consistency_hop: int = C.CONSISTENCY_HOP
    consistency_scale: float = C.CONSISTENCY_SCALE
    correlation_weight: float = C.CORRELATION_WEIGHT

    def __post_init__(self):
        _check_range("zero_crossing_ms", self.zero_crossing_ms, 0.0, 100.0)
        _check_range("energy_window", self.energy_window, 1)
        _check_range("template_length", self.template_length, 64)
        _check_range("consistency_window", self.consistency_window, 16)
        _check_range("consistency_hop", self.consistency_hop, 1)
        _check_range("consistency_scale", self.consistency_scale, 0.0, 1.0)
        _check_range("correlation_weight", self.correlation_weight, 0.0, 1.0)


@dataclass(frozen=True)
class AnalysisConfig:
    spectral: SpectralConfig = field(default_factory=SpectralConfig)
    tempo: TempoConfig = field(default_factory=TempoConfig)
    beats: BeatConfig = field(default_factory=BeatConfig)
    structure: StructureConfig = field(default_factory=StructureConfig)
    refine: RefineConfig = field(default_factory=RefineConfig)
    acceptance_threshold: float = C.ACCEPTANCE_THRESHOLD
    fallback_bars: int = C.FALLBACK_BARS
    beats_per_bar: int = C.BEATS_PER_BAR

    def __post_init__(self):
        _check_range("acceptance_threshold", self.acceptance_threshold, 0.0, 1.0)
        _check_range("fallback_bars", self.fallback_bars, 1)
        _check_range("beats_per_bar", self.beats_per_bar, 1)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tempo"]["common_tempos"] = list(self.tempo.common_tempos)
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AnalysisConfig:
        try:
            return AnalysisConfig(
                spectral=SpectralConfig(**data.get("spectral", {})),
                tempo=TempoConfig(**data.get("tempo", {})),
                beats=BeatConfig(**data.get("beats", {})),
                structure=StructureConfig(**data.get("structure", {})),
                refine=RefineConfig(**data.get("refine", {})),
                acceptance_threshold=data.get("acceptance_threshold", C.ACCEPTANCE_THRESHOLD),
                fallback_bars=data.get("fallback_bars", C.FALLBACK_BARS),
                beats_per_bar=data.get("beats_per_bar", C.BEATS_PER_BAR),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e


def load_config(path: str | Path) -> AnalysisConfig:
    """Read an ``AnalysisConfig`` from a JSON file (missing keys keep defaults)."""
    with open(path, "r", encoding="utf-8") as handle:
        return AnalysisConfig.from_dict(json.load(handle))
