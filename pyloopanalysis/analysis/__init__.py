"""
PyLoopAnalysis Analysis Module - Tempo, beats and loop structure.

Architecture:
├── constants.py   - Documented defaults
├── config.py      - Validated per-stage configuration
├── signal.py      - Sanitised immutable sample buffer
├── spectral.py    - Windows, recursive FFT, STFT
├── onset.py       - Spectral flux onset envelope
├── tempo.py       - Autocorrelation tempogram, tempo curve
├── beats.py       - Dynamic programming beat tracker
├── candidates.py  - Loop candidate record and ranking
├── structure.py   - Chroma recurrence / lag matrix loop discovery
├── refine.py      - Sample-accurate loop refinement
└── main.py        - Pipeline orchestration
"""

from pyloopanalysis.analysis.signal import Signal

from pyloopanalysis.analysis.config import (
    AnalysisConfig,
    SpectralConfig,
    TempoConfig,
    BeatConfig,
    StructureConfig,
    RefineConfig,
    load_config,
)

# Spectral front end
from pyloopanalysis.analysis.spectral import (
    Spectrogram,
    fft,
    ifft,
    frame_signal,
    stft,
)
from pyloopanalysis.analysis.onset import onset_strength

# Rhythm
from pyloopanalysis.analysis.tempo import (
    TempoCandidate,
    TempoEstimate,
    Tempogram,
    estimate_tempo,
    estimate_tempo_curve,
)
from pyloopanalysis.analysis.beats import BeatSequence, track_beats

# Structure
from pyloopanalysis.analysis.candidates import LoopCandidate, rank_candidates
from pyloopanalysis.analysis.structure import (
    chroma_features,
    stack_memory,
    recurrence_matrix,
    recurrence_to_lag,
    find_loop_candidates,
)
from pyloopanalysis.analysis.refine import nearest_zero_crossing, refine

# Main entry point
from pyloopanalysis.analysis.main import AnalysisResult, analyze


__all__ = [
    # Core
    'Signal',
    'AnalysisResult',
    'analyze',

    # Configuration
    'AnalysisConfig',
    'SpectralConfig',
    'TempoConfig',
    'BeatConfig',
    'StructureConfig',
    'RefineConfig',
    'load_config',

    # Spectral
    'Spectrogram',
    'fft',
    'ifft',
    'frame_signal',
    'stft',
    'onset_strength',

    # Rhythm
    'TempoCandidate',
    'TempoEstimate',
    'Tempogram',
    'estimate_tempo',
    'estimate_tempo_curve',
    'BeatSequence',
    'track_beats',

    # Structure
    'LoopCandidate',
    'rank_candidates',
    'chroma_features',
    'stack_memory',
    'recurrence_matrix',
    'recurrence_to_lag',
    'find_loop_candidates',
    'nearest_zero_crossing',
    'refine',
]
