"""
Analysis Constants - Default parameters for every pipeline stage.

Centralized defaults so each stage's configuration documents the values it
starts from. All of them can be overridden through ``AnalysisConfig``.
"""

from __future__ import annotations

# ============================================================================
# SPECTRAL
# ============================================================================

FRAME_LENGTH = 2048
HOP_LENGTH = 512
WINDOW = "hann"
STFT_BATCH_SIZE = 256  # Frames per FFT batch (also the unit of parallel work)

# Below this many points the recursive FFT switches to an exact DFT matrix
FFT_DIRECT_SIZE = 16

# Guard used wherever a norm or energy ends up in a denominator
EPSILON = 1e-10

# ============================================================================
# TEMPO
# ============================================================================

MIN_BPM = 60.0
MAX_BPM = 200.0
DEFAULT_BPM = 120.0

# Peak must rise above its higher neighbouring minimum by this fraction of
# the largest autocorrelation magnitude
TEMPO_MIN_PROMINENCE = 0.1

# Common dance-music tempos. A tie-breaking bias only, never a constraint.
COMMON_TEMPOS = (120.0, 128.0, 140.0, 174.0, 100.0, 85.0)
TEMPO_PRIOR_WIDTH = 5.0   # BPM distance considered "near" a common tempo
TEMPO_PRIOR_WEIGHT = 0.1  # Relative strength boost for such candidates

# Octave-error correction
OCTAVE_LOW_BPM = 90.0    # Below this, test the double tempo
OCTAVE_HIGH_BPM = 160.0  # Above this, halve
OCTAVE_RATIO = 0.7       # Double must keep this fraction of the best strength
OCTAVE_TOLERANCE = 0.05  # Relative distance for "near 2x / near 0.5x"

# Sliding-window tempo curve
DYNAMIC_WINDOW_SECONDS = 8.0
DYNAMIC_HOP_SECONDS = 1.0

# ============================================================================
# BEAT TRACKING
# ============================================================================

TIGHTNESS = 100.0
BEAT_KERNEL_SCALE = 32.0       # Gaussian width is frames_per_beat / 32
BEAT_SEARCH_MIN = 0.5          # DP lookback window, in beat periods
BEAT_SEARCH_MAX = 2.5
BEAT_FIRST_THRESHOLD = 0.01    # Fraction of max local score that starts a path
BEAT_TAIL_THRESHOLD = 0.5      # Fraction of median local-max cumulative score
BEAT_TRIM_THRESHOLD = 0.5      # Fraction of beat RMS below which edge beats go
BEAT_REFINE_RADIUS = 2         # Frames searched around each beat for the onset peak

# ============================================================================
# STRUCTURE
# ============================================================================

N_CHROMA = 12
CHROMA_FMIN = 32.7   # C1
CHROMA_FMAX = 5000.0
STACK_STEPS = 10
STACK_DELAY = 3
RECURRENCE_MODE = "affinity"
RECURRENCE_WIDTH = 3
MAX_RECURRENCE_FRAMES = 2000
MIN_LOOP_SECONDS = 1.0
LAG_PEAK_PROMINENCE = 0.05
TOP_K_CANDIDATES = 10
START_THRESHOLD = 0.5

# Loudness periodicity, used when the chroma recurrence shows no repetition
LOUDNESS_FLOOR_DB = 80.0      # Frame energies below -80 dB (re loudest frame) are clipped
LOUDNESS_MIN_RANGE_DB = 6.0   # Flatter envelopes carry no usable structure

# Loop length vs beat grid
MUSICAL_DIVISIONS = (1, 2, 4, 8, 16, 32, 64)
MUSICAL_ALIGNMENT_MIN = 0.9

# ============================================================================
# REFINEMENT
# ============================================================================

ZERO_CROSSING_SEARCH_MS = 5.0
ZERO_CROSSING_ENERGY_WINDOW = 32  # Samples each side used for local energy
TEMPLATE_LENGTH = 4096            # Samples used to fine-tune the loop length
CONSISTENCY_WINDOW = 2048
CONSISTENCY_HOP = 512
CONSISTENCY_SCALE = 0.5   # Internal-consistency scores are worth less
CORRELATION_WEIGHT = 0.7  # Share of the refined score in final confidence

# ============================================================================
# ORCHESTRATION
# ============================================================================

ACCEPTANCE_THRESHOLD = 0.5
FALLBACK_BARS = 4
BEATS_PER_BAR = 4


def beat_alignment(loop_seconds: float, bpm: float) -> float:
    """
    How well a loop length sits on the beat grid (0-1, higher is better).

    Whole beats score highest, with an extra share for the common
    power-of-two divisions (1 beat up to 16 bars).
    """
    if bpm <= 0 or loop_seconds <= 0:
        return 0.0
    beats_in_loop = loop_seconds / (60.0 / bpm)
    whole = 1.0 - abs(beats_in_loop - round(beats_in_loop))
    nearest = min(MUSICAL_DIVISIONS, key=lambda d: abs(d - beats_in_loop))
    division_bonus = max(0.0, 1.0 - abs(nearest - beats_in_loop) / 2.0)
    return whole * 0.7 + division_bonus * 0.3
