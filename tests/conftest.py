"""
Shared fixtures for the test suite.

Synthetic signals with known tempo and structure, so assertions can be
checked against ground truth.
"""

import numpy as np
import pytest

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CLICK_SR = 44100
PATTERN_SR = 22050
PATTERN_NOTES = (440.0, 554.37, 659.25, 739.99)  # A4, C#5, E5, F#5
PATTERN_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Signal builders
# ---------------------------------------------------------------------------


def make_click_train(sr: int = CLICK_SR, bpm: float = 120.0, seconds: float = 10.0) -> np.ndarray:
    """Short decaying 1 kHz bursts on every beat."""
    n = int(sr * seconds)
    y = np.zeros(n)
    t = np.arange(int(0.02 * sr)) / sr
    burst = np.sin(2 * np.pi * 1000.0 * t) * np.exp(-t / 0.004)
    period = 60.0 / bpm
    for onset in np.arange(0.0, seconds, period):
        start = int(round(onset * sr))
        stop = min(n, start + burst.size)
        y[start:stop] += burst[:stop - start]
    return 0.8 * y


def make_tone_pattern(sr: int = PATTERN_SR, repeats: int = 4) -> np.ndarray:
    """2 s pattern of four 0.5 s notes with distinct pitch classes, tiled."""
    note_len = int(sr * PATTERN_SECONDS / len(PATTERN_NOTES))
    t = np.arange(note_len) / sr
    pattern = np.concatenate([0.5 * np.sin(2 * np.pi * f * t) for f in PATTERN_NOTES])
    return np.tile(pattern, repeats)


def make_decaying_tone(sr: int = CLICK_SR, repeats: int = 4) -> np.ndarray:
    """A 440 Hz note re-struck every 2 s, decaying in between (one pitch class only)."""
    t = np.arange(int(sr * PATTERN_SECONDS)) / sr
    note = 0.5 * np.sin(2 * np.pi * 440.0 * t) * np.exp(-t / 0.4)
    return np.tile(note, repeats)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def click_train() -> np.ndarray:
    return make_click_train()


@pytest.fixture(scope="session")
def tone_pattern() -> np.ndarray:
    return make_tone_pattern()


@pytest.fixture(scope="session")
def decaying_tone() -> np.ndarray:
    return make_decaying_tone()


@pytest.fixture(scope="session")
def silence() -> np.ndarray:
    return np.zeros(5 * CLICK_SR)
