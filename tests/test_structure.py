"""
Tests for chroma recurrence structure analysis.
"""

import numpy as np
import pytest

from conftest import CLICK_SR, PATTERN_SR
from pyloopanalysis.analysis.config import StructureConfig
from pyloopanalysis.analysis.signal import Signal
from pyloopanalysis.analysis.spectral import stft
from pyloopanalysis.analysis.structure import (
    aggregate_frames,
    chroma_features,
    find_loop_candidates,
    lag_energy,
    loudness_envelope,
    recurrence_matrix,
    recurrence_to_lag,
    stack_memory,
)
from pyloopanalysis.exceptions import InvalidInputError


class TestFeatures:
    """Chroma and embedding."""

    def test_a440_maps_to_pitch_class_a(self):
        sr = 22050
        t = np.arange(sr) / sr
        spec = stft(np.sin(2 * np.pi * 440.0 * t), sr=sr)
        chroma = chroma_features(spec)
        assert chroma.shape == (spec.n_frames, 12)
        assert np.all(np.argmax(chroma, axis=1) == 9)

    def test_silent_frames_stay_zero(self, silence):
        chroma = chroma_features(stft(silence, sr=44100))
        assert np.all(chroma == 0)

    def test_stack_memory_shape(self):
        features = np.random.default_rng(0).random((100, 12))
        stacked = stack_memory(features, n_steps=10, delay=3)
        assert stacked.shape == (100 - 9 * 3, 120)

    def test_stack_memory_steps_are_unit_norm(self):
        features = np.random.default_rng(1).random((50, 12))
        stacked = stack_memory(features, n_steps=3, delay=2)
        norms = np.linalg.norm(stacked.reshape(stacked.shape[0], 3, 12), axis=2)
        np.testing.assert_allclose(norms, 1.0)

    def test_stack_memory_too_short(self):
        assert stack_memory(np.ones((5, 12)), n_steps=10, delay=3).shape == (0, 120)

    def test_aggregate_frames(self):
        features = np.arange(10, dtype=float).reshape(5, 2)
        np.testing.assert_allclose(aggregate_frames(features, 2), [[1.0, 2.0], [5.0, 6.0], [8.0, 9.0]])


class TestRecurrence:
    """Recurrence and lag matrices."""

    @pytest.fixture
    def features(self):
        return np.random.default_rng(2).random((60, 24))

    def test_affinity_properties(self, features):
        """Non-negative, symmetric, float32, zero within the width band."""
        rec = recurrence_matrix(features, mode="affinity", width=3)
        assert rec.dtype == np.float32
        assert np.all(rec >= 0)
        np.testing.assert_allclose(rec, rec.T)
        i, j = np.indices(rec.shape)
        assert np.all(rec[np.abs(i - j) <= 3] == 0)

    def test_connectivity_is_binary_and_mutual(self, features):
        rec = recurrence_matrix(features, mode="connectivity", width=2)
        assert set(np.unique(rec)) <= {0.0, 1.0}
        np.testing.assert_array_equal(rec, rec.T)

    def test_connectivity_row_count_bounded_by_k(self, features):
        rec = recurrence_matrix(features, mode="connectivity", k=5, width=1, sym=False)
        assert np.all(rec.sum(axis=1) == 5)

    def test_unknown_mode_raises(self, features):
        with pytest.raises(InvalidInputError):
            recurrence_matrix(features, mode="euclidean")

    def test_lag_matrix_layout(self):
        """L[lag, i] should equal R[i, i + lag]."""
        rec = np.arange(16, dtype=np.float32).reshape(4, 4)
        lag = recurrence_to_lag(rec)
        assert lag[0, 2] == rec[2, 2]
        assert lag[1, 0] == rec[0, 1]
        assert lag[3, 0] == rec[0, 3]
        assert lag[3, 1] == 0
        np.testing.assert_allclose(lag_energy(lag), [rec.trace(), 1 + 6 + 11, 2 + 7, 3])

    def test_non_square_raises(self):
        with pytest.raises(InvalidInputError):
            recurrence_to_lag(np.ones((3, 4), dtype=np.float32))


class TestFindLoopCandidates:
    """End to end structure detection."""

    def test_two_second_pattern(self, tone_pattern):
        """The strongest candidate should be the 2 s repetition, starting at the top."""
        candidates = find_loop_candidates(tone_pattern, PATTERN_SR)
        assert candidates
        best = candidates[0]
        assert best.length_seconds == pytest.approx(2.0, abs=0.03)
        assert best.start_frame * best.hop_length / PATTERN_SR < 0.05
        assert best.confidence == pytest.approx(1.0)

    def test_ranked_and_capped(self, tone_pattern):
        candidates = find_loop_candidates(tone_pattern, PATTERN_SR, config=StructureConfig(top_k=2))
        assert len(candidates) <= 2
        confidences = [c.confidence for c in candidates]
        assert confidences == sorted(confidences, reverse=True)
        assert all(0.0 <= c <= 1.0 for c in confidences)

    def test_musical_flag_uses_tempo(self, tone_pattern):
        best = find_loop_candidates(tone_pattern, PATTERN_SR, tempo_bpm=120.0)[0]
        assert best.is_musical_boundary

    def test_accepts_precomputed_spectrogram(self, tone_pattern):
        signal = Signal.from_samples(tone_pattern, PATTERN_SR)
        direct = find_loop_candidates(signal)
        reused = find_loop_candidates(signal, spectrogram=stft(signal))
        assert [c.end_frame for c in direct] == [c.end_frame for c in reused]

    def test_silence_has_no_candidates(self, silence):
        assert find_loop_candidates(silence, 44100) == []

    def test_short_signal_has_no_candidates(self):
        assert find_loop_candidates(np.ones(1000), 44100) == []

    def test_max_loop_seconds_excludes_long_lags(self, tone_pattern):
        config = StructureConfig(min_loop_seconds=2.5, max_loop_seconds=5.0)
        for candidate in find_loop_candidates(tone_pattern, PATTERN_SR, config=config):
            assert 2.5 <= candidate.length_seconds <= 5.0 + 0.03

    def test_raw_samples_need_rate(self, tone_pattern):
        with pytest.raises(InvalidInputError):
            find_loop_candidates(tone_pattern)


class TestLoudnessFallback:
    """Repetition carried by loudness alone."""

    def test_envelope_relative_to_loudest_frame(self, decaying_tone):
        env = loudness_envelope(stft(decaying_tone, sr=CLICK_SR))
        assert env.max() == pytest.approx(0.0)
        assert env.min() >= -80.0
        assert np.ptp(env) > 30.0

    def test_silent_envelope_is_floor(self, silence):
        env = loudness_envelope(stft(silence, sr=CLICK_SR))
        assert np.all(env == -80.0)

    def test_single_pitch_repeat_found(self, decaying_tone):
        """A re-struck 440 Hz note has flat chroma; its loudness still repeats every 2 s."""
        best = find_loop_candidates(decaying_tone, CLICK_SR)[0]
        assert best.score_method == "loudness"
        assert best.length_seconds == pytest.approx(2.0, abs=0.03)
        assert best.start_frame == 0
        assert best.confidence == pytest.approx(1.0)

    def test_fallback_can_be_disabled(self, decaying_tone):
        config = StructureConfig(loudness_fallback=False)
        candidates = find_loop_candidates(decaying_tone, CLICK_SR, config=config)
        assert all(c.score_method == "structure" for c in candidates)

    def test_pitch_structure_takes_precedence(self, tone_pattern):
        candidates = find_loop_candidates(tone_pattern, PATTERN_SR)
        assert all(c.score_method == "structure" for c in candidates)
