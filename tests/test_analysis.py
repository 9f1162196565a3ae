"""
End-to-end tests for ``analyze``.
"""

import dataclasses
import json

import numpy as np
import pytest

from conftest import CLICK_SR, PATTERN_SR
from pyloopanalysis.analysis import AnalysisConfig, Signal, analyze
from pyloopanalysis.analysis.config import SpectralConfig, TempoConfig
from pyloopanalysis.exceptions import InsufficientDataError, InvalidInputError


@pytest.fixture(scope="module")
def pattern_result(tone_pattern):
    return analyze(tone_pattern, PATTERN_SR)


class TestLoopDetection:
    """Structure on a repeating tone pattern."""

    def test_loop_points(self, pattern_result):
        """A 2 s pattern repeated four times should loop from ~0 s to ~2 s."""
        loop = pattern_result.loop
        assert loop.start_seconds == pytest.approx(0.0, abs=0.02)
        assert loop.end_seconds == pytest.approx(2.0, abs=0.02)
        assert loop.confidence >= AnalysisConfig().acceptance_threshold

    def test_candidates_ranked(self, pattern_result):
        confidences = [c.confidence for c in pattern_result.candidates]
        assert confidences == sorted(confidences, reverse=True)
        assert pattern_result.loop == pattern_result.candidates[0]

    def test_to_dict_is_json_serialisable(self, pattern_result):
        data = json.loads(json.dumps(pattern_result.to_dict()))
        assert set(data) >= {"tempo", "beats", "loop", "candidates", "used_fallback", "fallback_reasons", "duration"}
        assert data["duration"] == pytest.approx(8.0)

    def test_single_pitch_sine(self, decaying_tone):
        """A 440 Hz note repeated every 2.0 s loops from 0 to 2.0 s."""
        result = analyze(decaying_tone, CLICK_SR)
        loop = result.loop
        assert loop.start_seconds == pytest.approx(0.0, abs=0.02)
        assert loop.end_seconds == pytest.approx(2.0, abs=0.02)
        assert loop.confidence > AnalysisConfig().acceptance_threshold
        assert not any(r.startswith("structure") for r in result.fallback_reasons)

    def test_result_arrays_read_only(self, pattern_result):
        with pytest.raises(ValueError):
            pattern_result.onset_envelope[0] = 1.0
        with pytest.raises(ValueError):
            pattern_result.beats.frames[...] = 0


class TestClickTrain:
    """Rhythm on a 120 BPM click train."""

    def test_tempo_and_beats(self, click_train):
        result = analyze(click_train, CLICK_SR)
        assert result.tempo.bpm == pytest.approx(120.0, abs=1.0)
        intervals = np.diff(result.beats.times)
        assert abs(intervals.mean() - 0.5) < 0.010

    def test_dynamic_tempo(self, click_train):
        config = AnalysisConfig(tempo=TempoConfig(dynamic=True))
        result = analyze(click_train, CLICK_SR, config=config)
        assert result.tempo_curve is not None
        assert result.tempo_curve.shape == result.onset_envelope.shape
        assert abs(np.diff(result.beats.times).mean() - 0.5) < 0.010


class TestFallbacks:
    """Degenerate input."""

    def test_silence(self, silence):
        """Silence should never raise and should report the default loop."""
        result = analyze(silence, CLICK_SR)
        assert result.tempo.confidence == 0.0
        assert result.tempo.bpm == 120.0
        assert len(result.beats) == 0
        assert result.used_fallback
        assert result.loop.score_method == "fallback"
        assert result.loop.start_sample == 0
        assert result.loop.end_seconds == pytest.approx(5.0)
        assert result.loop.confidence == 0.0
        assert len(result.fallback_reasons) >= 3
        assert "tempo: no clear periodicity in the onset envelope" in result.fallback_reasons

    def test_fallback_loop_is_four_bars(self):
        """On a long silent signal the default loop is 4 bars of 4 beats at 120 BPM."""
        result = analyze(np.zeros(12 * CLICK_SR), CLICK_SR)
        assert result.loop.end_seconds == pytest.approx(8.0)
        assert result.loop.is_musical_boundary

    def test_short_signal_raises(self):
        with pytest.raises(InsufficientDataError):
            analyze(np.zeros(1000), CLICK_SR)

    def test_nan_only_raises(self):
        with pytest.raises(InvalidInputError):
            analyze(np.full(10_000, np.nan), CLICK_SR)

    def test_missing_rate_raises(self, silence):
        with pytest.raises(InvalidInputError):
            analyze(silence)

    def test_nan_samples_are_zeroed(self, click_train):
        dirty = click_train.copy()
        dirty[::1000] = np.nan
        result = analyze(dirty, CLICK_SR)
        assert np.all(np.isfinite(result.onset_envelope))
        assert np.isnan(dirty[0])


class TestDeterminism:
    """Repeatability."""

    def test_idempotent(self, tone_pattern):
        first = analyze(tone_pattern, PATTERN_SR)
        second = analyze(tone_pattern, PATTERN_SR)
        assert first.to_dict() == second.to_dict()
        np.testing.assert_array_equal(first.onset_envelope, second.onset_envelope)

    def test_threaded_matches_sequential(self, tone_pattern):
        signal = Signal.from_samples(tone_pattern, PATTERN_SR)
        base = AnalysisConfig(spectral=SpectralConfig(batch_size=32))
        threaded = dataclasses.replace(base, spectral=dataclasses.replace(base.spectral, n_workers=4))
        assert analyze(signal, config=base).to_dict() == analyze(signal, config=threaded).to_dict()

    def test_input_not_mutated(self, tone_pattern):
        before = tone_pattern.copy()
        analyze(tone_pattern, PATTERN_SR)
        np.testing.assert_array_equal(tone_pattern, before)
