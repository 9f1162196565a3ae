"""
Tests for dynamic programming beat tracking.
"""

import numpy as np
import pytest

from conftest import CLICK_SR
from pyloopanalysis.analysis.beats import _trim_beats, track_beats
from pyloopanalysis.analysis.onset import onset_strength
from pyloopanalysis.analysis.spectral import stft
from pyloopanalysis.analysis.tempo import estimate_tempo
from pyloopanalysis.exceptions import InvalidInputError

HOP = 512
FRAME_RATE = CLICK_SR / HOP


@pytest.fixture(scope="module")
def click_envelope(click_train):
    return onset_strength(stft(click_train, sr=CLICK_SR))


class TestTrackBeats:
    """Beat sequence on synthetic input."""

    def test_click_train_spacing(self, click_envelope):
        """Beats should be 0.5 s apart: mean and every interval within 10 ms."""
        bpm = estimate_tempo(click_envelope, CLICK_SR, HOP).bpm
        beats = track_beats(click_envelope, bpm, FRAME_RATE, sr=CLICK_SR, hop_length=HOP)
        intervals = np.diff(beats.times)

        assert len(beats) >= 15
        assert abs(intervals.mean() - 0.5) < 0.010
        assert np.all(np.abs(intervals - 0.5) <= 0.010)

    def test_frames_strictly_increasing(self, click_envelope):
        beats = track_beats(click_envelope, 120.0, FRAME_RATE)
        assert np.all(np.diff(beats.frames) > 0)
        assert beats.frames.min() >= 0
        assert beats.frames.max() < len(click_envelope)

    def test_times_use_hop_and_rate(self, click_envelope):
        beats = track_beats(click_envelope, 120.0, FRAME_RATE, sr=CLICK_SR, hop_length=HOP)
        np.testing.assert_allclose(beats.times, beats.positions * HOP / CLICK_SR)

    def test_sub_frame_positions_stay_near_frames(self, click_envelope):
        """Refined positions move at most a couple of frames and keep beat order."""
        beats = track_beats(click_envelope, 120.0, FRAME_RATE)
        assert beats.positions.shape == beats.frames.shape
        assert np.all(np.abs(beats.positions - beats.frames) <= 2.5)
        assert np.all(np.diff(beats.positions) > 0)

    def test_constant_curve_matches_scalar(self, click_envelope):
        """A flat per-frame tempo curve should track exactly like the scalar tempo."""
        scalar = track_beats(click_envelope, 120.0, FRAME_RATE)
        curve = track_beats(click_envelope, np.full(len(click_envelope), 120.0), FRAME_RATE)
        np.testing.assert_array_equal(scalar.frames, curve.frames)

    def test_silence_gives_empty_sequence(self):
        beats = track_beats(np.zeros(400), 120.0, FRAME_RATE)
        assert len(beats) == 0
        assert beats.bpm == 0.0

    def test_non_finite_envelope_gives_empty_sequence(self):
        env = np.ones(400)
        env[10] = np.nan
        assert len(track_beats(env, 120.0, FRAME_RATE)) == 0

    def test_untrimmed_keeps_at_least_as_many(self, click_envelope):
        trimmed = track_beats(click_envelope, 120.0, FRAME_RATE, trim=True)
        untrimmed = track_beats(click_envelope, 120.0, FRAME_RATE, trim=False)
        assert len(untrimmed) >= len(trimmed)

    @pytest.mark.parametrize("bpm", [0.0, -10.0])
    def test_non_positive_bpm_raises(self, click_envelope, bpm):
        with pytest.raises(InvalidInputError):
            track_beats(click_envelope, bpm, FRAME_RATE)

    def test_non_positive_tightness_raises(self, click_envelope):
        with pytest.raises(InvalidInputError):
            track_beats(click_envelope, 120.0, FRAME_RATE, tightness=0)

    def test_curve_length_mismatch_raises(self, click_envelope):
        with pytest.raises(InvalidInputError):
            track_beats(click_envelope, np.full(10, 120.0), FRAME_RATE)

    def test_to_dict(self, click_envelope):
        data = track_beats(click_envelope, 120.0, FRAME_RATE).to_dict()
        assert len(data["frames"]) == len(data["times"])
        assert all(isinstance(f, int) for f in data["frames"])


class TestTrimBeats:
    """Edge trimming."""

    def test_weak_edges_removed(self):
        local = np.zeros(100)
        beats = np.array([5, 20, 40, 60, 80, 95])
        local[beats] = [0.1, 1.0, 1.0, 1.0, 1.0, 0.1]
        np.testing.assert_array_equal(_trim_beats(local, beats), [20, 40, 60, 80])

    def test_weak_inner_beats_kept(self):
        local = np.zeros(100)
        beats = np.array([20, 40, 60])
        local[beats] = [1.0, 0.1, 1.0]
        np.testing.assert_array_equal(_trim_beats(local, beats), beats)
