"""
Tests for file loading and the command line interface.
"""

import json

import numpy as np
import pytest
import soundfile as sf
from click.testing import CliRunner

from conftest import PATTERN_SR, make_tone_pattern
from pyloopanalysis.audio import AudioTrack, load_signal
from pyloopanalysis.cli import build_config, cli_main
from pyloopanalysis.exceptions import AudioLoadError


@pytest.fixture(scope="module")
def pattern_wav(tmp_path_factory):
    path = tmp_path_factory.mktemp("audio") / "pattern.wav"
    sf.write(path, make_tone_pattern(), PATTERN_SR)
    return path


@pytest.fixture
def runner():
    return CliRunner()


class TestAudioTrack:
    """Decoding through librosa."""

    def test_loads_mono_signal(self, pattern_wav):
        track = AudioTrack(pattern_wav)
        assert track.rate == PATTERN_SR
        assert track.filename == "pattern.wav"
        assert track.n_channels == 1
        assert track.total_duration == pytest.approx(8.0, abs=1e-3)
        assert not track.signal.samples.flags.writeable

    def test_stereo_is_downmixed(self, tmp_path):
        path = tmp_path / "stereo.wav"
        left = make_tone_pattern(repeats=1)
        sf.write(path, np.stack([left, -left], axis=1), PATTERN_SR)
        track = AudioTrack(path)
        assert track.n_channels == 2
        assert np.allclose(track.signal.samples, 0.0, atol=1e-4)

    def test_invalid_file_raises(self, tmp_path):
        path = tmp_path / "broken.wav"
        path.write_bytes(b"definitely not audio")
        with pytest.raises(AudioLoadError):
            load_signal(path)


class TestBuildConfig:
    def test_overrides(self):
        config = build_config(min_bpm=80.0, workers=4, top=3)
        assert config.tempo.min_bpm == 80.0
        assert config.tempo.max_bpm == 200.0
        assert config.spectral.n_workers == 4
        assert config.structure.top_k == 3

    def test_file_then_overrides(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"tempo": {"max_bpm": 180.0}, "beats": {"tightness": 300}}))
        config = build_config(str(path), max_bpm=170.0)
        assert config.tempo.max_bpm == 170.0
        assert config.beats.tightness == 300


class TestCommands:
    """Commands run end to end on a WAV file."""

    def test_analyze_json(self, runner, pattern_wav):
        result = runner.invoke(cli_main, ["analyze", "--path", str(pattern_wav), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["file"] == "pattern.wav"
        assert data["loop"]["end_seconds"] == pytest.approx(2.0, abs=0.02)
        assert data["duration"] == pytest.approx(8.0, abs=1e-3)

    def test_analyze_tables(self, runner, pattern_wav):
        result = runner.invoke(cli_main, ["analyze", "--path", str(pattern_wav), "--top", "3"])
        assert result.exit_code == 0, result.output
        assert "BPM" in result.output

    def test_tempo_json(self, runner, pattern_wav):
        result = runner.invoke(cli_main, ["tempo", "--path", str(pattern_wav), "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert 60.0 <= data["bpm"] <= 200.0
        assert 0.0 <= data["confidence"] <= 1.0

    def test_bpm_bounds_are_checked(self, runner, pattern_wav):
        result = runner.invoke(
            cli_main, ["tempo", "--path", str(pattern_wav), "--min-bpm", "150", "--max-bpm", "100"]
        )
        assert result.exit_code == 1

    def test_unreadable_file_exits_with_error(self, runner, tmp_path):
        path = tmp_path / "broken.wav"
        path.write_bytes(b"definitely not audio")
        result = runner.invoke(cli_main, ["analyze", "--path", str(path)])
        assert result.exit_code == 1

    def test_missing_file_is_usage_error(self, runner, tmp_path):
        result = runner.invoke(cli_main, ["analyze", "--path", str(tmp_path / "nope.wav")])
        assert result.exit_code == 2
