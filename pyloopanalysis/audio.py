from pathlib import Path

import librosa
import numpy as np

from pyloopanalysis.analysis.signal import Signal
from pyloopanalysis.exceptions import AudioLoadError, InvalidInputError


class AudioTrack:
    """Decoded audio file, downmixed to a mono ``Signal`` for analysis."""

    __slots__ = (
        "filepath",
        "filename",
        "rate",
        "n_channels",
        "total_duration",
        "signal",
    )

    def __init__(self, filepath: str | Path) -> None:
        """Decode ``filepath`` at its native sample rate."""
        path = Path(filepath)

        try:
            raw_audio, sr = librosa.load(path, sr=None, mono=False)
        except Exception as e:
            raise AudioLoadError(
                f"{path.name} could not be loaded. Invalid audio data or unsupported format."
            ) from e

        if raw_audio.size == 0:
            raise AudioLoadError(f'No audio data could be loaded from "{path}".')

        mono = librosa.to_mono(raw_audio)
        peak = np.abs(mono).max()
        if peak > 1.0:
            mono = mono / peak

        try:
            signal = Signal.from_samples(mono, int(sr))
        except InvalidInputError as e:
            raise AudioLoadError(f'"{path}" does not contain usable audio: {e}') from e

        self.filepath = str(path)
        self.filename = path.name
        self.rate = int(sr)
        self.n_channels = 1 if raw_audio.ndim == 1 else raw_audio.shape[0]
        self.total_duration = librosa.get_duration(y=raw_audio, sr=sr)
        self.signal = signal


def load_signal(filepath: str | Path) -> Signal:
    """Decode an audio file into a mono ``Signal``."""
    return AudioTrack(filepath).signal
