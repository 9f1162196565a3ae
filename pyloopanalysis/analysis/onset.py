"""Onset detection by half-wave rectified spectral flux."""

from __future__ import annotations

import numpy as np

from pyloopanalysis.analysis.spectral import Spectrogram
from pyloopanalysis.exceptions import InvalidInputError


def onset_strength(spectrogram: Spectrogram | np.ndarray) -> np.ndarray:
    """
    Spectral flux onset envelope, one value per STFT frame.

    ``env[0] = 0`` and ``env[i]`` is the summed positive magnitude increase
    from frame ``i - 1`` to frame ``i``. Accepts a ``Spectrogram`` or a
    precomputed magnitude array of shape (n_frames, n_bins). The result is
    always a fresh float64 array with every value >= 0.
    """
    if isinstance(spectrogram, Spectrogram):
        mag = spectrogram.magnitude
    else:
        mag = np.abs(np.asarray(spectrogram))

    if mag.ndim != 2:
        raise InvalidInputError(f"Expected (n_frames, n_bins) magnitudes, got shape {mag.shape}.")

    envelope = np.zeros(mag.shape[0], dtype=np.float64)
    if mag.shape[0] > 1:
        flux = np.diff(mag.astype(np.float64, copy=False), axis=0)
        envelope[1:] = np.maximum(flux, 0.0).sum(axis=1)
    return envelope
