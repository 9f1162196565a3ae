"""
Spectral Engine.

Windowing, a recursive radix-2 FFT and the STFT every other stage is built
on. The FFT works on the last axis of arbitrarily batched input, so a whole
block of frames is transformed with one recursive call per level.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

import numpy as np
from scipy.signal import get_window as scipy_get_window

from pyloopanalysis.analysis.constants import (
    FFT_DIRECT_SIZE,
    FRAME_LENGTH,
    HOP_LENGTH,
    STFT_BATCH_SIZE,
    WINDOW,
)
from pyloopanalysis.analysis.signal import Signal
from pyloopanalysis.exceptions import InsufficientDataError, InvalidInputError


@dataclass(frozen=True, slots=True)
class Spectrogram:
    """One-sided complex STFT, shape (n_frames, n_fft // 2 + 1)."""

    frames: np.ndarray
    sr: int | None
    n_fft: int
    frame_length: int
    hop_length: int

    @property
    def n_frames(self) -> int:
        return int(self.frames.shape[0])

    @property
    def n_bins(self) -> int:
        return int(self.frames.shape[1])

    @property
    def magnitude(self) -> np.ndarray:
        return np.abs(self.frames)

    @property
    def frequencies(self) -> np.ndarray:
        if self.sr is None:
            raise InvalidInputError("Spectrogram has no sample rate; frequencies are undefined.")
        return np.arange(self.n_bins) * (self.sr / self.n_fft)

    @property
    def frame_rate(self) -> float:
        if self.sr is None:
            raise InvalidInputError("Spectrogram has no sample rate; frame rate is undefined.")
        return self.sr / self.hop_length


def next_pow2(n: int) -> int:
    """Smallest power of two >= n."""
    n = int(n)
    return 1 if n <= 1 else 1 << (n - 1).bit_length()


def get_window(window: str, length: int) -> np.ndarray:
    """Periodic analysis window of the given length."""
    name = "boxcar" if window == "rectangular" else window
    try:
        return scipy_get_window(name, length, fftbins=True).astype(np.float64)
    except ValueError as e:
        raise InvalidInputError(f"Unknown window {window!r}.") from e


def _dft_matrix(n: int) -> np.ndarray:
    k = np.arange(n)
    return np.exp(-2j * np.pi * np.outer(k, k) / n)


def _fft_radix2(x: np.ndarray) -> np.ndarray:
    """Cooley-Tukey on the last axis; its length must be a power of two."""
    n = x.shape[-1]
    if n <= FFT_DIRECT_SIZE:
        return x @ _dft_matrix(n)

    # Even and odd halves ride through the recursion as one stacked batch
    halves = _fft_radix2(np.stack((x[..., 0::2], x[..., 1::2]), axis=-2))
    even = halves[..., 0, :]
    odd = halves[..., 1, :] * np.exp(-2j * np.pi * np.arange(n // 2) / n)
    return np.concatenate((even + odd, even - odd), axis=-1)


def fft(x) -> np.ndarray:
    """
    Discrete Fourier transform over the last axis.

    Inputs whose length is not a power of two are zero-padded to the next
    one (the caller's array is left untouched), so the output length is
    ``next_pow2(len)``.
    """
    data = np.asarray(x)
    if data.ndim == 0 or data.shape[-1] == 0:
        raise InvalidInputError("FFT input must have at least one sample.")

    n = data.shape[-1]
    n_fft = next_pow2(n)
    buf = np.zeros(data.shape[:-1] + (n_fft,), dtype=np.complex128)
    buf[..., :n] = data
    return _fft_radix2(buf)


def ifft(spectrum, n: int | None = None) -> np.ndarray:
    """
    Inverse of :func:`fft` over the last axis.

    Args:
        spectrum: Full (two-sided) spectrum; length must be a power of two.
        n: Optional output length, e.g. the unpadded length of the signal.
    """
    data = np.asarray(spectrum, dtype=np.complex128)
    if data.ndim == 0 or data.shape[-1] == 0:
        raise InvalidInputError("IFFT input must have at least one bin.")
    size = data.shape[-1]
    if size != next_pow2(size):
        raise InvalidInputError(f"IFFT length must be a power of two, got {size}.")

    out = np.conj(_fft_radix2(np.conj(data))) / size
    return out if n is None else out[..., :n]


def frame_signal(samples, frame_length: int = FRAME_LENGTH, hop_length: int = HOP_LENGTH) -> np.ndarray:
    """
    Read-only view of overlapping frames, shape (n_frames, frame_length).

    ``n_frames = (N - frame_length) // hop_length + 1``.

    Raises:
        InsufficientDataError: If the buffer is shorter than one frame.
    """
    if frame_length < 1 or hop_length < 1:
        raise InvalidInputError("frame_length and hop_length must be positive.")
    x = np.asarray(samples, dtype=np.float64)
    if x.shape[0] < frame_length:
        raise InsufficientDataError(
            f"Buffer of {x.shape[0]} samples is shorter than one frame ({frame_length} samples)."
        )
    n_frames = (x.shape[0] - frame_length) // hop_length + 1
    windows = np.lib.stride_tricks.sliding_window_view(x, frame_length)
    return windows[::hop_length][:n_frames]


def map_frame_batches(
    fn: Callable[[np.ndarray], np.ndarray],
    frames: np.ndarray,
    n_workers: int = 1,
    batch_size: int = STFT_BATCH_SIZE,
) -> np.ndarray:
    """
    Apply ``fn`` to consecutive blocks of frames and stack the results.

    With ``n_workers > 1`` blocks run on a thread pool; results are joined in
    block order, so the output never depends on scheduling.
    """
    n = frames.shape[0]
    batches = [frames[i:i + batch_size] for i in range(0, n, batch_size)]
    if n_workers <= 1 or len(batches) <= 1:
        results = [fn(batch) for batch in batches]
    else:
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            results = list(pool.map(fn, batches))
    return np.concatenate(results, axis=0)


def stft(
    signal: Signal | np.ndarray,
    frame_length: int = FRAME_LENGTH,
    hop_length: int = HOP_LENGTH,
    window: str = WINDOW,
    *,
    sr: int | None = None,
    n_workers: int = 1,
    batch_size: int = STFT_BATCH_SIZE,
) -> Spectrogram:
    """
    Short-time Fourier transform.

    Each frame is windowed, zero-padded to the next power of two and
    transformed; only the non-negative frequency half is kept.

    Args:
        signal: A ``Signal`` or a raw 1-D sample array.
        frame_length: Samples per frame.
        hop_length: Samples between frame starts.
        window: Window name (hann, hamming, blackman, boxcar/rectangular).
        sr: Sample rate when ``signal`` is a raw array.
        n_workers: Threads used for frame batches.
        batch_size: Frames per batch.

    Raises:
        InsufficientDataError: If the signal is shorter than one frame.
    """
    if isinstance(signal, Signal):
        samples, sr = signal.samples, signal.sr
    else:
        samples = signal

    frames = frame_signal(samples, frame_length, hop_length)
    win = get_window(window, frame_length)
    n_fft = next_pow2(frame_length)
    n_bins = n_fft // 2 + 1

    def _transform(batch: np.ndarray) -> np.ndarray:
        return fft(batch * win)[:, :n_bins].astype(np.complex64)

    spec = map_frame_batches(_transform, frames, n_workers, batch_size)
    spec.flags.writeable = False
    logging.debug(f"STFT: {spec.shape[0]} frames x {n_bins} bins (n_fft={n_fft}, workers={n_workers})")

    return Spectrogram(
        frames=spec,
        sr=sr,
        n_fft=n_fft,
        frame_length=frame_length,
        hop_length=hop_length,
    )
