"""Immutable, sanitised mono sample buffer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from numbers import Integral

import numpy as np

from pyloopanalysis.exceptions import InvalidInputError


@dataclass(frozen=True, slots=True)
class Signal:
    """Mono samples normalised to [-1, 1] plus their sample rate."""

    samples: np.ndarray
    sr: int

    @classmethod
    def from_samples(cls, samples, sr) -> Signal:
        """
        Validate and sanitise caller data.

        The caller's buffer is never modified: samples are copied to float64,
        NaN and +/-Inf are replaced by 0 and the copy is made read-only.

        Raises:
            InvalidInputError: empty, non-numeric, multi-dimensional or
                NaN-only buffers, and non-positive or non-integer rates.
        """
        if isinstance(sr, bool) or not isinstance(sr, Integral):
            raise InvalidInputError(f"Sample rate must be an integer, got {type(sr).__name__}.")
        if sr <= 0:
            raise InvalidInputError(f"Sample rate must be positive, got {sr}.")

        try:
            data = np.array(samples, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidInputError("Samples must be a sequence of numbers.") from e

        if data.ndim != 1:
            raise InvalidInputError(f"Expected a mono (1-D) buffer, got shape {data.shape}.")
        if data.size == 0:
            raise InvalidInputError("Sample buffer is empty.")

        finite = np.isfinite(data)
        if not finite.any():
            raise InvalidInputError("Sample buffer contains no finite values.")
        if not finite.all():
            logging.debug(f"Replacing {int(np.count_nonzero(~finite))} non-finite samples with 0")
            data[~finite] = 0.0

        data.flags.writeable = False
        return cls(samples=data, sr=int(sr))

    @property
    def n_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.n_samples / self.sr
