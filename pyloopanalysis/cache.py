"""
In-memory analysis cache.

LRU keyed by SHA-256 of the samples, the sample rate and the configuration,
so identical input under identical settings is analysed once. Nothing is
cached unless a cache is explicitly passed to ``analyze``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import OrderedDict
from threading import Lock
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pyloopanalysis.analysis.config import AnalysisConfig
    from pyloopanalysis.analysis.main import AnalysisResult
    from pyloopanalysis.analysis.signal import Signal


def _make_key(signal: Signal, config: AnalysisConfig) -> str:
    """Deterministic key from the sample bytes, rate and settings."""
    digest = hashlib.sha256()
    digest.update(signal.samples.tobytes())
    digest.update(f"|{signal.sr}|".encode())
    digest.update(json.dumps(config.to_dict(), sort_keys=True).encode())
    return digest.hexdigest()


class AnalysisCache:
    """Thread-safe LRU of ``AnalysisResult`` objects."""

    def __init__(self, max_entries: int = 32) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, AnalysisResult] = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, signal: Signal, config: AnalysisConfig) -> AnalysisResult | None:
        key = _make_key(signal, config)
        with self._lock:
            result = self._entries.get(key)
            if result is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
        logging.debug(f"Cache hit {key[:12]}")
        return result

    def put(self, signal: Signal, config: AnalysisConfig, result: AnalysisResult) -> None:
        key = _make_key(signal, config)
        with self._lock:
            self._entries[key] = result
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logging.debug(f"Cache evicted {evicted[:12]}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
