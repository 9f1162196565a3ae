"""Tempo, beat and loop-structure analysis of mono audio."""

__version__ = "0.1.0"

from pyloopanalysis.analysis import AnalysisConfig, AnalysisResult, Signal, analyze
from pyloopanalysis.exceptions import (
    AudioLoadError,
    ConfigError,
    InsufficientDataError,
    InvalidInputError,
    PyLoopAnalysisError,
)

__all__ = [
    "__version__",
    "AnalysisConfig",
    "AnalysisResult",
    "Signal",
    "analyze",
    "AudioLoadError",
    "ConfigError",
    "InsufficientDataError",
    "InvalidInputError",
    "PyLoopAnalysisError",
]
