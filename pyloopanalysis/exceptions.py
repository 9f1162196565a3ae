class PyLoopAnalysisError(Exception):
    """Base class for all errors raised by pyloopanalysis."""


class InvalidInputError(PyLoopAnalysisError, ValueError):
    """Raised when the input buffer or a stage argument is malformed."""


class InsufficientDataError(InvalidInputError):
    """Raised when the buffer is shorter than one analysis frame."""


class ConfigError(InvalidInputError):
    """Raised when a configuration value is outside its allowed bounds."""


class AudioLoadError(PyLoopAnalysisError):
    """Raised when audio file cannot be loaded or is invalid."""
