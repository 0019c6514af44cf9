"""Error types raised and handled by the orchestration engine."""


class ConvertCtlError(Exception):
    """Base class for convertctl errors."""


class DetectionError(ConvertCtlError):
    """Hardware or encoder enumeration failed."""


class StartError(ConvertCtlError):
    """The worker rejected a job start."""


class PollError(ConvertCtlError):
    """Querying the worker for progress failed."""


class ConfigError(ConvertCtlError):
    """A conversion batch cannot start with the current configuration."""
