"""Exceptions raised by the package."""


class FirecrackerError(Exception):
    """Base class of every error raised while driving a microVM."""


class ConfigurationError(FirecrackerError):
    """The options given to build an instance are unusable."""


class AgentError(FirecrackerError):
    """Talking to the API socket failed."""


class EventError(FirecrackerError):
    """An API request could not be encoded or its response not decoded."""


class InstanceError(FirecrackerError):
    """An instance was used in a way its state does not allow."""