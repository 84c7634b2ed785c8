from __future__ import annotations


class PrismError(Exception):
    """Base class for errors raised by the prompt search."""


class ConfigurationError(PrismError):
    """Invalid search configuration or reference set."""


class ServiceError(PrismError):
    """A call into the generative service failed."""


class ServiceRefusal(ServiceError):
    """The service declined the request (content policy, apology text)."""


class EmptyResult(ServiceError):
    """The service answered with nothing usable (blank text, empty vector)."""


class TransportError(ServiceError):
    """Network, authentication or timeout failure talking to the service."""


class GenerationFailure(ServiceError):
    """The image model returned neither a URL nor image bytes."""


class InvalidImage(ServiceError):
    """An input image could not be read or is too large to send."""


class BootstrapFailure(PrismError):
    """The initial description could not be obtained. Fatal for the run."""


class DimensionMismatch(PrismError, ValueError):
    """Two embedding vectors of different length were compared."""


class NoUsableCandidates(PrismError):
    """The run finished without producing a single scored candidate."""
