"""
Error types shared by the orchestrators and the HTTP API.
"""


class StreamHubError(Exception):
    """Base class for expected, user-visible failures."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(StreamHubError):
    """An addressed entity (recording, destination, stream) does not exist."""

    status = 404


class ValidationError(StreamHubError):
    """Request data is malformed or violates a constraint."""

    status = 400


class ResourceUnavailableError(StreamHubError):
    """A required resource (e.g. the recording directory) cannot be used."""

    status = 503
