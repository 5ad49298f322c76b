"""Error taxonomy shared by the relay components."""

from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class ValidationError(RelayError):
    """A local precondition failed; nothing was sent over the network."""


class AlreadyInProgressError(RelayError):
    """An action was triggered while another one is still running."""


class MissingCredentialError(RelayError):
    """The generation service key is not configured for this deployment."""


class ReadError(RelayError):
    """An uploaded file could not be read."""


class MalformedEncodingError(RelayError):
    """A string is not a `data:<mime>;base64,<payload>` URI."""


class GenerationServiceError(RelayError):
    """The generation service failed or answered with something unusable."""


class NoImageInResponseError(GenerationServiceError):
    """The generation service answered without any inline image part."""


class DispatchServiceError(RelayError):
    """The messaging service rejected or failed the photo upload."""
