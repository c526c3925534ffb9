"""
Error taxonomy shared by the matching, offer and realtime layers.

Every error carries a stable ``code`` so transports can tell business
conflicts apart without parsing messages.
"""


class DonorLinkError(Exception):
    code = "error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(DonorLinkError, ValueError):
    """Malformed input, rejected before any mutation.

    Subclasses ValueError so pydantic validators report it as a field error.
    """

    code = "validation_error"


class Forbidden(DonorLinkError):
    """The actor has no authority over the target entity."""

    code = "forbidden"


class NotFound(DonorLinkError):
    code = "not_found"


class AlreadyFulfilled(DonorLinkError):
    """The request is fulfilled, or the offer can no longer be accepted."""

    code = "already_fulfilled"


class DuplicateOffer(DonorLinkError):
    code = "duplicate_offer"


class InvalidTransition(DonorLinkError):
    """The offer already left the pending state."""

    code = "invalid_transition"


class RepositoryError(DonorLinkError):
    """Persistence failure. Never retried here."""

    code = "repository_error"


class TransportError(DonorLinkError):
    """A client connection could not be written to."""

    code = "transport_error"
