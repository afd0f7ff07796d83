"""
Exception taxonomy for the ingestion pipeline.

Duplicate deliveries and orphan statuses are not errors: the ledger reports
duplicates with its DUPLICATE sentinel and the status correlator reports
orphans as a StatusOutcome.
"""


class IngestError(Exception):
    """Base class for every error raised by the ingestion core."""


class AuthenticityFailure(IngestError):
    """Webhook signature missing or not matching the shared secret."""


class MalformedPayload(IngestError):
    """Request body is not decodable or does not match the envelope schema."""


class UnsupportedEnvelope(IngestError):
    """Well-formed envelope for an object type this service does not handle."""

    def __init__(self, object_type):
        self.object_type = object_type
        super().__init__(f"unsupported envelope object: {object_type!r}")


class InvalidPhoneNumber(IngestError, ValueError):
    """Phone identifier contains no digits."""


class DirectoryWriteFailed(IngestError):
    """A conversation directory write could not be persisted."""


class LedgerWriteFailed(IngestError):
    """A message ledger insert failed for a reason other than a duplicate id."""


class GatewayError(IngestError):
    """The provider send API rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GatewayNotConfigured(GatewayError):
    """Send API credentials are missing."""
