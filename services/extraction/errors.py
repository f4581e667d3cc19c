# services/extraction/errors.py
from __future__ import annotations


class ExtractionError(RuntimeError):
    pass


class MissingCredential(ExtractionError):
    """No usable API credential configured."""


class ServiceUnreachable(ExtractionError):
    """Network, auth or malformed-response failure of a live call."""


NetworkOrServiceError = ServiceUnreachable


class UnparseableResponse(ExtractionError):
    """Model text was not a JSON object after fence stripping."""
