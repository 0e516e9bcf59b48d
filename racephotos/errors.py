"""Storefront error taxonomy.

Every error carries a human readable ``reason`` that is returned to the caller
verbatim. The server maps each class to one HTTP status.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationError(StorefrontError):
    status_code = 400


class ConflictError(StorefrontError):
    status_code = 409


class NotFoundError(StorefrontError):
    status_code = 404


class SignatureError(StorefrontError):
    status_code = 400


class UpstreamError(StorefrontError):
    status_code = 502
