"""Error taxonomy shared by the ledger, the read API and the HTTP layer."""
from __future__ import annotations


class KnotScoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(KnotScoreError):
    status_code = 401


class Forbidden(KnotScoreError):
    status_code = 403


class NotFound(KnotScoreError):
    status_code = 404


class Conflict(KnotScoreError):
    status_code = 409


class Invalid(KnotScoreError):
    status_code = 422


class InternalError(KnotScoreError):
    """Storage or audit failure. The message is logged, never shown to callers."""

    status_code = 500
