"""
Errors raised by the plan/unlock code.

Each error carries a stable `code` and the HTTP status the API maps it to.
Responses keep the `{"detail": ...}` shape FastAPI uses for HTTPException so
clients can handle both the same way.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class EntitlementError(Exception):
    code = "ENTITLEMENT_ERROR"
    status_code = 500

    def __init__(self, message: str, *, fields: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.fields = fields or {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.fields:
            out["fields"] = self.fields
        return out


class InvalidRequest(EntitlementError):
    """Missing or malformed input. Retrying without changes will fail again."""

    code = "INVALID_REQUEST"
    status_code = 400


class NoMatchingListings(EntitlementError):
    """The candidate pool is empty after area + filters. The caller should relax filters."""

    code = "NO_MATCHING_LISTINGS"
    status_code = 404


class NotEntitled(EntitlementError):
    """The listing is not in the grant's pinned set."""

    code = "NOT_ENTITLED"
    status_code = 403


class ListingNotFound(EntitlementError):
    code = "LISTING_NOT_FOUND"
    status_code = 404


class TransactionFailed(EntitlementError):
    """
    The grant + pinned rows could not be committed. Nothing was written, so the
    whole purchase is safe to retry.
    """

    code = "TRANSACTION_FAILED"
    status_code = 503


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
