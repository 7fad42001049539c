"""KONDOR — Error Taxonomy.

Every error raised by the fact store and query engine carries a stable
machine code, an HTTP status for the REST layer, and optional details.
"""

from typing import Any, Dict, List, Optional


class KondorError(Exception):
    """Base error for the metrics core."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        if code:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "details": self.details}


# ── Validation (400) ──


class QueryValidationError(KondorError):
    """Bad metric, dimension, sort, filter or date range. Never retried."""

    status_code = 400
    code = "INVALID_QUERY"


# ── Authorization / consistency (404 / 409) ──


class BrandNotFoundError(KondorError):
    status_code = 404
    code = "BRAND_NOT_FOUND"

    def __init__(self, brand_id: str):
        super().__init__("Brand not found", details={"brand_id": brand_id})


class MissingConnectionsError(KondorError):
    """A required platform has no ACTIVE binding for the brand."""

    status_code = 409
    code = "MISSING_CONNECTIONS"

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            f"Missing connections: {', '.join(self.missing)}",
            details={"missing": self.missing},
        )


class AccountNotAvailableError(KondorError):
    status_code = 400
    code = "ACCOUNT_NOT_AVAILABLE"


# ── Concurrency conflict ──


class StaleBindingError(KondorError):
    """The active account changed between fetch and write."""

    status_code = 409
    code = "ACTIVE_ACCOUNT_CHANGED"


# ── Upstream ──


class ReportFetchError(KondorError):
    """The external report API rejected or failed a request."""

    status_code = 502
    code = "UPSTREAM_REPORT_ERROR"

    def __init__(
        self,
        message: str,
        invalid_metrics: Optional[List[str]] = None,
        invalid_dimensions: Optional[List[str]] = None,
        retryable: bool = False,
        upstream_status: int = 0,
    ):
        self.invalid_metrics = list(invalid_metrics or [])
        self.invalid_dimensions = list(invalid_dimensions or [])
        self.retryable = retryable
        self.upstream_status = upstream_status
        super().__init__(
            message,
            details={
                "invalid_metrics": self.invalid_metrics,
                "invalid_dimensions": self.invalid_dimensions,
                "upstream_status": upstream_status,
            },
        )

    @property
    def is_schema_drift(self) -> bool:
        return bool(self.invalid_metrics or self.invalid_dimensions)


class ScopeDowngradeError(KondorError):
    """Campaign breakdown was requested but upstream rejects every campaign dimension."""

    status_code = 502
    code = "CAMPAIGN_SCOPE_UNAVAILABLE"


class CredentialNotConnectedError(KondorError):
    status_code = 409
    code = "INTEGRATION_NOT_CONNECTED"
