"""KONDOR — Collaborator Interfaces.

The core consumes the OAuth/credential layer, the raw report API, the brand
directory and the background queue only through these protocols.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from kondor.core.date_ranges import DateRange


@dataclass
class ReportRow:
    dimension_values: List[str]
    metric_values: List[str]


@dataclass
class ReportResponse:
    """Column-oriented report: headers name each position of every row."""

    dimension_headers: List[str] = field(default_factory=list)
    metric_headers: List[str] = field(default_factory=list)
    rows: List[ReportRow] = field(default_factory=list)

    def iter_records(self):
        """Yield ``(dimensions, metrics)`` dicts keyed by header name."""
        for row in self.rows:
            dims = dict(zip(self.dimension_headers, row.dimension_values))
            mets = dict(zip(self.metric_headers, row.metric_values))
            yield dims, mets


@dataclass
class InListFilter:
    """``field_name IN values`` (exact, case-sensitive)."""

    field_name: str
    values: List[str]


@dataclass
class IntegrationContext:
    integration_id: str
    user_id: Optional[str] = None


class ReportFetcher(Protocol):
    async def fetch_report(
        self,
        tenant_id: str,
        user_id: Optional[str],
        account_id: str,
        metrics: Sequence[str],
        dimensions: Sequence[str],
        date_range: DateRange,
        dimension_filter: Optional[InListFilter] = None,
    ) -> ReportResponse:
        """Raises ``ReportFetchError`` on rejected names or upstream failure."""
        ...


class CredentialResolver(Protocol):
    async def resolve_integration_context(
        self, tenant_id: str, account_id: str
    ) -> IntegrationContext:
        """Raises ``CredentialNotConnectedError`` when nothing is connected."""
        ...


class BrandDirectory(Protocol):
    async def brand_exists(self, tenant_id: str, brand_id: str) -> bool: ...

    async def list_brand_ids(self, tenant_id: str) -> List[str]: ...


class JobQueue(Protocol):
    async def enqueue(self, job_id: str, payload: Dict[str, Any]) -> bool:
        """Return False when a job with ``job_id`` is already pending."""
        ...
