"""HARVEST — Abstract Report Provider."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from pydantic import BaseModel

from app.models.report_models import Aggregation, ReportStatus


class ProviderError(Exception):
    """Report creation or polling failed upstream (timeouts included)."""

    def __init__(self, message: str, status_code: int = 0, code: str = ""):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class AccountRef(BaseModel):
    """How a provider call addresses an advertiser."""

    ads_account_id: str
    profile_id: str = ""
    country_code: str = "US"


class ReportWindow(BaseModel):
    start: datetime
    aggregation: Aggregation


class CreatedReport(BaseModel):
    report_id: str


class RetrievedReport(BaseModel):
    status: ReportStatus
    result_ref: Optional[str] = None
    error: Optional[str] = None


class ReportProvider(ABC):
    """Asynchronous report API: create, then poll until terminal."""

    @abstractmethod
    async def create_report(
        self, account: AccountRef, window: ReportWindow, fields: Sequence[str]
    ) -> CreatedReport:
        """Request a report for one window. Raises ProviderError."""
        ...

    @abstractmethod
    async def retrieve_report(self, report_id: str) -> RetrievedReport:
        """Fetch the current status of a report. Raises ProviderError."""
        ...
