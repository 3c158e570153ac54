"""HARVEST — Amazon Ads Reporting Client.

Thin async transport for the reporting endpoints. Throttling and HTTP-level
retries belong to the gateway in front of the API, so every failure surfaces
immediately as ``ProviderError``.
"""

from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

import httpx

from app.config import settings
from app.connectors.ads.provider import (
    AccountRef,
    CreatedReport,
    ProviderError,
    ReportProvider,
    ReportWindow,
    RetrievedReport,
)
from app.core.logging import get_logger
from app.models.report_models import Aggregation, ReportStatus

logger = get_logger("ads.client")

CREATE_PATH = "/adsApi/v1/create/reports"
RETRIEVE_PATH = "/adsApi/v1/retrieve/reports"


def _date_period(window: ReportWindow) -> Dict[str, str]:
    end = window.start
    if window.aggregation == Aggregation.HOURLY:
        end = window.start + timedelta(hours=1)
    return {
        "startDate": window.start.strftime("%Y-%m-%d"),
        "endDate": end.strftime("%Y-%m-%d"),
    }


class AdsReportClient(ReportProvider):
    """Async HTTP client for the Amazon Ads reporting API."""

    def __init__(
        self,
        access_token: str | None = None,
        client_id: str | None = None,
        base_url: str | None = None,
        report_format: str = "GZIP_JSON",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token or settings.ads_access_token
        self.client_id = client_id or settings.ads_client_id
        self.base_url = (base_url or settings.ads_base_url).rstrip("/")
        self.report_format = report_format
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.provider_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Content-Type": "application/json",
        }
        client = await self._get_client()
        try:
            resp = await client.post(path, json=body, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            body_json = (
                e.response.json()
                if e.response.headers.get("content-type", "").startswith(
                    "application/json"
                )
                else {}
            )
            message = body_json.get("message") or str(e)
            code = str(body_json.get("code", ""))
            logger.warning(
                f"Ads API {path} failed with {e.response.status_code}: {message}",
                extra={"status_code": e.response.status_code},
            )
            raise ProviderError(message, e.response.status_code, code) from e
        except httpx.RequestError as e:
            raise ProviderError(f"Connection to Ads API failed: {e}") from e

    @staticmethod
    def _first_report(result: Dict[str, Any], action: str) -> Dict[str, Any]:
        success = result.get("success") or []
        report = success[0].get("report") if success else None
        if not report:
            raise ProviderError(f"{action}: response did not contain a report ({result.get('error')})")
        return report

    # ── Reports ──

    async def create_report(
        self, account: AccountRef, window: ReportWindow, fields: Sequence[str]
    ) -> CreatedReport:
        body = {
            "accessRequestedAccounts": [
                {"advertiserAccountId": account.ads_account_id}
            ],
            "reports": [
                {
                    "format": self.report_format,
                    "periods": [{"datePeriod": _date_period(window)}],
                    "query": {"fields": list(fields)},
                }
            ],
        }
        result = await self._post(CREATE_PATH, body)
        report = self._first_report(result, "createReport")
        report_id = report.get("reportId")
        if not report_id:
            raise ProviderError("createReport: no reportId returned")
        logger.info(f"Created report {report_id}", extra={"report_id": report_id})
        return CreatedReport(report_id=report_id)

    async def retrieve_report(self, report_id: str) -> RetrievedReport:
        result = await self._post(RETRIEVE_PATH, {"reportIds": [report_id]})
        report = self._first_report(result, "retrieveReport")
        raw_status = str(report.get("status", "")).upper()
        if raw_status == ReportStatus.COMPLETED.value:
            parts = report.get("completedReportParts") or []
            return RetrievedReport(
                status=ReportStatus.COMPLETED,
                result_ref=parts[0].get("url") if parts else report.get("url"),
            )
        if raw_status == ReportStatus.FAILED.value:
            return RetrievedReport(
                status=ReportStatus.FAILED,
                error=report.get("failureReason") or report.get("failureCode") or "Report failed",
            )
        return RetrievedReport(status=ReportStatus.PENDING)
