"""HARVEST — Report Definition Registry.

Columns requested from the reporting API for each
(aggregation, entity type) pair. Report content is never interpreted here;
the registry only shapes the creation request.
"""

from typing import Dict, Tuple

from app.models.report_models import Aggregation, EntityType


class ReportDefinition:
    """Describes one report shape."""

    def __init__(
        self,
        aggregation: Aggregation,
        entity_type: EntityType,
        fields: Tuple[str, ...],
    ):
        self.aggregation = aggregation
        self.entity_type = entity_type
        self.fields = fields

    def __repr__(self) -> str:
        return f"<Report {self.aggregation.value}/{self.entity_type.value} ({len(self.fields)} fields)>"


_METRICS = (
    "metric.impressions",
    "metric.clicks",
    "metric.purchases",
    "metric.sales",
    "metric.totalCost",
)

_CAMPAIGN = (
    "budgetCurrency.value",
    "campaign.id",
    "campaign.name",
    "adGroup.id",
    "ad.id",
)


REPORT_DEFINITIONS: Dict[Tuple[Aggregation, EntityType], ReportDefinition] = {
    (Aggregation.DAILY, EntityType.TARGET): ReportDefinition(
        Aggregation.DAILY,
        EntityType.TARGET,
        ("date.value", *_CAMPAIGN, "adGroup.name", "target.value", "target.matchType",
         "searchTerm.value", *_METRICS),
    ),
    (Aggregation.DAILY, EntityType.PRODUCT): ReportDefinition(
        Aggregation.DAILY,
        EntityType.PRODUCT,
        ("date.value", *_CAMPAIGN, "advertisedProduct.id",
         "advertisedProduct.marketplace", *_METRICS),
    ),
    (Aggregation.HOURLY, EntityType.TARGET): ReportDefinition(
        Aggregation.HOURLY,
        EntityType.TARGET,
        ("hour.value", *_CAMPAIGN, "adGroup.name", "target.value", "target.matchType",
         "matchedTarget.value", "searchTerm.value", *_METRICS),
    ),
    (Aggregation.HOURLY, EntityType.PRODUCT): ReportDefinition(
        Aggregation.HOURLY,
        EntityType.PRODUCT,
        ("hour.value", *_CAMPAIGN, "advertisedProduct.id",
         "advertisedProduct.marketplace", "target.value", "target.matchType",
         "matchedTarget.value", *_METRICS),
    ),
}


def get_report_definition(
    aggregation: Aggregation, entity_type: EntityType
) -> ReportDefinition:
    return REPORT_DEFINITIONS[(Aggregation(aggregation), EntityType(entity_type))]
