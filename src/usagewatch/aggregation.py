from typing import Mapping, NamedTuple, Union

import structlog

from usagewatch.models import (
    PayAsYouGo,
    ProviderIdentifier,
    ProviderResult,
    ProviderUsage,
    QuotaBased,
)

logger = structlog.get_logger()

# alert when less than this share of a quota is left
QUOTA_ALERT_THRESHOLD_PERCENT = 20.0

UsageEntry = Union[ProviderUsage, ProviderResult]


class QuotaAlert(NamedTuple):
    identifier: "ProviderIdentifier"
    remaining_percentage: "float"


def _usage_of(entry: "UsageEntry") -> "ProviderUsage":
    if isinstance(entry, ProviderResult):
        return entry.usage
    return entry


def quota_alerts(
    results: "Mapping[ProviderIdentifier, UsageEntry]",
    threshold: "float" = QUOTA_ALERT_THRESHOLD_PERCENT,
) -> "list[QuotaAlert]":
    """
    lists quota-based providers whose remaining share of the
    entitlement is below threshold. Entries without an entitlement
    and pay-as-you-go entries are never included. The order of the
    returned list carries no meaning.
    """
    alerts: "list[QuotaAlert]" = []
    for identifier, entry in results.items():
        usage = _usage_of(entry)
        if not isinstance(usage, QuotaBased) or usage.entitlement <= 0:
            continue

        remaining_percentage = usage.remaining / usage.entitlement * 100.0
        if remaining_percentage < threshold:
            logger.warning(
                "quota_alert",
                provider=identifier.value,
                remaining_percent=round(remaining_percentage, 1),
            )
            alerts.append(QuotaAlert(identifier, remaining_percentage))

    logger.debug("quota_alerts_computed", count=len(alerts), threshold=threshold)
    return alerts


def total_overage_cost(results: "Mapping[ProviderIdentifier, UsageEntry]") -> "float":
    """
    sums the cost of every pay-as-you-go entry; a missing cost counts
    as 0 and quota-based entries contribute nothing.
    """
    total = 0.0
    for entry in results.values():
        usage = _usage_of(entry)
        if isinstance(usage, PayAsYouGo) and usage.cost is not None:
            total += usage.cost
    return total


def split_by_type(
    results: "Mapping[ProviderIdentifier, UsageEntry]",
) -> "tuple[dict[ProviderIdentifier, UsageEntry], dict[ProviderIdentifier, UsageEntry]]":
    """
    returns (quota_based, pay_as_you_go) subsets of results.
    """
    quota: "dict[ProviderIdentifier, UsageEntry]" = {}
    payg: "dict[ProviderIdentifier, UsageEntry]" = {}
    for identifier, entry in results.items():
        if isinstance(_usage_of(entry), QuotaBased):
            quota[identifier] = entry
        else:
            payg[identifier] = entry
    return quota, payg
