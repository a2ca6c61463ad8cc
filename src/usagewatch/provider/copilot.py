import json
import re
from typing import Any, Awaitable, Callable

import structlog

from usagewatch.errors import NetworkError, ProviderError, UsageFetchError
from usagewatch.models import (
    DetailedUsage,
    ProviderIdentifier,
    ProviderResult,
    ProviderType,
    QuotaBased,
)
from usagewatch.parsing import coerce_int, lenient_float, lenient_int
from usagewatch.web_session import WebSession

logger = structlog.get_logger()

COPILOT_AUTH_SOURCE = "Browser session (github.com)"

USER_API_QUERY = """
return await (async function() {
    try {
        const response = await fetch('/api/v3/user', {
            headers: { 'Accept': 'application/json' }
        });
        if (!response.ok) return JSON.stringify({ error: 'HTTP ' + response.status });
        return JSON.stringify(await response.json());
    } catch (e) {
        return JSON.stringify({ error: e.toString() });
    }
})()
"""

EMBEDDED_DATA_QUERY = """
return (function() {
    const el = document.querySelector('script[data-target="react-app.embeddedData"]');
    if (el) {
        try {
            const data = JSON.parse(el.textContent);
            if (data && data.payload && data.payload.customer && data.payload.customer.customerId) {
                return data.payload.customer.customerId.toString();
            }
        } catch(e) {}
    }
    return null;
})()
"""

PAGE_MARKUP_QUERY = "return document.documentElement.outerHTML"

USAGE_CARD_QUERY = """
return await (async function() {
    try {
        const res = await fetch('/settings/billing/copilot_usage_card?customer_id=%s&period=3', {
            headers: { 'Accept': 'application/json', 'x-requested-with': 'XMLHttpRequest' }
        });
        const text = await res.text();
        try {
            return JSON.parse(text);
        } catch (e) {
            return { error: 'JSON Parse Error', body: text };
        }
    } catch(e) { return { error: e.toString() }; }
})()
"""

CUSTOMER_ID_PATTERNS: "list[re.Pattern[str]]" = [
    re.compile(r'customerId":(\d+)'),
    re.compile(r"customerId&quot;:(\d+)"),
    re.compile(r"customer_id=(\d+)"),
    re.compile(r'data-customer-id="(\d+)"'),
]


def _as_json_object(result: "Any") -> "dict[str, Any] | None":
    """
    session results arrive either already structured or as a JSON
    string.
    """
    if isinstance(result, dict):
        return result
    if isinstance(result, str):
        try:
            data = json.loads(result)
        except ValueError:
            return None
        if isinstance(data, dict):
            return data
    return None


def customer_id_from_markup(html: "str") -> "str | None":
    for pattern in CUSTOMER_ID_PATTERNS:
        match = pattern.search(html)
        if match is not None:
            return match.group(1)
    return None


def parse_usage_card(root: "dict[str, Any]") -> "tuple[QuotaBased, float]":
    """
    reads the usage card, accepting camelCase and snake_case field
    names and numbers or numeric strings. Missing values count as 0.
    Returns the quota and the net billed amount in dollars.
    """
    data = root
    if isinstance(root.get("payload"), dict):
        data = root["payload"]
    elif isinstance(root.get("data"), dict):
        data = root["data"]

    logger.debug("copilot_usage_card_keys", keys=sorted(data.keys()))

    net_billed = lenient_float(data, ["netBilledAmount", "net_billed_amount"])
    used = int(lenient_float(data, ["discountQuantity", "discount_quantity"]))
    entitlement = lenient_int(
        data,
        ["userPremiumRequestEntitlement", "user_premium_request_entitlement", "quantity"],
    )

    quota = QuotaBased(
        remaining=entitlement - used,
        entitlement=entitlement,
        overage_permitted=True,
    )
    return quota, net_billed


class CopilotProvider:
    """
    CopilotProvider reads premium request usage through an
    authenticated github.com browser session.

    The billing endpoint needs the numeric customer id, which is
    resolved by trying, in order: the user API, the embedded React
    page data, and a regex scan over the page markup.
    """

    def __init__(self, session: "WebSession") -> "None":
        self._session = session

    @property
    def identifier(self) -> "ProviderIdentifier":
        return ProviderIdentifier.COPILOT

    @property
    def type(self) -> "ProviderType":
        return ProviderType.QUOTA_BASED

    async def close(self) -> "None":
        pass

    async def fetch(self) -> "ProviderResult":
        logger.info("copilot_fetch_started")

        user = await self._fetch_user()
        email = None
        if user is not None:
            email = user.get("email") or user.get("login")

        customer_id = await self.resolve_customer_id(user)
        if customer_id is None:
            raise ProviderError("customer id not found")
        logger.info("copilot_customer_id_resolved", customer_id=customer_id)

        card = _as_json_object(await self._session.execute(USAGE_CARD_QUERY % customer_id))
        if card is None:
            raise ProviderError("usage data not found")
        if "error" in card:
            raise NetworkError(f"usage card request failed: {card['error']}")

        quota, net_billed = parse_usage_card(card)
        logger.info(
            "copilot_usage_fetched",
            used=quota.entitlement - quota.remaining,
            limit=quota.entitlement,
            remaining=quota.remaining,
        )
        return ProviderResult(
            usage=quota,
            details=DetailedUsage(
                email=email if isinstance(email, str) else None,
                monthly_cost=net_billed,
                auth_source=COPILOT_AUTH_SOURCE,
            ),
        )

    async def resolve_customer_id(
        self,
        user: "dict[str, Any] | None" = None,
    ) -> "str | None":
        """
        returns the first customer id any strategy produces, or None.
        A strategy that fails is logged and skipped.
        """

        async def from_user() -> "str | None":
            if user is None:
                return None
            user_id = coerce_int(user.get("id"))
            return str(user_id) if user_id is not None else None

        strategies: "list[tuple[str, Callable[[], Awaitable[str | None]]]]" = [
            ("api", from_user),
            ("embedded_data", self._customer_id_from_embedded_data),
            ("markup", self._customer_id_from_markup),
        ]
        for name, strategy in strategies:
            try:
                customer_id = await strategy()
            except UsageFetchError as exc:
                logger.warning("copilot_strategy_failed", strategy=name, error=str(exc))
                continue
            if customer_id:
                logger.debug("copilot_strategy_succeeded", strategy=name)
                return customer_id
        return None

    async def _fetch_user(self) -> "dict[str, Any] | None":
        try:
            user = _as_json_object(await self._session.execute(USER_API_QUERY))
        except UsageFetchError as exc:
            logger.warning("copilot_user_fetch_failed", error=str(exc))
            return None
        if user is None or "error" in user:
            return None
        return user

    async def _customer_id_from_embedded_data(self) -> "str | None":
        result = await self._session.execute(EMBEDDED_DATA_QUERY)
        if result is None:
            return None
        return str(result) or None

    async def _customer_id_from_markup(self) -> "str | None":
        html = await self._session.execute(PAGE_MARKUP_QUERY)
        if not isinstance(html, str):
            return None
        return customer_id_from_markup(html)
