from typing import Any, Iterable, Protocol

import httpx
import structlog

from usagewatch.errors import AuthenticationFailedError, DecodingError, NetworkError
from usagewatch.models import ProviderIdentifier, ProviderResult, ProviderType

logger = structlog.get_logger()

# per-request timeout for adapters; stays within the orchestrator's
# per-adapter budget
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    provider adapters must satisfy.

    fetch() performs exactly one end-to-end attempt and returns a
    ProviderResult whose usage variant matches type. Failures are
    raised as usagewatch.errors.UsageFetchError subclasses.
    """

    @property
    def identifier(self) -> "ProviderIdentifier": ...

    @property
    def type(self) -> "ProviderType": ...

    async def fetch(self) -> "ProviderResult": ...

    async def close(self) -> "None": ...


async def send_request(
    client: "httpx.AsyncClient",
    method: "str",
    url: "str",
    **kwargs: "Any",
) -> "httpx.Response":
    """
    issues one request, turning transport failures into NetworkError.
    Cancellation is not caught, so an in-flight request is aborted
    when the calling task is cancelled.
    """
    try:
        return await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise NetworkError(f"{method} {url} failed: {exc}") from exc


def check_status(
    resp: "httpx.Response",
    provider: "ProviderIdentifier",
    auth_statuses: "Iterable[int]" = (401,),
) -> "None":
    """
    maps the given statuses to AuthenticationFailedError and any
    other non-2xx status to NetworkError.
    """
    if resp.status_code in tuple(auth_statuses):
        logger.warning(
            "provider_auth_rejected",
            provider=provider.value,
            status=resp.status_code,
        )
        raise AuthenticationFailedError(
            f"{provider.display_name} rejected credentials (HTTP {resp.status_code})"
        )
    if not 200 <= resp.status_code < 300:
        logger.error(
            "provider_http_error",
            provider=provider.value,
            status=resp.status_code,
        )
        raise NetworkError(f"HTTP {resp.status_code}")


def decode_json_object(resp: "httpx.Response") -> "dict[str, Any]":
    try:
        data = resp.json()
    except ValueError as exc:
        raise DecodingError(f"response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodingError("response is not a JSON object")
    return data
