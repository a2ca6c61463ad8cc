from typing import Any, Protocol


class WebSession(Protocol):
    """
    WebSession evaluates a script against a live, authenticated
    browser session and returns its result: a raw string (markup or
    serialized JSON), a JSON-like structure, or None.

    Implementations raise usagewatch.errors.NetworkError when the
    session itself cannot be reached. Browser automation lives
    outside this package; adapters only see this capability.
    """

    async def execute(self, query: "str") -> "Any": ...
