class UsageFetchError(Exception):
    """
    UsageFetchError is the base of every failure an adapter's
    fetch() may raise. kind mirrors the error taxonomy and is used
    as a metric label.
    """

    kind: "str" = "providerError"

    def __init__(self, message: "str") -> "None":
        super().__init__(message)
        self.message = message

    def __str__(self) -> "str":
        return f"{self.kind}: {self.message}"


class AuthenticationFailedError(UsageFetchError):
    """
    credential missing, expired or rejected. Surfaced so the user
    can re-authenticate.
    """

    kind = "authenticationFailed"


class NetworkError(UsageFetchError):
    """
    transport or HTTP failure, including the orchestrator timeout.
    """

    kind = "networkError"


class DecodingError(UsageFetchError):
    """
    the response did not have the expected shape, usually because
    an upstream API changed.
    """

    kind = "decodingError"


class ProviderError(UsageFetchError):
    kind = "providerError"


class UnsupportedError(UsageFetchError):
    kind = "unsupported"
