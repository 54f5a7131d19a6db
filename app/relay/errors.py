class RelayError(Exception):
    """Base class for failures surfaced to the client by the relay."""

    status_code = 500
    kind = "unclassified"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientInputError(RelayError):
    """Missing or malformed target URL; no upstream contact was made."""

    status_code = 400
    kind = "client_input"


class UpstreamTransportError(RelayError):
    """DNS, connection or TLS failure while talking to the upstream server."""

    status_code = 502
    kind = "transport"


class UpstreamTimeoutError(RelayError):
    """The upstream fetch exceeded the configured deadline and was cancelled."""

    status_code = 504
    kind = "timeout"


class UnclassifiedError(RelayError):
    status_code = 500
    kind = "unclassified"


class ResolutionError(ValueError):
    """Raised by the URL resolver for input it cannot turn into an absolute URL."""
