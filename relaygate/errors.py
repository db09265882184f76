"""Error taxonomy shared by the gateway's entry points."""


class GatewayError(Exception):
    """Base class; ``status_code`` is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message="", url=None):
        super().__init__(message)
        self.message = message
        self.url = url


class InvalidURL(GatewayError):
    status_code = 400


class SSRFBlocked(GatewayError):
    status_code = 403


class RelayProtocolError(GatewayError):
    status_code = 400


class UpstreamError(GatewayError):
    """The upstream could not produce a usable response.

    Plain ``UpstreamError`` is not worth retrying (redirect loops and the
    like); ``UpstreamTransientFailure`` is.
    """

    status_code = 502
    retryable = False

    def __init__(self, message="", url=None, cause=None):
        super().__init__(message, url)
        self.cause = cause


class UpstreamTransientFailure(UpstreamError):
    """Connect, timeout, proxy or TLS failure. Retried with a fresh credential."""

    retryable = True


class UpstreamExhausted(UpstreamError):
    def __init__(self, last_error, attempts, url=None):
        super().__init__(
            f"All {attempts} proxy attempts failed: {last_error}",
            url=url,
            cause=last_error,
        )
        self.last_error = last_error
        self.attempts = attempts
