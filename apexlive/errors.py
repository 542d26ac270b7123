"""Exception types shared by the data source client and the replay engine."""


class ApexLiveError(Exception):
    """Base class for every error raised by apexlive."""


class SourceError(ApexLiveError):
    """The external time-series source could not serve a request."""

    def __init__(self, message, endpoint=None, status_code=None):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class RateLimitedError(SourceError):
    """HTTP 429 from the source. Retryable."""


class SourceUnavailableError(SourceError):
    """Connection failure, timeout or 5xx. Retryable."""


class SourceResponseError(SourceError):
    """Any other bad response (4xx, body that is not JSON). Not retried."""


class SessionLoadError(ApexLiveError):
    """A session could not be initialised for replay."""


RETRYABLE_ERRORS = (RateLimitedError, SourceUnavailableError)
