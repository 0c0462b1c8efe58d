"""HTTP session for the P2P.org client API.

Retries are logged, so a slow fee lookup is visible in the onboarding output.
"""

import logging

from requests import Session
from requests.adapters import HTTPAdapter
from urllib3 import Retry

logger = logging.getLogger(__name__)


#: Default number of retries for API requests
DEFAULT_RETRIES = 3

#: Default backoff factor for retries (seconds)
DEFAULT_BACKOFF_FACTOR = 0.5

#: Request timeout, seconds. Fee lookup falls back to defaults, so fail fast.
DEFAULT_TIMEOUT = 10


class LoggingRetry(Retry):
    """urllib3 ``Retry`` that tells about every retry in the logs.

    Query strings are cut from the logged URL.
    """

    def __init__(self, *args, **kwargs):
        self.logger = kwargs.pop("logger", logger)
        super().__init__(*args, **kwargs)

    def new(self, **kw):
        # Retry objects are copied on each increment, keep our logger
        new_retry = super().new(**kw)
        new_retry.logger = self.logger
        return new_retry

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        if response:
            status = response.status
            reason = response.reason
        else:
            status = None
            reason = str(error)

        url_shortened = (url or "").split("?")[0][0:96]

        self.logger.warning("Retrying P2P API: %s %s (status: %s, reason: %s)", method, url_shortened, status, reason)
        return super().increment(method, url, response, error, _pool, _stacktrace)


def create_p2p_api_session(
    api_token: str | None = None,
    retries: int = DEFAULT_RETRIES,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
) -> Session:
    """Create a requests session for the P2P.org API.

    :param api_token:
        Bearer token, if the endpoint needs one

    :param retries:
        Maximum number of retry attempts for failed requests

    :param backoff_factor:
        Backoff factor for exponential retry delays
    """
    session = Session()

    retry_policy = LoggingRetry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        respect_retry_after_header=True,
        logger=logger,
    )
    adapter = HTTPAdapter(max_retries=retry_policy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    session.headers["Accept"] = "application/json"
    if api_token:
        session.headers["Authorization"] = f"Bearer {api_token}"

    return session
