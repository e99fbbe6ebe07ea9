"""HTTP retrieval of the gas prices feed."""

from __future__ import annotations

import logging

import requests

from .errors import FetchError, FetchErrorKind

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = "http://www.tomorrowsgaspricetoday.com/mobile/json_mobile_data.php"
DEFAULT_TIMEOUT = 20


class FeedFetcher:
    """Lightweight wrapper around the gas prices feed endpoint."""

    def __init__(self,
                 url: str = DEFAULT_FEED_URL,
                 timeout: float = DEFAULT_TIMEOUT,
                 session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": "gasprices/1.0",
            "Accept": "application/json",
        })

    def fetch(self) -> str:
        """Return the feed body with the leading sentinel character removed."""
        logger.debug("Fetching gas prices feed from %s", self.url)
        try:
            response = self.session.get(self.url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchError(FetchErrorKind.NETWORK,
                             f"request to {self.url} failed: {exc}") from exc

        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise FetchError(FetchErrorKind.PROTOCOL,
                             f"unexpected response from {self.url}: {exc}") from exc

        if not response.encoding or response.encoding.lower() == "iso-8859-1":
            response.encoding = response.apparent_encoding or "utf-8"

        body = response.text
        if not body:
            raise FetchError(FetchErrorKind.PROTOCOL,
                             f"empty response body from {self.url}")

        # The upstream feed prepends one junk character before the JSON document.
        logger.debug("Fetched %d characters from %s", len(body), self.url)
        return body[1:]

    __call__ = fetch
