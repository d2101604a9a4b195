"""
Exception hierarchy for the showtime crawler.

Every error raised by the crawling pipeline derives from CrawlError so
callers can catch crawl failures without swallowing unrelated bugs.
"""

from typing import Optional


class CrawlError(Exception):
    """Base class for all crawler errors."""


class ConfigurationError(CrawlError):
    """The crawl configuration is invalid or incomplete."""


class TransportError(CrawlError):
    """A request could not be completed (network, timeout or HTTP error)."""

    def __init__(self, url: str, message: str, status: Optional[int] = None) -> None:
        self.url = url
        self.status = status
        super().__init__(f"{message} (url={url}, status={status})")


class ResponseParseError(CrawlError):
    """A response handler failed to turn a response into items."""

    def __init__(self, resource: str, url: Optional[str], message: str) -> None:
        self.resource = resource
        self.url = url
        super().__init__(f"failed to parse {resource} response from {url}: {message}")


class CallstackError(CrawlError):
    """The diagnostic call stack of a context is unbalanced or too deep."""
