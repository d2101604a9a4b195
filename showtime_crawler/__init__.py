"""
Config-driven showtime crawler framework.

A crawler is a declarative configuration describing where a cinema website
lists its cinemas, movies, dates and showtimes. The framework fetches those
pages, follows pagination and URL templates, assembles one JSON document per
cinema and reports suspicious results as warnings.

Main Components:
- Crawler: Orchestrates the crawl pipeline for one configuration
- Context: Per-branch crawl state cloned for every list item
- ProgressTracker: Weighted progress across the crawl's tasks
- Transport: aiohttp requests with retries, in-memory cache or SQLite replay
- JsonFileWriter: One pretty printed JSON file per cinema

Usage:
    # Run a crawler file defining CONFIG
    python -m showtime_crawler crawlers/my_cinema.py

    # Crawl programmatically
    from showtime_crawler import Crawler

    crawler = Crawler(CONFIG)
    result = await crawler.crawl()
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Public API for external usage
from showtime_crawler.config import CrawlConfig
from showtime_crawler.context import Context
from showtime_crawler.context import Resource
from showtime_crawler.crawler import Crawler
from showtime_crawler.exceptions import ConfigurationError
from showtime_crawler.exceptions import CrawlError
from showtime_crawler.exceptions import ResponseParseError
from showtime_crawler.exceptions import TransportError
from showtime_crawler.models import Cinema
from showtime_crawler.models import CrawlOutput
from showtime_crawler.models import Movie
from showtime_crawler.models import Showtime
from showtime_crawler.progress import ProgressTracker
from showtime_crawler.settings import Settings

__all__ = [
    "Cinema",
    "ConfigurationError",
    "Context",
    "CrawlConfig",
    "CrawlError",
    "CrawlOutput",
    "Crawler",
    "Movie",
    "ProgressTracker",
    "Resource",
    "ResponseParseError",
    "Settings",
    "Showtime",
    "TransportError",
]
