"""
Command line entry point.

Usage:
    python -m showtime_crawler crawlers/my_cinema.py [-v] [-l N] [-c [DIR]]

The crawler file is a Python module defining ``CONFIG``, the crawl
configuration dict.
"""

import argparse
import asyncio
import importlib.util
import logging
import sys
from pathlib import Path
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from showtime_crawler import __version__
from showtime_crawler.crawler import Crawler
from showtime_crawler.exceptions import ConfigurationError
from showtime_crawler.exceptions import CrawlError
from showtime_crawler.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = "cache"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="showtime_crawler",
        description="Crawl cinema showtimes as described by a crawler file",
    )
    parser.add_argument("crawler_file", type=Path, help="Python file defining CONFIG")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    parser.add_argument(
        "-l", "--limit", type=int, default=None, metavar="N",
        help="crawl only the first N items of every list (development)",
    )
    parser.add_argument(
        "-c", "--cache", nargs="?", const=DEFAULT_CACHE_DIR, default=None, metavar="DIR",
        help=f"record and replay responses in DIR (default: {DEFAULT_CACHE_DIR})",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_crawler_config(path: Path) -> Dict[str, Any]:
    """Import the crawler file and return its CONFIG dict."""
    if not path.is_file():
        raise ConfigurationError(f"crawler file not found: {path}")
    spec = importlib.util.spec_from_file_location(path.stem, path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"cannot load crawler file: {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    config = getattr(module, "CONFIG", None)
    if not isinstance(config, dict):
        raise ConfigurationError(f"{path} must define CONFIG as a dict")
    config = dict(config)
    crawler = dict(config.get("crawler") or {})
    crawler.setdefault("id", path.stem)
    config["crawler"] = crawler
    return config


def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    updates: Dict[str, Any] = {}
    if args.verbose:
        updates["log_level"] = "DEBUG"
    if args.limit is not None:
        if args.limit < 1:
            raise ConfigurationError(f"--limit must be at least 1, got {args.limit}")
        updates["list_limit"] = args.limit
    if args.cache is not None:
        updates["cache_dir"] = Path(args.cache)
    base = base or Settings()
    return base.model_copy(update=updates)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
        settings.setup_logging()
        if settings.list_limit:
            logger.warning(f"list limit active: only the first {settings.list_limit} items of every list are crawled")
        crawler = Crawler(load_crawler_config(args.crawler_file), settings=settings)
        asyncio.run(crawler.crawl())
    except CrawlError as e:
        logger.error(f"crawl aborted: {e}")
        return 1
    except Exception:
        logger.exception("crawl failed with an unexpected error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
