"""
Default response handlers.

Turn a Response into crawled items using plain CSS selectors:

    box        selector of the containers holding one item each
    fields     item property -> selector inside the box
               ("a.title" reads text, "a.title@href" reads an attribute,
               "@data-id" reads an attribute of the box itself)
    next_page  selector of the link to the next page of the list

Crawlers with more involved pages provide their own handle_*_response hooks.
"""

import logging
from datetime import date
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4 import Tag

from showtime_crawler.config import ParserConfig
from showtime_crawler.context import Context
from showtime_crawler.models import Cinema
from showtime_crawler.models import DatePage
from showtime_crawler.models import Movie
from showtime_crawler.models import Response
from showtime_crawler.models import Showtime

logger = logging.getLogger(__name__)

LINK_FIELDS = ("href", "website", "booking_link")

ParseResult = Tuple[List[Any], Optional[str]]


def select_value(node: Tag, selector: str) -> Optional[str]:
    """Read text or an attribute (``selector@attr``) below ``node``."""
    css, _, attr = selector.partition("@")
    target = node.select_one(css) if css.strip() else node
    if target is None:
        return None
    if attr:
        value = target.get(attr)
        if isinstance(value, list):
            value = " ".join(value)
        return value
    return target.get_text(" ", strip=True) or None


def parse_date(value: str, date_format: Optional[str] = None) -> date:
    if date_format:
        return datetime.strptime(value.strip(), date_format).date()
    return date.fromisoformat(value.strip())


class DefaultResponseParser:
    """Selector based handlers, one per resource kind."""

    def prepare_html_parsing(self, response: Response) -> BeautifulSoup:
        return BeautifulSoup(response.text, "html.parser")

    def boxes(self, soup: BeautifulSoup, config: ParserConfig) -> List[Tag]:
        if not config.box:
            return [soup]
        return soup.select(config.box)

    def extract(self, box: Tag, config: ParserConfig, base_url: str) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name, selector in config.fields.items():
            value = select_value(box, selector)
            if value is None:
                continue
            if name in LINK_FIELDS:
                value = urljoin(base_url, value)
            values[name] = value
        return values

    def next_page_url(self, soup: BeautifulSoup, config: ParserConfig, base_url: str) -> Optional[str]:
        if not config.next_page:
            return None
        link = soup.select_one(config.next_page)
        if link is None or not link.get("href"):
            return None
        return urljoin(base_url, link["href"])

    def _parse_list(self, response: Response, config: ParserConfig) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        soup = self.prepare_html_parsing(response)
        items = [self.extract(box, config, response.url) for box in self.boxes(soup, config)]
        items = [item for item in items if item]
        return items, self.next_page_url(soup, config, response.url)

    def handle_cinemas_response(self, response: Response, config: ParserConfig, context: Context) -> ParseResult:
        items, next_page = self._parse_list(response, config)
        cinemas = [Cinema(**values) for values in items]
        logger.debug(f"parsed {len(cinemas)} cinemas from {response.url}")
        return cinemas, next_page

    def handle_cinema_details_response(self, response: Response, config: ParserConfig, context: Context) -> Dict[str, Any]:
        soup = self.prepare_html_parsing(response)
        boxes = self.boxes(soup, config)
        if not boxes:
            return {}
        return self.extract(boxes[0], config, response.url)

    def handle_movies_response(self, response: Response, config: ParserConfig, context: Context) -> ParseResult:
        items, next_page = self._parse_list(response, config)
        return [Movie(**values) for values in items], next_page

    def handle_dates_response(self, response: Response, config: ParserConfig, context: Context) -> ParseResult:
        items, next_page = self._parse_list(response, config)
        extra = config.model_extra or {}
        date_format = extra.get("date_format") or extra.get("dateFormat")
        date_pages = []
        for values in items:
            if "date" in values:
                values["date"] = parse_date(values["date"], date_format)
            date_pages.append(DatePage(**values))
        return date_pages, next_page

    def handle_showtimes_response(self, response: Response, config: ParserConfig, context: Context) -> ParseResult:
        items, next_page = self._parse_list(response, config)
        start_at_format = getattr(config, "start_at_format", None)
        showtimes = []
        for values in items:
            showtimes.append(self.build_showtime(values, start_at_format, context))
        return showtimes, next_page

    def build_showtime(self, values: Dict[str, Any], start_at_format: Optional[str], context: Context) -> Showtime:
        values = dict(values)
        time_value = values.pop("time", None)
        if "start_at" in values and start_at_format:
            values["start_at"] = datetime.strptime(values["start_at"], start_at_format)
        elif "start_at" not in values and time_value and context.date is not None:
            clock = datetime.strptime(time_value.strip(), "%H:%M").time()
            values["start_at"] = datetime.combine(context.date, clock)

        movie = context.movie
        if movie is not None:
            values.setdefault("movie_title", movie.title)
            if movie.id is not None:
                values.setdefault("movie_id", movie.id)
        for key, value in (context.version or {}).items():
            values.setdefault(key, value)
        return Showtime(**values)
