"""
Output warnings.

Structural checks run on every per-cinema result before it is saved. Issues
never fail a crawl; they are logged, either prominently or, when the crawler
configuration lists their code in ``accepted_warnings``, at debug level.
"""

import logging
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from pydantic import BaseModel

from showtime_crawler.context import Context
from showtime_crawler.models import CrawlOutput

logger = logging.getLogger(__name__)

NO_SHOWTIMES = 1
MISSING_MOVIE_TITLE = 2
MISSING_CINEMA_NAME = 3
DUPLICATE_SHOWTIMES = 4


class CrawlWarning(BaseModel):
    """A non-fatal issue found in a crawl result."""

    code: int
    title: str
    details: Optional[str] = None
    accepted_reason: Optional[str] = None

    def format(self) -> str:
        text = f"[{self.code}] {self.title}"
        if self.details:
            text += f"\n    {self.details}"
        if self.accepted_reason:
            text += f"\n    accepted: {self.accepted_reason}"
        return text


def validate(result: CrawlOutput, context: Context) -> List[CrawlWarning]:
    """Check a result for common crawling mistakes."""
    warnings: List[CrawlWarning] = []
    cinema_label = (result.cinema and (result.cinema.name or result.cinema.slug or result.cinema.id)) or "unknown cinema"

    if not result.showtimes:
        warnings.append(CrawlWarning(
            code=NO_SHOWTIMES,
            title="No showtimes found",
            details=f"{cinema_label} has an empty showtimes list",
        ))

    untitled = [s for s in result.showtimes if not s.movie_title]
    if untitled:
        warnings.append(CrawlWarning(
            code=MISSING_MOVIE_TITLE,
            title="Showtimes without movie title",
            details=f"{len(untitled)} of {len(result.showtimes)} showtimes lack a movie_title",
        ))

    if result.cinema is not None and not result.cinema.name:
        warnings.append(CrawlWarning(
            code=MISSING_CINEMA_NAME,
            title="Cinema without name",
            details=f"cinema {cinema_label} has no name",
        ))

    seen = set()
    duplicates = 0
    for showtime in result.showtimes:
        key = (showtime.start_at, showtime.movie_title, showtime.auditorium)
        if key in seen:
            duplicates += 1
        seen.add(key)
    if duplicates:
        warnings.append(CrawlWarning(
            code=DUPLICATE_SHOWTIMES,
            title="Duplicate showtimes",
            details=f"{duplicates} showtimes share start time, movie and auditorium with another",
        ))

    return warnings


def group_warnings(warnings: Iterable[CrawlWarning], accepted: Dict[int, str]) -> Dict[str, List[CrawlWarning]]:
    """
    Deduplicate ``warnings`` by code and split them into accepted and print.

    The first warning of every code wins.
    """
    groups: Dict[str, List[CrawlWarning]] = {"print": [], "accepted": []}
    seen_codes = set()
    for warning in warnings:
        if warning.code in seen_codes:
            continue
        seen_codes.add(warning.code)
        reason = accepted.get(warning.code)
        if reason is None:
            groups["print"].append(warning)
        else:
            groups["accepted"].append(warning.model_copy(update={"accepted_reason": reason}))
    return groups


def print_warnings(groups: Dict[str, List[CrawlWarning]], log: Callable[[str], None] = logger.warning) -> None:
    for warning in groups.get("print", []):
        log(warning.format())
    for warning in groups.get("accepted", []):
        logger.debug(f"warnings: {warning.format()}")
