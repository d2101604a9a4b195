"""
Data models for the showtime crawler.

Defines Pydantic models for cinemas, movies, date pages, showtimes and the
per-cinema output document, plus the request/response shapes exchanged
with the transport layer.

Crawled models allow extra fields: crawler configurations may extract any
additional property a site offers and it is passed through to the output
unchanged.
"""

import json
from datetime import date
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_serializer
from pydantic import field_validator

SHOWTIME_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"

# alias so the DatePage.date field does not shadow the type
DateType = date


class Cinema(BaseModel):
    """
    A cinema, either configured statically or discovered from a cinema list.

    Details crawled later are merged into the same object, so every stage of
    a crawl sees the enriched cinema.
    """

    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = Field(
        default=None,
        description="Identifier of the cinema on the source website"
    )

    slug: Optional[str] = Field(
        default=None,
        description="URL-friendly name, used for output file names"
    )

    name: Optional[str] = Field(
        default=None,
        description="Display name of the cinema"
    )

    website: Optional[str] = Field(
        default=None,
        description="URL of the cinema's page"
    )

    address: Optional[str] = None
    phone: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None

    is_temporarily_closed: Optional[bool] = Field(
        default=None,
        description="Set when the closed-check found the cinema closed"
    )

    def merge(self, details: Union["Cinema", Dict[str, Any]]) -> "Cinema":
        """Copy the set values of ``details`` onto this cinema in place."""
        if isinstance(details, BaseModel):
            values = details.model_dump(exclude_unset=True)
        else:
            values = dict(details)
        for key, value in values.items():
            setattr(self, key, value)
        return self


class Movie(BaseModel):
    """A movie found on a movie list page."""

    model_config = ConfigDict(extra="allow")

    id: Optional[Union[int, str]] = None
    title: Optional[str] = None
    href: Optional[str] = Field(
        default=None,
        description="Link to the movie's showtimes page"
    )
    version: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Language / format version info shared by all its showtimes"
    )


class DatePage(BaseModel):
    """A page listing the showtimes of one day."""

    model_config = ConfigDict(extra="allow")

    date: Optional[DateType] = None
    href: Optional[str] = None


class Showtime(BaseModel):
    """
    A single screening.

    ``start_at`` is a naive local datetime; it is serialized without
    timezone offset as ``YYYY-MM-DDTHH:MM:SS``.
    """

    model_config = ConfigDict(extra="allow")

    movie_title: Optional[str] = None
    movie_id: Optional[Union[int, str]] = None
    start_at: Optional[datetime] = Field(
        default=None,
        description="Local start time of the screening"
    )
    is_3d: Optional[bool] = None
    is_imax: Optional[bool] = None
    language: Optional[str] = None
    subtitles: Optional[Union[str, List[str]]] = None
    auditorium: Optional[str] = None
    booking_link: Optional[str] = None

    @field_validator("start_at", mode="before")
    @classmethod
    def parse_start_at(cls, v: Any) -> Any:
        """Accept ISO formatted strings as produced by hooks."""
        if isinstance(v, str):
            return datetime.fromisoformat(v.strip())
        return v

    @field_serializer("start_at")
    def serialize_start_at(self, v: Optional[datetime]) -> Optional[str]:
        if v is None:
            return None
        if v.tzinfo is not None:
            return v.isoformat(timespec="seconds")
        return v.strftime(SHOWTIME_DATETIME_FORMAT)


class CrawlerInfo(BaseModel):
    """Meta information about the crawler written into every output file."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(
        ...,
        min_length=1,
        description="Crawler identifier, used as output file name prefix"
    )

    is_booking_link_capable: bool = Field(
        default=False,
        description="Whether the crawler extracts booking links for showtimes"
    )

    jira_issues: Optional[List[str]] = None


class CrawlOutput(BaseModel):
    """The result document assembled for one cinema."""

    crawler: CrawlerInfo
    cinema: Optional[Cinema] = None
    showtimes: List[Showtime] = Field(default_factory=list)

    def to_json_dict(self) -> Dict[str, Any]:
        """Export as plain JSON types, dropping unset optional values."""
        return self.model_dump(mode="json", exclude_none=True)


class RequestObject(BaseModel):
    """A GET (no payload) or POST (with payload) request, possibly templated."""

    model_config = ConfigDict(frozen=True)

    url: str
    post_data: Optional[Any] = None

    @property
    def cache_key(self) -> str:
        return "#".join([self.url, json.dumps(self.post_data, sort_keys=True, default=str)])

    def describe(self) -> str:
        if self.post_data is None:
            return self.url
        return f"{self.url}, data: {json.dumps(self.post_data, default=str)}"


class Response(BaseModel):
    """The transport's answer to a request."""

    url: str
    status: int = 200
    text: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)

    def json_data(self) -> Any:
        """Decode the body as JSON."""
        return json.loads(self.text)


class CrawlResult(BaseModel):
    """
    Summary of a crawl with counters and status.

    Returned by ``Crawler.crawl`` and logged at the end of a run.
    """

    started_at: datetime = Field(
        ...,
        description="When the crawl started"
    )

    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the crawl completed"
    )

    success: bool = Field(
        default=False,
        description="Whether the crawl completed without error"
    )

    cinemas_crawled: int = Field(default=0, ge=0)
    showtimes_found: int = Field(default=0, ge=0)
    files_written: List[str] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Calculate crawl duration in seconds."""
        if not self.completed_at:
            return None

        delta = self.completed_at - self.started_at
        return delta.total_seconds()
