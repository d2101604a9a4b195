"""
Crawl configuration.

A crawler is described by one declarative configuration (a dict, usually
defined as ``CONFIG`` in the crawler's own module). CrawlConfig validates
and normalizes it once; afterwards the crawler treats it as read-only.

Keys are accepted in snake_case as well as in camelCase (``urlDateCount``,
``postData``, ``isTemporarilyClosed``).
"""

import copy
import logging
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator
from pydantic import model_validator
from pydantic.alias_generators import to_camel

from showtime_crawler.exceptions import ConfigurationError
from showtime_crawler.models import Cinema
from showtime_crawler.models import CrawlerInfo
from showtime_crawler.models import RequestObject
from showtime_crawler.utils import get_main_filename_base
from showtime_crawler.utils import is_link_tag_selector

logger = logging.getLogger(__name__)

# keys under which showtimes parsing configs may nest, in any combination
PARSING_CONFIG_KEYS = ("movies", "dates", "periods", "auditoria", "versions", "forEach", "for_each")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        arbitrary_types_allowed=True,
    )


class ParserConfig(_ConfigModel):
    """Selectors used by the default response parser."""

    box: Optional[str] = Field(
        default=None,
        description="CSS selector of the containers holding one item each"
    )

    fields: Dict[str, str] = Field(
        default_factory=dict,
        description="Item property -> CSS selector ('selector@attr' reads an attribute)"
    )

    next_page: Optional[str] = Field(
        default=None,
        description="CSS selector of the link to the next page of the list"
    )


class ListConfig(ParserConfig):
    """
    Where to fetch a list from.

    ``url`` is normalized into ``urls``. Templates may contain ``:date:`` to
    iterate ``url_date_count`` days starting today, or ``:page(1,2,3):`` to
    iterate a static list of pages.
    """

    url: Optional[str] = None
    urls: List[str] = Field(default_factory=list)
    post_data: Optional[Any] = None
    url_date_count: Optional[int] = Field(default=None, ge=1)
    url_date_format: Optional[str] = Field(
        default=None,
        description="strftime format for :date: markers (default %Y-%m-%d)"
    )

    @model_validator(mode="after")
    def normalize_urls(self) -> "ListConfig":
        if not self.urls and self.url:
            self.urls = [self.url]
        if not self.urls:
            raise ValueError("a list config needs 'url' or 'urls'")
        return self

    def request_objects(self) -> List[RequestObject]:
        return [RequestObject(url=url, post_data=self.post_data) for url in self.urls]


class DetailsConfig(ParserConfig):
    """Request template for a per-cinema details page."""

    url: str
    post_data: Optional[Any] = None

    def request_object(self) -> RequestObject:
        return RequestObject(url=self.url, post_data=self.post_data)


class ShowtimesCrawlingConfig(ListConfig):
    """A showtimes list plus the nested rules to parse it."""

    preserve_late_night_shows: bool = Field(
        default=False,
        description="Keep showtimes before 06:00 on the day the website lists them"
    )

    start_at_format: Optional[str] = Field(
        default=None,
        description="strptime format of the start_at field (ISO format if unset)"
    )

    showtimes: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Nested showtimes parsing config"
    )

    def parsing_tree(self) -> Dict[str, Any]:
        """Nested parsing configs, sharing the dicts stored on this config."""
        tree = dict(self.model_extra or {})
        if self.showtimes is not None:
            tree["showtimes"] = self.showtimes
        return tree


class CinemasConfig(_ConfigModel):
    list: Optional[ListConfig] = None
    details: Optional[DetailsConfig] = None


class SubListConfig(_ConfigModel):
    """Movies or dates: a list to crawl plus the showtimes found per item."""

    list: ListConfig
    showtimes: Optional[ShowtimesCrawlingConfig] = None


class IsTemporarilyClosedConfig(_ConfigModel):
    url: str
    selector: str = Field(
        ...,
        description="CSS selector that matches only while the cinema is closed"
    )


class Hooks(_ConfigModel):
    """Optional callables that customize the crawl. Sync or async."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    before_crawling: Optional[Callable[..., Any]] = None
    handle_cinemas_response: Optional[Callable[..., Any]] = None
    handle_cinema_details_response: Optional[Callable[..., Any]] = None
    handle_movies_response: Optional[Callable[..., Any]] = None
    handle_dates_response: Optional[Callable[..., Any]] = None
    handle_showtimes_response: Optional[Callable[..., Any]] = None
    before_save: Optional[Callable[..., Any]] = None
    build_filename: Optional[Callable[..., Any]] = None
    progress: Optional[Callable[..., Any]] = None
    configure_request: Optional[Callable[..., Any]] = None
    after_request: Optional[Callable[..., Any]] = None


def resolve_parsing_configs(node: Any, crawler: CrawlerInfo, parent_key: Optional[str] = None) -> None:
    """
    Walk a showtimes parsing tree and resolve every nested config in place.

    Showtimes configs found anywhere (directly, below movies/dates/periods/
    auditoria/versions/forEach or inside ``table.cells``) mark the crawler as
    booking link capable when they address a link. Period configs default
    their box to the whole page.
    """
    if not isinstance(node, dict):
        return

    if parent_key == "periods":
        node.setdefault("box", "body")

    for key in PARSING_CONFIG_KEYS:
        if key in node:
            resolve_parsing_configs(node[key], crawler, key)

    showtimes = node.get("showtimes")
    table = node.get("table")
    if isinstance(table, dict) and isinstance(table.get("cells"), dict):
        _resolve_showtimes_parsing_config(table["cells"].get("showtimes"), crawler)
    _resolve_showtimes_parsing_config(showtimes, crawler)


def _resolve_showtimes_parsing_config(config: Any, crawler: CrawlerInfo) -> None:
    if not isinstance(config, dict):
        return
    if is_link_tag_selector(config.get("box")):
        crawler.is_booking_link_capable = True
    if config.get("bookingLink") or config.get("booking_link"):
        crawler.is_booking_link_capable = True


class CrawlConfig(_ConfigModel):
    """The normalized crawl configuration."""

    crawler: CrawlerInfo
    concurrency: Optional[int] = Field(default=None, ge=1)
    proxy_uri: Optional[str] = None
    use_random_user_agent: Optional[bool] = None
    timezone: Optional[str] = None
    accepted_warnings: Dict[int, str] = Field(default_factory=dict)
    is_temporarily_closed: Optional[IsTemporarilyClosedConfig] = None
    cinemas: Optional[List[Cinema]] = None
    cinemas_config: Optional[CinemasConfig] = None
    showtimes: List[ShowtimesCrawlingConfig] = Field(default_factory=list)
    movies: Optional[SubListConfig] = None
    dates: Optional[SubListConfig] = None
    hooks: Hooks = Field(default_factory=Hooks)

    @model_validator(mode="before")
    @classmethod
    def split_cinemas(cls, data: Any) -> Any:
        """``cinemas`` is either a static list or a crawling config."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        crawler = dict(data.get("crawler") or {})
        crawler.setdefault("id", get_main_filename_base())
        data["crawler"] = crawler
        cinemas = data.get("cinemas")
        if isinstance(cinemas, dict):
            data["cinemas_config"] = data.pop("cinemas")
        return data

    @field_validator("showtimes", mode="before")
    @classmethod
    def wrap_showtimes(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, dict):
            return [v]
        return v

    @model_validator(mode="after")
    def resolve(self) -> "CrawlConfig":
        if self.cinemas is None:
            if self.cinemas_config is None or self.cinemas_config.list is None:
                raise ValueError("'cinemas' must be a list of cinemas or contain a 'list' config")

        for showtimes_config in self.showtimes_configs():
            _resolve_showtimes_parsing_config(
                {"box": showtimes_config.box, **showtimes_config.fields},
                self.crawler,
            )
            resolve_parsing_configs(showtimes_config.parsing_tree(), self.crawler)
        return self

    def showtimes_configs(self) -> List[ShowtimesCrawlingConfig]:
        """All showtimes crawling configs, wherever they are configured."""
        configs = list(self.showtimes)
        for sub_config in (self.movies, self.dates):
            if sub_config is not None and sub_config.showtimes is not None:
                configs.append(sub_config.showtimes)
        return configs

    def applicable_showtimes_configs(self) -> List[ShowtimesCrawlingConfig]:
        """Showtimes configs used per date page: movies, else dates, else top level."""
        if self.movies is not None:
            return [self.movies.showtimes] if self.movies.showtimes else []
        if self.dates is not None:
            return [self.dates.showtimes] if self.dates.showtimes else []
        return list(self.showtimes)

    @property
    def crawls_showtimes(self) -> bool:
        return bool(self.showtimes or self.movies or self.dates)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CrawlConfig":
        """
        Validate a raw configuration, raising ConfigurationError when invalid.

        The data part of ``raw`` is copied before normalization. Hooks are
        passed on by reference: bound methods must keep running against the
        crawler object that defined them.
        """
        if isinstance(raw, CrawlConfig):
            return raw
        if not isinstance(raw, dict):
            raise ConfigurationError(f"crawl configuration must be a dict, got {type(raw).__name__}")
        data = dict(raw)
        hooks = data.pop("hooks", None)
        data = copy.deepcopy(data)
        if hooks is not None:
            data["hooks"] = dict(hooks) if isinstance(hooks, dict) else hooks
        try:
            config = cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid crawl configuration: {exc}") from exc
        logger.debug(f"configuration for crawler {config.crawler.id} loaded")
        return config
