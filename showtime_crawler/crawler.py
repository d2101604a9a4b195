"""
The crawl orchestrator.

Crawler interprets a CrawlConfig and drives the whole pipeline:

    closed-check → cinemas → per cinema: movies → date pages → showtimes
    → result assembly → warnings → JSON file

Lists are walked with the concurrency-limited mappers from utils; every item
gets its own cloned Context. Cinemas, movies and date pages are walked one
after the other because showtimes parsing may depend on state set while
parsing earlier pages. Date and page expansions of request templates run
concurrently up to the configured limit.

Any error aborts the crawl: there is no per-cinema isolation, a single
failing cinema stops the remaining ones.
"""

import logging
from datetime import date
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from pydantic import BaseModel

from showtime_crawler import __version__
from showtime_crawler import utils
from showtime_crawler.config import CrawlConfig
from showtime_crawler.config import ListConfig
from showtime_crawler.config import ParserConfig
from showtime_crawler.config import ShowtimesCrawlingConfig
from showtime_crawler.context import Context
from showtime_crawler.context import Resource
from showtime_crawler.context import clone_context
from showtime_crawler.exceptions import ConfigurationError
from showtime_crawler.exceptions import CrawlError
from showtime_crawler.exceptions import ResponseParseError
from showtime_crawler.models import Cinema
from showtime_crawler.models import CrawlOutput
from showtime_crawler.models import CrawlResult
from showtime_crawler.models import DatePage
from showtime_crawler.models import Movie
from showtime_crawler.models import RequestObject
from showtime_crawler.models import Response
from showtime_crawler.models import Showtime
from showtime_crawler.parsers import DefaultResponseParser
from showtime_crawler.progress import ProgressInfo
from showtime_crawler.progress import ProgressTracker
from showtime_crawler.settings import Settings
from showtime_crawler.settings import get_settings
from showtime_crawler.templating import evaluate_request_object
from showtime_crawler.templating import has_date_marker
from showtime_crawler.templating import has_page_marker
from showtime_crawler.templating import parse_static_pages
from showtime_crawler.transport import Transport
from showtime_crawler.transport import build_transport
from showtime_crawler.utils import compact
from showtime_crawler.utils import flatten
from showtime_crawler.utils import maybe_await
from showtime_crawler.utils import union_by_identity
from showtime_crawler.validation import CrawlWarning
from showtime_crawler.validation import group_warnings
from showtime_crawler.validation import print_warnings
from showtime_crawler.validation import validate
from showtime_crawler.writer import JsonFileWriter

logger = logging.getLogger(__name__)

CRAWL_SHOWTIMES_PROGRESS_PLACEHOLDER_KEY = "crawl_showtimes_placeholder"

LATE_NIGHT_HOUR = 6

RESULT_BUCKETS = {
    Resource.CINEMA_LIST: "cinemas",
    Resource.MOVIE_LIST: "movies",
    Resource.DATE_LIST: "date_pages",
    Resource.SHOWTIMES: "showtimes",
}

HANDLER_HOOKS = {
    Resource.CINEMA_LIST: "handle_cinemas_response",
    Resource.CINEMA_DETAILS: "handle_cinema_details_response",
    Resource.MOVIE_LIST: "handle_movies_response",
    Resource.DATE_LIST: "handle_dates_response",
    Resource.SHOWTIMES: "handle_showtimes_response",
}

ITEM_MODELS = {
    Resource.CINEMA_LIST: Cinema,
    Resource.MOVIE_LIST: Movie,
    Resource.DATE_LIST: DatePage,
    Resource.SHOWTIMES: Showtime,
}

ResponseHandler = Callable[[Response, Context], Awaitable[Any]]
RequestIterator = Callable[[RequestObject, Context], Awaitable[Any]]
Step = Callable[[Any], Awaitable[Any]]


class Crawler:
    """
    Entry point of the framework: crawls according to one configuration.

    Args:
        config: Raw configuration dict or a validated CrawlConfig
        settings: Run settings, the global settings by default
        transport: Transport to send requests with, built from the settings
            by default (HTTP behind an in-memory or SQLite replay cache)
        response_parser: Default handlers used where no hook is configured
        file_writer: Writer for the per-cinema JSON documents
        now: Clock used to determine 'today' for :date: templates

    Raises:
        ConfigurationError: If the configuration is invalid. Raised before
            any request is made.
    """

    def __init__(
        self,
        config: Union[CrawlConfig, Dict[str, Any]],
        settings: Optional[Settings] = None,
        transport: Optional[Transport] = None,
        response_parser: Optional[DefaultResponseParser] = None,
        file_writer: Optional[JsonFileWriter] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.config = CrawlConfig.from_dict(config)
        self.results = utils.ResultBuckets()
        self.progress_tracker = ProgressTracker(self.handle_progress_update)
        self.transport = transport or build_transport(self.settings, self.config)
        self.response_parser = response_parser or DefaultResponseParser()
        self.file_writer = file_writer or JsonFileWriter(self.settings.output_dir, self.build_filename)
        self.files_written: List[Path] = []
        self._now = now
        self.timezone = self._resolve_timezone()
        logger.info(f"showtime-crawler version v{__version__}, crawler {self.config.crawler.id}")

    def _resolve_timezone(self) -> Optional[ZoneInfo]:
        zone = self.config.timezone or self.settings.timezone
        if not zone:
            logger.info("timezone: system")
            return None
        try:
            tz = ZoneInfo(zone)
        except ZoneInfoNotFoundError as e:
            raise ConfigurationError(f"unknown timezone: {zone}") from e
        logger.info(f"timezone: {zone}")
        return tz

    @property
    def concurrency(self) -> int:
        return self.config.concurrency or self.settings.max_concurrent_requests

    def now(self) -> datetime:
        if self._now is not None:
            return self._now()
        return datetime.now(self.timezone)

    def today(self) -> date:
        return self.now().date()

    def handle_progress_update(self, progress: ProgressInfo, change: str) -> None:
        logger.debug(f"progress {progress.completed}/{progress.total} {progress.percent}% update: {change}")
        if self.config.hooks.progress:
            self.config.hooks.progress(progress.completed, progress.total)

    async def crawl(self) -> CrawlResult:
        """
        Run the whole crawl.

        Returns:
            Summary of the crawl

        Raises:
            CrawlError: The first error of any step; nothing after it runs.
        """
        summary = CrawlResult(started_at=datetime.now())
        context = Context()
        context.push_callstack("crawl")
        hooks = self.config.hooks
        steps: List[Step] = []
        finished = False

        async def will_start(_: Any) -> None:
            key = "transport.will_start_crawling"
            self.progress_tracker.add_task(key, 1)
            await self.transport.will_start_crawling()
            self.progress_tracker.finish_task(key)

        steps.append(will_start)

        if hooks.before_crawling:
            self.progress_tracker.add_task("before_crawling", 1)

            async def before_crawling(_: Any) -> None:
                await maybe_await(hooks.before_crawling(context))
                self.progress_tracker.finish_task("before_crawling")

            steps.append(before_crawling)

        if self.config.is_temporarily_closed:
            async def closed_check(_: Any) -> None:
                await self.crawl_is_temporarily_closed(context)

            steps.append(closed_check)

        async def cinemas_step(_: Any) -> List[Cinema]:
            cinemas = await self.get_cinemas(context)
            self.results.union("cinemas", cinemas)
            logger.info(f"found {len(cinemas)} cinemas")
            logger.debug(f"cinemas:result {cinemas}")
            return cinemas

        steps.append(cinemas_step)

        if self.config.crawls_showtimes:
            # increased weighting to smooth the progress percentage
            self.progress_tracker.add_task("work_on_cinema", 0, weight=5)

            async def cinemas_work_step(cinemas: List[Cinema]) -> List[CrawlOutput]:
                self.progress_tracker.remove_task(CRAWL_SHOWTIMES_PROGRESS_PLACEHOLDER_KEY)
                context.current_task = "work_on_cinema"

                async def work(cinema: Cinema, ctx: Context) -> CrawlOutput:
                    ctx.cinema = cinema
                    return await self.work_on_cinema(ctx)

                return await self.map_series(cinemas, context, work)

            steps.append(cinemas_work_step)

        async def did_finish(result: Any) -> Any:
            nonlocal finished
            key = "transport.did_finish_crawling"
            self.progress_tracker.add_task(key, 1)
            finished = True
            await self.transport.did_finish_crawling()
            self.progress_tracker.finish_task(key)
            return result

        steps.append(did_finish)

        value: Any = None
        try:
            for step in steps:
                value = await step(value)
        except Exception as exc:
            logger.error(f"Failed: {type(exc).__name__}: {exc}")
            raise
        finally:
            if not finished:
                await self.transport.did_finish_crawling()

        context.pop_callstack()
        outputs = value if isinstance(value, list) else []
        summary.completed_at = datetime.now()
        summary.success = True
        summary.cinemas_crawled = len(self.results["cinemas"])
        summary.showtimes_found = sum(len(output.showtimes) for output in outputs if isinstance(output, CrawlOutput))
        summary.files_written = [str(path) for path in self.files_written]
        logger.info(
            f"DONE: {summary.cinemas_crawled} cinemas, {summary.showtimes_found} showtimes, "
            f"{len(summary.files_written)} files in {summary.duration_seconds:.1f}s"
        )
        return summary

    async def crawl_is_temporarily_closed(self, context: Context) -> bool:
        """Check the configured page for the 'temporarily closed' marker."""
        closed_config = self.config.is_temporarily_closed
        if closed_config is None:
            return False
        with context.callstack_frame("crawl_is_temporarily_closed"):
            response = await self.transport.get(closed_config.url, context)
            soup = self.response_parser.prepare_html_parsing(response)
            context.is_temporarily_closed = soup.select_one(closed_config.selector) is not None
            if context.is_temporarily_closed:
                logger.warning(f"{closed_config.url} reports the cinema as temporarily closed")
            return context.is_temporarily_closed

    async def get_cinemas(self, context: Context) -> List[Cinema]:
        """The configured static cinemas, or the crawled ones."""
        with context.callstack_frame("get_cinemas"):
            if self.config.cinemas is not None:
                return list(self.config.cinemas)
            return await self.crawl_cinemas(context)

    async def crawl_cinemas(self, context: Optional[Context] = None) -> List[Cinema]:
        context = context or Context()
        with context.callstack_frame("crawl_cinemas"):
            self.progress_tracker.add_task(CRAWL_SHOWTIMES_PROGRESS_PLACEHOLDER_KEY, 10)
            context.current_task = "crawl_cinema_list"
            cinemas = await self.work_on_request_lists(
                self.config.cinemas_config.list,
                context,
                self.crawl_cinema_list,
            )
            return flatten(cinemas)

    async def crawl_cinema_list(self, request: RequestObject, context: Context) -> List[Cinema]:
        """Crawl the cinemas of a single list request, plus their details if configured."""
        cinemas_config = self.config.cinemas_config
        handler = self.response_parser_for(Resource.CINEMA_LIST, cinemas_config.list)
        cinemas = await self.crawl_list(request, Resource.CINEMA_LIST, handler, context)
        if cinemas_config.details is None:
            return cinemas

        logger.info(f"found {len(cinemas)} cinemas, start crawling details …")
        self.progress_tracker.add_task(CRAWL_SHOWTIMES_PROGRESS_PLACEHOLDER_KEY, len(cinemas) * 10)
        context.current_task = "crawl_cinema_details"
        return await self.map(cinemas, context, self.crawl_cinema_details)

    async def crawl_cinema_details(self, cinema: Cinema, context: Context) -> Cinema:
        """Fetch a cinema's details page and merge the details into ``cinema``."""
        details_config = self.config.cinemas_config.details
        with context.callstack_frame("crawl_cinema_details"):
            context.resource = Resource.CINEMA_DETAILS
            context.cinema = cinema
            request = evaluate_request_object(details_config.request_object(), context)
            response = await self.transport.send(request, context)
            handler = self.response_parser_for(Resource.CINEMA_DETAILS, details_config)
            details = await handler(response, context)
            if details:
                cinema.merge(details)
            return cinema

    async def crawl_showtimes_for_cinema(self, cinema: Union[Cinema, Dict[str, Any]]) -> CrawlOutput:
        """Crawl and save the showtimes of a single cinema."""
        context = Context()
        context.cinema = cinema if isinstance(cinema, Cinema) else Cinema.model_validate(cinema)
        return await self.work_on_cinema(context)

    async def work_on_cinema(self, context: Context) -> CrawlOutput:
        with context.callstack_frame("work_on_cinema"):
            context.warnings = []
            self.progress_tracker.increase_total_steps_by("process_result", 1)
            showtimes_configs = self.config.applicable_showtimes_configs()

            movies = await self.get_movies(context)
            context.current_task = "get_showtimes_for_movie"

            async def for_movie(movie: Optional[Movie], movie_context: Context) -> List[Any]:
                if movie is not None:
                    movie_context.movie = movie
                    movie_context.version = movie.version
                date_pages = await self.get_dates(movie_context)
                movie_context.current_task = "get_showtimes_for_date"

                async def for_date_page(date_page: Optional[DatePage], date_context: Context) -> List[Showtime]:
                    if date_page is not None:
                        date_context.date = date_page.date
                        date_context.date_href = date_page.href
                    if not showtimes_configs:
                        return []
                    return await self.get_showtimes(date_context, showtimes_configs)

                return await self.map_series(date_pages, movie_context, for_date_page)

            showtimes_per_movie = await self.map_series(movies, context, for_movie)
            showtimes = union_by_identity(compact(flatten(showtimes_per_movie)))

            result = CrawlOutput(
                crawler=self.config.crawler,
                cinema=context.cinema,
                showtimes=showtimes,
            )
            result = await self.process_result(result, context)
            self.progress_tracker.increase_completed_steps("process_result")
            return result

    async def process_result(self, result: CrawlOutput, context: Context) -> CrawlOutput:
        """Apply the before-save hook, report warnings and save the result."""
        with context.callstack_frame("process_result"):
            logger.debug(f"result {result.model_dump_json(indent=2)}")

            if self.config.hooks.before_save:
                hooked = await maybe_await(self.config.hooks.before_save(result, context))
                if isinstance(hooked, dict):
                    hooked = CrawlOutput.model_validate(hooked)
                result = hooked or result

            collected = [
                w if isinstance(w, CrawlWarning) else CrawlWarning.model_validate(w)
                for w in context.warnings
            ]
            groups = group_warnings(collected + validate(result, context), self.config.accepted_warnings)
            if groups["print"]:
                logger.warning(f"W A R N I N G S for {self._cinema_label(result.cinema)}:")
            print_warnings(groups)

            if context.is_temporarily_closed and result.cinema is not None:
                result.cinema.is_temporarily_closed = True

            path = await self.file_writer.save_file(result, context)
            self.files_written.append(path)
            return result

    async def get_movies(self, context: Context) -> List[Optional[Movie]]:
        if self.config.movies is None:
            # no movie pages: iterate once with a placeholder
            return [None]
        with context.callstack_frame("get_movies"):
            context.current_task = "get_movies"
            return await self.work_on_request_lists(
                self.config.movies.list,
                context,
                self.crawl_movie_list,
            )

    async def crawl_movie_list(self, request: RequestObject, context: Context) -> List[Movie]:
        handler = self.response_parser_for(Resource.MOVIE_LIST, self.config.movies.list)
        return await self.crawl_list(request, Resource.MOVIE_LIST, handler, context)

    async def get_dates(self, context: Context) -> List[Optional[DatePage]]:
        if self.config.dates is None:
            # no date pages: iterate once with a placeholder
            return [None]
        with context.callstack_frame("get_dates"):
            context.current_task = "get_dates"
            return await self.work_on_request_lists(
                self.config.dates.list,
                context,
                self.crawl_date_list,
            )

    async def crawl_date_list(self, request: RequestObject, context: Context) -> List[DatePage]:
        handler = self.response_parser_for(Resource.DATE_LIST, self.config.dates.list)
        return await self.crawl_list(request, Resource.DATE_LIST, handler, context)

    async def crawl_list(
        self,
        request: RequestObject,
        resource: Resource,
        handler: ResponseHandler,
        context: Context,
    ) -> List[Any]:
        """
        Fetch a list, following next-page links until a page has none.

        The page counter lives on ``context`` so the whole chain sees it; each
        request is templated and sent with its own clone. The items of all
        pages are unioned into the result bucket of ``resource``.
        """
        bucket = RESULT_BUCKETS.get(resource)
        if bucket is None:
            raise ValueError(f"unsupported resource: {resource}")

        with context.callstack_frame(f"crawl_list:{resource.value}"):
            context.resource = resource
            context.indexes.setdefault("page", 0)
            request_context = clone_context(context)
            request = evaluate_request_object(request, request_context)

            response = await self.transport.send(request, request_context)
            items, next_page_url = await handler(response, request_context)

            if next_page_url:
                context.indexes["page"] += 1
                logger.debug(f"following page {context.indexes['page']} of {resource.value}: {next_page_url}")
                next_items = await self.crawl_list(RequestObject(url=next_page_url), resource, handler, context)
                items = union_by_identity(items, flatten(next_items))

            items = flatten(items)
            self.results.union(bucket, items)
            logger.debug(f"{bucket}:result {len(items)} items from {request.url}")
            return items

    async def get_showtimes(self, context: Context, configs: Sequence[ShowtimesCrawlingConfig]) -> List[Showtime]:
        context.current_task = "get_showtimes"
        showtimes = await self.map_series(configs, context, self.crawl_showtimes)
        return compact(flatten(showtimes))

    async def crawl_showtimes(self, config: ShowtimesCrawlingConfig, context: Context) -> List[Showtime]:
        with context.callstack_frame("crawl_showtimes"):
            context.resource = Resource.SHOWTIMES
            context.current_task = "crawl_showtimes"

            async def crawl(request: RequestObject, request_context: Context) -> List[Showtime]:
                return await self.crawl_showtimes_list(request, config, request_context)

            return await self.work_on_request_lists(config, context, crawl)

    async def work_on_request_lists(
        self,
        list_config: ListConfig,
        context: Context,
        iterator: RequestIterator,
    ) -> List[Any]:
        """
        Run ``iterator`` for every request of ``list_config``.

        Requests with a ``:date:`` marker (in the URL or the payload) are
        expanded into one request per day, requests with a ``:page(…):``
        marker into one request per listed page. All results are flattened
        into one list.
        """
        with context.callstack_frame("work_on_request_lists"):
            async def per_request(request: RequestObject, request_context: Context) -> Any:
                if has_date_marker(request):
                    return await self.iterate_dates(
                        list_config, request_context, lambda ctx: iterator(request, ctx)
                    )
                if has_page_marker(request):
                    return await self.iterate_pages(
                        request, request_context, lambda ctx: iterator(request, ctx)
                    )
                return await iterator(request, request_context)

            lists = await self.map_series(list_config.request_objects(), context, per_request)
            return flatten(lists)

    async def iterate_dates(
        self,
        list_config: ListConfig,
        context: Context,
        iterator: Callable[[Context], Awaitable[Any]],
    ) -> List[Any]:
        with context.callstack_frame("iterate_dates"):
            count = list_config.url_date_count or self.settings.url_date_count
            today = self.today()
            dates = [today + timedelta(days=offset) for offset in range(count)]

            async def per_date(day: date, date_context: Context) -> Any:
                date_context.date = day
                if list_config.url_date_format:
                    date_context.date_format = list_config.url_date_format
                return await iterator(date_context)

            return await self.map(dates, context, per_date)

    async def iterate_pages(
        self,
        request: RequestObject,
        context: Context,
        iterator: Callable[[Context], Awaitable[Any]],
    ) -> List[Any]:
        with context.callstack_frame("iterate_pages"):
            pages = parse_static_pages(request.url) or parse_static_pages(request.post_data) or []

            async def per_page(indexed_page: Tuple[int, str], page_context: Context) -> Any:
                index, page = indexed_page
                page_context.page = page
                page_context.indexes["page"] = index
                return await iterator(page_context)

            return await self.map(list(enumerate(pages)), context, per_page)

    async def crawl_showtimes_list(
        self,
        request: RequestObject,
        config: ShowtimesCrawlingConfig,
        context: Context,
    ) -> List[Showtime]:
        """Crawl one (possibly paginated) showtimes list, retried as a whole."""
        with context.callstack_frame("crawl_showtimes_list"):
            template_context = clone_context(context)
            template_context.date_format = config.url_date_format
            request = evaluate_request_object(request, template_context)
            handler = self.response_parser_for(Resource.SHOWTIMES, config)
            first_page = context.indexes.get("page", 0)

            async def attempt() -> List[Showtime]:
                context.indexes["page"] = first_page
                showtimes = await self.crawl_list(request, Resource.SHOWTIMES, handler, context)
                if not config.preserve_late_night_shows and showtimes:
                    self.adjust_late_night_showtimes(showtimes)
                return showtimes

            return await utils.retry(
                f"showtimes crawling from {request.url}",
                logger,
                attempt,
                times=self.settings.max_retries,
                interval=self.settings.retry_interval,
                backoff=self.settings.retry_backoff,
            )

    def adjust_late_night_showtimes(self, showtimes: List[Showtime]) -> None:
        """
        Move showtimes before 06:00 to the next day.

        Websites list late night shows under the previous day's program.
        """
        for showtime in showtimes:
            if showtime.start_at is not None and showtime.start_at.hour < LATE_NIGHT_HOUR:
                showtime.start_at = showtime.start_at + timedelta(days=1)

    def response_parser_for(self, resource: Resource, parser_config: ParserConfig) -> ResponseHandler:
        """The hook configured for ``resource``, else the default handler."""
        hook = getattr(self.config.hooks, HANDLER_HOOKS[resource])
        default = getattr(self.response_parser, HANDLER_HOOKS[resource])

        async def handler(response: Response, context: Context) -> Any:
            try:
                if hook is not None:
                    value = await maybe_await(hook(response, context))
                else:
                    value = await maybe_await(default(response, parser_config, context))
                if resource is Resource.CINEMA_DETAILS:
                    if value is None:
                        return {}
                    if isinstance(value, BaseModel):
                        value = value.model_dump(exclude_unset=True)
                    if not isinstance(value, dict):
                        raise TypeError(f"details handler must return a dict, got {type(value).__name__}")
                    return value
                items, next_page_url = value if isinstance(value, tuple) else (value, None)
                model = ITEM_MODELS[resource]
                items = [model.model_validate(item) if isinstance(item, dict) else item for item in items or []]
            except CrawlError:
                raise
            except Exception as exc:
                raise ResponseParseError(resource.value, response.url, f"{type(exc).__name__}: {exc}") from exc
            return items, next_page_url

        return handler

    # Helpers

    def build_filename(self, data: Dict[str, Any], context: Context) -> str:
        cinema = data.get("cinema") or {}
        crawler_id = self.config.crawler.id
        if self.config.hooks.build_filename:
            return self.config.hooks.build_filename(cinema, crawler_id, context)
        parts = [crawler_id, cinema.get("slug") or cinema.get("id")]
        return "_".join(str(part) for part in parts if part not in (None, "")) + ".json"

    @staticmethod
    def _cinema_label(cinema: Optional[Cinema]) -> str:
        if cinema is None:
            return "unknown cinema"
        return str(cinema.name or cinema.slug or cinema.id)

    async def map(self, items: Sequence[Any], context: Context, iterator: utils.MappingIterator) -> List[Any]:
        return await self.map_limit(items, self.concurrency, context, iterator)

    async def map_series(self, items: Sequence[Any], context: Context, iterator: utils.MappingIterator) -> List[Any]:
        return await self.map_limit(items, 1, context, iterator)

    async def map_limit(
        self,
        items: Sequence[Any],
        limit: int,
        context: Context,
        iterator: utils.MappingIterator,
    ) -> List[Any]:
        """Concurrency-limited mapping with progress accounting under the current task."""
        items = utils.limit_list(items, self.settings.list_limit)
        progress_key = context.current_task or "default"
        self.progress_tracker.increase_total_steps_by(progress_key, len(items))

        async def tracked(item: Any, item_context: Context) -> Any:
            try:
                return await iterator(item, item_context)
            finally:
                self.progress_tracker.increase_completed_steps(progress_key)

        return await utils.map_limit(items, limit, context, tracked, list_limit=self.settings.list_limit)
