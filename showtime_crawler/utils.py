"""
Control-flow and list helpers shared by the crawler components.

- map_limit / map_series: ordered, concurrency-limited mapping that hands
  every iteration its own cloned Context
- retry: re-run a failing coroutine with backoff, logging every attempt
- identity-based union and the result buckets built on it
"""

import asyncio
import inspect
import logging
import re
import sys
from pathlib import Path
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Type
from typing import TypeVar

from showtime_crawler.context import Context
from showtime_crawler.context import clone_context
from showtime_crawler.exceptions import TransportError

T = TypeVar("T")
R = TypeVar("R")

MappingIterator = Callable[[Any, Context], Awaitable[Any]]


async def maybe_await(value: Any) -> Any:
    """Resolve hook results that may or may not be awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


def flatten(items: Iterable[Any]) -> List[Any]:
    """Flatten nested lists and tuples into a single list."""
    result: List[Any] = []
    for item in items:
        if isinstance(item, (list, tuple)):
            result.extend(flatten(item))
        else:
            result.append(item)
    return result


def compact(items: Iterable[Any]) -> List[Any]:
    """Drop ``None`` entries."""
    return [item for item in items if item is not None]


def union_by_identity(*lists: Optional[Iterable[Any]]) -> List[Any]:
    """Concatenate lists keeping the first occurrence of every object."""
    seen = set()
    result = []
    for items in lists:
        for item in items or []:
            if id(item) in seen:
                continue
            seen.add(id(item))
            result.append(item)
    return result


class ResultBuckets:
    """Cumulative crawl results per resource kind, deduplicated by identity."""

    KEYS = ("cinemas", "movies", "date_pages", "showtimes")

    def __init__(self) -> None:
        self._buckets: Dict[str, List[Any]] = {key: [] for key in self.KEYS}

    def union(self, key: str, items: Iterable[Any]) -> List[Any]:
        if key not in self._buckets:
            raise KeyError(f"unknown result bucket: {key}")
        self._buckets[key] = union_by_identity(self._buckets[key], items)
        return self._buckets[key]

    def __getitem__(self, key: str) -> List[Any]:
        return self._buckets[key]

    def sizes(self) -> Dict[str, int]:
        return {key: len(items) for key, items in self._buckets.items()}


def limit_list(items: Sequence[T], list_limit: Optional[int] = None) -> List[T]:
    """
    Truncate ``items`` to the first ``list_limit`` elements.

    Used during development to cut down crawl time (e.g. only the first
    cinema). Without a limit the list is returned in full.
    """
    items = list(items)
    if list_limit is None:
        return items
    return items[:list_limit]


async def map_limit(
    items: Sequence[T],
    limit: int,
    context: Context,
    iterator: MappingIterator,
    *,
    list_limit: Optional[int] = None,
) -> List[Any]:
    """
    Map ``items`` through ``iterator`` running at most ``limit`` at a time.

    Every call gets a fresh clone of ``context``. Results are returned in
    input order.

    After the first error no further item is started: iterations that were
    already running when it was raised run to completion (their results are
    discarded), items not yet picked up by a worker never run. The first
    error is raised once all running iterations have settled.
    """
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")

    items = limit_list(items, list_limit)
    results: List[Any] = [None] * len(items)
    pending = iter(range(len(items)))
    errors: List[BaseException] = []

    async def worker() -> None:
        for index in pending:
            if errors:
                return
            try:
                results[index] = await iterator(items[index], clone_context(context))
            except Exception as exc:
                errors.append(exc)
                return

    workers = [worker() for _ in range(min(limit, len(items)))]
    await asyncio.gather(*workers)

    if errors:
        raise errors[0]
    return results


async def map_series(
    items: Sequence[T],
    context: Context,
    iterator: MappingIterator,
    *,
    list_limit: Optional[int] = None,
) -> List[Any]:
    """Same as map_limit but strictly one item after the other."""
    return await map_limit(items, 1, context, iterator, list_limit=list_limit)


async def retry(
    description: str,
    logger: logging.Logger,
    task: Callable[[], Awaitable[R]],
    *,
    times: int = 3,
    interval: float = 1.0,
    backoff: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
) -> R:
    """
    Await ``task()`` up to ``times`` times.

    Errors not listed in ``retry_on`` are raised immediately. Between
    attempts the delay grows from ``interval`` by ``backoff``.
    """
    attempt = 1
    while True:
        try:
            return await task()
        except retry_on as exc:
            if attempt >= times:
                logger.error(f"giving up after {attempt} attempts: {description}")
                raise
            attempt += 1
            logger.warning(f"retrying (attempt: {attempt}) {description} due to error: {exc}")
            delay = interval * (backoff ** (attempt - 2))
            if delay > 0:
                await asyncio.sleep(delay)


def is_link_tag_selector(selector: Optional[str]) -> bool:
    """Check whether a CSS selector addresses an html ``a`` tag."""
    if not selector:
        return False
    # consider only the last element of the selector
    selector = selector.split(" ")[-1]
    if re.search(r"\[href(.*)\]", selector):
        return True

    selector = re.sub(r"\[(.*)\]+", "", selector)
    selector = selector.split(".")[0]
    selector = selector.split(":")[0]
    return selector == "a"


def get_main_filename_base() -> str:
    """Base name (without extension) of the script that runs the crawler."""
    main = sys.modules.get("__main__")
    filename = getattr(main, "__file__", None)
    if not filename:
        return "crawler"
    return Path(filename).stem
