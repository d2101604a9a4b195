"""
Per-branch crawl state.

A Context travels through every step of a crawl. Whenever the pipeline fans
out over a list (cinemas, movies, dates, pages) each item gets its own clone,
so concurrent branches can set their date, page or movie without touching
their siblings.
"""

import functools
import inspect
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional

from showtime_crawler.exceptions import CallstackError

logger = logging.getLogger(__name__)

MAX_CALLSTACK_DEPTH = 200


class Resource(str, Enum):
    """Kinds of pages the crawler fetches. Each has its own response handler."""

    CINEMA_LIST = "cinema-list"
    CINEMA_DETAILS = "cinema-details"
    MOVIE_LIST = "movie-list"
    DATE_LIST = "date-list"
    SHOWTIMES = "showtimes"


class Context:
    """
    Parent-linked crawl state.

    Clones inherit every field of their parent. ``indexes`` and ``callstack``
    are copied so each branch owns them; ``warnings`` stays shared with the
    parent so that issues found deep inside a cinema's crawl reach the
    cinema's result.
    """

    def __init__(self, parent: Optional["Context"] = None) -> None:
        self.parent_context = parent
        if parent is None:
            self.cinema = None
            self.movie = None
            self.version: Optional[Dict[str, Any]] = None
            self.date = None
            self.date_href: Optional[str] = None
            self.page: Optional[str] = None
            self.indexes: Dict[str, int] = {}
            self.resource: Optional[Resource] = None
            self.current_task: Optional[str] = None
            self.request_url: Optional[str] = None
            self.date_format: Optional[str] = None
            self.is_temporarily_closed = False
            self.callstack: List[str] = []
            self.warnings: List[Any] = []
        else:
            self.cinema = parent.cinema
            self.movie = parent.movie
            self.version = parent.version
            self.date = parent.date
            self.date_href = parent.date_href
            self.page = parent.page
            self.indexes = dict(parent.indexes)
            self.resource = parent.resource
            self.current_task = parent.current_task
            self.request_url = parent.request_url
            self.date_format = parent.date_format
            self.is_temporarily_closed = parent.is_temporarily_closed
            self.callstack = list(parent.callstack)
            self.warnings = parent.warnings

    def clone(self) -> "Context":
        return Context(self)

    @property
    def depth(self) -> int:
        return len(self.callstack)

    def push_callstack(self, name: str = "anonymous") -> None:
        if len(self.callstack) >= MAX_CALLSTACK_DEPTH:
            raise CallstackError(
                f"call stack exceeded {MAX_CALLSTACK_DEPTH} frames: {' > '.join(self.callstack[-5:])}"
            )
        self.callstack.append(name)

    def pop_callstack(self) -> str:
        if not self.callstack:
            raise CallstackError("pop on empty call stack")
        return self.callstack.pop()

    @contextmanager
    def callstack_frame(self, name: str) -> Iterator["Context"]:
        """Keep ``name`` on the call stack while the block runs."""
        self.push_callstack(name)
        try:
            yield self
        finally:
            self.pop_callstack()

    def track_callstack_async(self, callback: Callable[..., Any], name: Optional[str] = None) -> Callable[..., Any]:
        """
        Push a frame now and return ``callback`` wrapped to pop it when fired.

        The frame is popped exactly once: on the first invocation, before the
        callback body runs, so an exception raised by the callback cannot
        leave the stack unbalanced. Coroutine functions are wrapped so the pop
        happens once the returned coroutine completes.
        """
        frame = name or getattr(callback, "__name__", "anonymous")
        self.push_callstack(frame)
        fired = False

        def release() -> None:
            nonlocal fired
            if fired:
                logger.debug(f"callback {frame} fired more than once")
                return
            fired = True
            self.pop_callstack()

        if inspect.iscoroutinefunction(callback):
            @functools.wraps(callback)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    return await callback(*args, **kwargs)
                finally:
                    release()

            return async_wrapper

        @functools.wraps(callback)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            release()
            return callback(*args, **kwargs)

        return wrapper

    def add_warning(self, warning: Any) -> None:
        self.warnings.append(warning)

    def __repr__(self) -> str:
        return (
            f"<Context task={self.current_task} resource={self.resource} "
            f"date={self.date} page={self.page} depth={self.depth}>"
        )


def clone_context(context: Context) -> Context:
    """Return a child of ``context`` owning its own mutable fields."""
    return context.clone()
