from datetime import date

import pytest

from showtime_crawler.context import MAX_CALLSTACK_DEPTH
from showtime_crawler.context import Context
from showtime_crawler.context import Resource
from showtime_crawler.context import clone_context
from showtime_crawler.exceptions import CallstackError
from showtime_crawler.models import Cinema
from showtime_crawler.models import Movie


def test_clone_inherits_fields_and_links_parent():
    """A clone starts with the parent's values and points back to it."""
    parent = Context()
    parent.cinema = Cinema(id=1, name="Odeon")
    parent.resource = Resource.SHOWTIMES
    parent.page = "2"

    child = clone_context(parent)

    assert child.parent_context is parent
    assert child.cinema is parent.cinema
    assert child.resource is Resource.SHOWTIMES
    assert child.page == "2"


def test_clone_owns_indexes_and_callstack():
    """Mutating a clone's indexes or callstack leaves the parent untouched."""
    parent = Context()
    parent.indexes["page"] = 1
    parent.push_callstack("crawl")

    child = parent.clone()
    child.indexes["page"] = 5
    child.push_callstack("crawl_list")

    assert parent.indexes == {"page": 1}
    assert parent.callstack == ["crawl"]
    assert child.callstack == ["crawl", "crawl_list"]


def test_warnings_are_shared_with_clones():
    parent = Context()
    child = parent.clone().clone()

    child.add_warning("late")

    assert parent.warnings == ["late"]


def test_sibling_clones_do_not_see_each_other():
    parent = Context()
    first = parent.clone()
    second = parent.clone()

    first.page = "1"
    first.date = date(2024, 5, 4)
    first.movie = Movie(title="Alien")
    second.page = "2"
    second.date = date(2024, 5, 5)
    second.movie = Movie(title="Heat")

    assert parent.page is None
    assert parent.date is None
    assert parent.movie is None
    assert (first.page, first.date, first.movie.title) == ("1", date(2024, 5, 4), "Alien")
    assert (second.page, second.date, second.movie.title) == ("2", date(2024, 5, 5), "Heat")


def test_parent_changes_after_cloning_do_not_reach_the_child():
    parent = Context()
    parent.date = date(2024, 5, 4)
    parent.movie = Movie(title="Alien")
    child = parent.clone()

    parent.page = "9"
    parent.date = date(2024, 6, 1)
    parent.movie = Movie(title="Heat")

    assert child.page is None
    assert child.date == date(2024, 5, 4)
    assert child.movie.title == "Alien"

    child.date = date(2024, 7, 1)
    child.movie = None
    assert parent.date == date(2024, 6, 1)
    assert parent.movie.title == "Heat"


def test_callstack_frame_pops_on_error():
    context = Context()

    with pytest.raises(RuntimeError):
        with context.callstack_frame("boom"):
            assert context.callstack == ["boom"]
            raise RuntimeError("failure")

    assert context.callstack == []


def test_pop_on_empty_callstack_raises():
    with pytest.raises(CallstackError):
        Context().pop_callstack()


def test_callstack_overflow_is_detected():
    context = Context()
    for i in range(MAX_CALLSTACK_DEPTH):
        context.push_callstack(f"frame-{i}")

    with pytest.raises(CallstackError):
        context.push_callstack("one too many")


def test_track_callstack_pops_exactly_once():
    context = Context()
    calls = []

    callback = context.track_callstack_async(lambda value: calls.append(value), "on_done")
    assert context.callstack == ["on_done"]

    callback(1)
    callback(2)

    assert calls == [1, 2]
    assert context.callstack == []


def test_track_callstack_pops_before_failing_callback():
    context = Context()

    def failing():
        raise ValueError("broken callback")

    callback = context.track_callstack_async(failing)
    with pytest.raises(ValueError):
        callback()

    assert context.callstack == []


@pytest.mark.asyncio
async def test_track_callstack_async_coroutine_callback():
    context = Context()

    async def fetch(value):
        assert context.callstack == ["fetch"]
        return value * 2

    callback = context.track_callstack_async(fetch)
    assert await callback(21) == 42
    assert context.callstack == []
