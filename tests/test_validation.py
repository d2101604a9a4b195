from datetime import datetime

from showtime_crawler.context import Context
from showtime_crawler.models import Cinema
from showtime_crawler.models import CrawlerInfo
from showtime_crawler.models import CrawlOutput
from showtime_crawler.models import Showtime
from showtime_crawler.validation import DUPLICATE_SHOWTIMES
from showtime_crawler.validation import MISSING_CINEMA_NAME
from showtime_crawler.validation import MISSING_MOVIE_TITLE
from showtime_crawler.validation import NO_SHOWTIMES
from showtime_crawler.validation import CrawlWarning
from showtime_crawler.validation import group_warnings
from showtime_crawler.validation import validate


def make_output(showtimes, cinema=None):
    return CrawlOutput(
        crawler=CrawlerInfo(id="kino-example"),
        cinema=cinema or Cinema(id=1, name="Odeon"),
        showtimes=showtimes,
    )


def test_valid_result_has_no_warnings():
    output = make_output([Showtime(movie_title="Alien", start_at=datetime(2024, 5, 4, 20, 0))])

    assert validate(output, Context()) == []


def test_empty_result_and_missing_names():
    output = make_output([], cinema=Cinema(id=1))

    codes = [w.code for w in validate(output, Context())]

    assert codes == [NO_SHOWTIMES, MISSING_CINEMA_NAME]


def test_missing_titles_and_duplicates():
    start = datetime(2024, 5, 4, 20, 0)
    output = make_output([
        Showtime(movie_title="Alien", start_at=start),
        Showtime(movie_title="Alien", start_at=start),
        Showtime(start_at=start),
    ])

    codes = {w.code for w in validate(output, Context())}

    assert codes == {MISSING_MOVIE_TITLE, DUPLICATE_SHOWTIMES}


def test_group_warnings_dedupes_and_splits_accepted():
    warnings = [
        CrawlWarning(code=NO_SHOWTIMES, title="No showtimes found"),
        CrawlWarning(code=NO_SHOWTIMES, title="No showtimes found again"),
        CrawlWarning(code=MISSING_CINEMA_NAME, title="Cinema without name"),
    ]

    groups = group_warnings(warnings, {NO_SHOWTIMES: "closed for summer"})

    assert [w.code for w in groups["print"]] == [MISSING_CINEMA_NAME]
    assert len(groups["accepted"]) == 1
    accepted = groups["accepted"][0]
    assert accepted.title == "No showtimes found"
    assert accepted.accepted_reason == "closed for summer"
    assert "accepted: closed for summer" in accepted.format()


def test_same_start_in_different_auditoria_is_no_duplicate():
    start = datetime(2024, 5, 4, 20, 0)
    output = make_output([
        Showtime(movie_title="Alien", start_at=start, auditorium="Saal 1"),
        Showtime(movie_title="Alien", start_at=start, auditorium="Saal 2"),
    ])

    assert validate(output, Context()) == []
