from datetime import date

from showtime_crawler.context import Context
from showtime_crawler.models import Cinema
from showtime_crawler.models import Movie
from showtime_crawler.models import RequestObject
from showtime_crawler.templating import evaluate_request_object
from showtime_crawler.templating import evaluate_template
from showtime_crawler.templating import has_date_marker
from showtime_crawler.templating import has_page_marker
from showtime_crawler.templating import parse_static_pages


def make_context(**values) -> Context:
    context = Context()
    for key, value in values.items():
        setattr(context, key, value)
    return context


def test_date_marker_uses_default_format():
    context = make_context(date=date(2024, 3, 9))

    assert evaluate_template("https://kino.example/program/:date:", context) == "https://kino.example/program/2024-03-09"


def test_date_marker_uses_context_format():
    context = make_context(date=date(2024, 3, 9), date_format="%d.%m.%Y")

    assert evaluate_template("/day/:date:", context) == "/day/09.03.2024"


def test_page_markers():
    context = make_context(page="3")

    assert evaluate_template("/list?p=:page(1,2,3):", context) == "/list?p=3"
    assert evaluate_template("/list/:page:", context) == "/list/3"


def test_cinema_and_movie_attributes():
    context = make_context(
        cinema=Cinema(id=7, slug="odeon"),
        movie=Movie(id="m1", title="Alien", href="https://kino.example/movies/alien"),
    )

    assert evaluate_template(":movie.href:", context) == "https://kino.example/movies/alien"
    assert evaluate_template("/cinemas/:cinema.slug:/movies/:movie.id:", context) == "/cinemas/odeon/movies/m1"
    assert evaluate_template("/x/:cinema.phone:", context) == "/x/"


def test_unresolved_markers_stay_when_context_is_empty():
    assert evaluate_template("/program/:date:", Context()) == "/program/:date:"


def test_marker_detection_checks_url_and_payload():
    assert has_date_marker(RequestObject(url="/program/:date:"))
    assert has_date_marker(RequestObject(url="/program", post_data={"day": ":date:"}))
    assert not has_date_marker(RequestObject(url="/program"))

    assert has_page_marker(RequestObject(url="/list?p=:page(1,2):"))
    assert has_page_marker(RequestObject(url="/list", post_data={"page": ":page(1,2):"}))
    assert not has_page_marker(RequestObject(url="/list/:page:"))


def test_parse_static_pages():
    assert parse_static_pages("/list?p=:page(1, 2,3):") == ["1", "2", "3"]
    assert parse_static_pages({"page": ":page(a,b):"}) == ["a", "b"]
    assert parse_static_pages("/list") is None
    assert parse_static_pages(None) is None


def test_evaluate_request_object_resolves_nested_payload():
    context = make_context(date=date(2024, 1, 31), cinema=Cinema(id=42))
    request = RequestObject(
        url="https://kino.example/api",
        post_data={"cinema": ":cinema.id:", "days": [":date:"], "limit": 50},
    )

    concrete = evaluate_request_object(request, context)

    assert concrete.post_data == {"cinema": "42", "days": ["2024-01-31"], "limit": 50}
    assert request.post_data["days"] == [":date:"]
