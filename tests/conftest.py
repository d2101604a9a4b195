from pathlib import Path
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

import pytest

from showtime_crawler.context import Context
from showtime_crawler.exceptions import TransportError
from showtime_crawler.models import RequestObject
from showtime_crawler.models import Response
from showtime_crawler.settings import Settings
from showtime_crawler.transport import Transport

Page = Union[str, Callable[[RequestObject], str], Exception]


class FakeTransport(Transport):
    """Serves canned pages keyed by URL and records every request."""

    def __init__(self, pages: Optional[Dict[str, Page]] = None) -> None:
        self.pages: Dict[str, Page] = dict(pages or {})
        self.requests: List[RequestObject] = []
        self.started = 0
        self.finished = 0

    async def send(self, request: RequestObject, context: Context) -> Response:
        self.requests.append(request)
        context.request_url = request.url
        page = self.pages.get(request.url)
        if page is None:
            raise TransportError(request.url, "HTTP 404", status=404)
        if isinstance(page, Exception):
            raise page
        if callable(page):
            page = page(request)
        return Response(url=request.url, status=200, text=page)

    async def will_start_crawling(self) -> None:
        self.started += 1

    async def did_finish_crawling(self) -> None:
        self.finished += 1

    @property
    def urls(self) -> List[str]:
        return [request.url for request in self.requests]


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings writing into a temporary directory, without retry delays."""
    return Settings(
        output_dir=tmp_path / "output",
        retry_interval=0.0,
        max_retries=3,
        use_random_user_agent=False,
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
