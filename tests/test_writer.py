import asyncio
import json
from datetime import datetime

import pytest

from showtime_crawler import __version__
from showtime_crawler.context import Context
from showtime_crawler.models import Cinema
from showtime_crawler.models import CrawlerInfo
from showtime_crawler.models import CrawlOutput
from showtime_crawler.models import Showtime
from showtime_crawler.writer import JsonFileWriter

pytestmark = pytest.mark.asyncio


async def test_save_file_adds_framework_version(tmp_path):
    writer = JsonFileWriter(tmp_path / "out")
    output = CrawlOutput(
        crawler=CrawlerInfo(id="kino-example"),
        cinema=Cinema(id=1, name="Odeon"),
        showtimes=[Showtime(movie_title="Alien", start_at=datetime(2024, 5, 4, 20, 15))],
    )

    path = await writer.save_file(output, Context())

    assert path == tmp_path / "out" / "kino-example.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["crawler"]["showtime-crawler"] == {"version": __version__}
    assert data["crawler"]["is_booking_link_capable"] is False
    assert data["cinema"] == {"id": 1, "name": "Odeon"}
    assert data["showtimes"] == [{"movie_title": "Alien", "start_at": "2024-05-04T20:15:00"}]


async def test_file_name_builder_is_lower_cased(tmp_path):
    writer = JsonFileWriter(tmp_path, lambda data, context: f"{data['crawler']['id']}_ODEON.JSON")

    path = await writer.save_file({"crawler": {"id": "Kino"}, "cinema": None}, Context())

    assert path.name == "kino_odeon.json"


async def test_save_file_keeps_callstack_balanced(tmp_path):
    context = Context()
    context.push_callstack("process_result")

    await JsonFileWriter(tmp_path).save_file({"crawler": {"id": "kino"}}, context)

    assert context.callstack == ["process_result"]


async def test_non_ascii_is_written_verbatim(tmp_path):
    path = await JsonFileWriter(tmp_path).save_file(
        {"crawler": {"id": "kino"}, "cinema": {"name": "Kino Über"}}, Context()
    )

    assert "Kino Über" in path.read_text(encoding="utf-8")


async def test_concurrent_saves_write_every_file(tmp_path):
    writer = JsonFileWriter(tmp_path)
    documents = [{"crawler": {"id": f"kino-{n}"}, "showtimes": []} for n in range(3)]

    paths = await asyncio.gather(*(writer.save_file(doc, Context()) for doc in documents))

    assert [p.name for p in paths] == ["kino-0.json", "kino-1.json", "kino-2.json"]
    assert all(json.loads(p.read_text(encoding="utf-8"))["showtimes"] == [] for p in paths)
