"""
Transport layer: how requests reach the websites.

One interface (Transport) with strategies stacked as decorators:

- HttpTransport: aiohttp requests with retries, proxy and rotating headers
- CachingTransport: answers repeated identical requests from memory
- ReplayTransport: records responses into SQLite and replays them on later
  runs, so crawler development does not hammer the websites

build_transport() picks the stack from the run settings.
"""

import asyncio
import json
import logging
import random
from abc import ABC
from abc import abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import Dict
from typing import Optional

import aiohttp
import aiosqlite

from showtime_crawler.config import CrawlConfig
from showtime_crawler.config import Hooks
from showtime_crawler.context import Context
from showtime_crawler.exceptions import TransportError
from showtime_crawler.models import RequestObject
from showtime_crawler.models import Response
from showtime_crawler.settings import Settings
from showtime_crawler.utils import maybe_await
from showtime_crawler.utils import retry

logger = logging.getLogger(__name__)

DESKTOP_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/118.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:118.0) Gecko/20100101 Firefox/118.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 13_5) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.6 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/117.0 Safari/537.36",
]


class Transport(ABC):
    """Sends requests on behalf of the crawler."""

    @abstractmethod
    async def send(self, request: RequestObject, context: Context) -> Response:
        """Send ``request``; retries transient failures before raising."""

    async def get(self, url: str, context: Context) -> Response:
        return await self.send(RequestObject(url=url), context)

    async def post(self, url: str, data: Any, context: Context) -> Response:
        return await self.send(RequestObject(url=url, post_data=data), context)

    async def will_start_crawling(self) -> None:
        """Called once before the first request of a crawl."""

    async def did_finish_crawling(self) -> None:
        """Called once after the last request of a crawl."""


class HttpTransport(Transport):
    """
    aiohttp based transport.

    Every request is logged, retried on network errors and HTTP error
    statuses, and optionally tweaked by the ``configure_request`` and
    ``after_request`` hooks.
    """

    def __init__(
        self,
        settings: Settings,
        hooks: Optional[Hooks] = None,
        proxy_uri: Optional[str] = None,
        use_random_user_agent: Optional[bool] = None,
    ) -> None:
        self.settings = settings
        self.hooks = hooks or Hooks()
        self.proxy_uri = proxy_uri or settings.proxy_url
        self.use_random_user_agent = (
            settings.use_random_user_agent if use_random_user_agent is None else use_random_user_agent
        )
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout)
            )
        return self._session

    async def did_finish_crawling(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def rotate_headers(self) -> Dict[str, str]:
        ua = random.choice(DESKTOP_USER_AGENTS) if self.use_random_user_agent else self.settings.user_agent
        headers = {
            'User-Agent': ua,
            'Accept': random.choice([
                'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
                'text/html,application/xml;q=0.9,*/*;q=0.8'
            ]),
            'Accept-Language': 'en-US,en;q=0.9,de;q=0.8',
            'Cache-Control': 'no-cache',
            'DNT': '1',
        }
        return {k: v for k, v in headers.items() if v}

    def build_request_kwargs(self, request: RequestObject) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"headers": self.rotate_headers()}
        if self.proxy_uri:
            logger.debug(f"request via proxy {self.proxy_uri}")
            kwargs["proxy"] = self.proxy_uri
        if isinstance(request.post_data, (dict, list)):
            kwargs["json"] = request.post_data
        elif request.post_data is not None:
            kwargs["data"] = request.post_data
        return kwargs

    async def send(self, request: RequestObject, context: Context) -> Response:
        context.request_url = request.url
        description = f"requesting {request.describe()}"
        logger.info(f"{description} …")

        async def attempt() -> Response:
            return await self._send_once(request, context)

        with context.callstack_frame("HttpTransport.send"):
            return await retry(
                description,
                logger,
                attempt,
                times=self.settings.max_retries,
                interval=self.settings.retry_interval,
                backoff=self.settings.retry_backoff,
            )

    async def _send_once(self, request: RequestObject, context: Context) -> Response:
        session = await self._get_session()
        method = "POST" if request.post_data is not None else "GET"
        kwargs = self.build_request_kwargs(request)
        if self.hooks.configure_request:
            kwargs = await maybe_await(self.hooks.configure_request(kwargs, context)) or kwargs

        response: Optional[Response] = None
        error: Optional[TransportError] = None
        try:
            async with session.request(method, request.url, **kwargs) as resp:
                text = await resp.text()
                response = Response(
                    url=str(resp.url),
                    status=resp.status,
                    text=text,
                    headers={k: v for k, v in resp.headers.items()},
                )
                if resp.status >= 400:
                    error = TransportError(request.url, f"HTTP {resp.status}", status=resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = TransportError(request.url, f"{type(e).__name__}: {e}")

        if self.hooks.after_request:
            return await maybe_await(self.hooks.after_request(request, context, error, response))
        if error is not None:
            raise error
        return response


class CachingTransport(Transport):
    """Sends each distinct request (url + payload) only once per run."""

    def __init__(self, inner: Transport) -> None:
        self.inner = inner
        self._cache: Dict[str, Response] = {}

    async def send(self, request: RequestObject, context: Context) -> Response:
        key = request.cache_key
        if key in self._cache:
            logger.info(f"using cached response for {request.describe()}")
            context.request_url = request.url
            return self._cache[key]
        response = await self.inner.send(request, context)
        self._cache[key] = response
        return response

    async def will_start_crawling(self) -> None:
        await self.inner.will_start_crawling()

    async def did_finish_crawling(self) -> None:
        await self.inner.did_finish_crawling()


class ReplayTransport(Transport):
    """
    Records responses into ``<cache_dir>/<name>.sqlite`` and replays them.

    Requests not found in the recording are sent through ``inner`` and added
    to it, so a recording grows as the crawler configuration evolves.
    """

    def __init__(self, inner: Transport, cache_dir: Path, name: str) -> None:
        self.inner = inner
        self.db_path = Path(cache_dir) / f"{name}.sqlite"
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.recorded = 0
        self.replayed = 0

    async def will_start_crawling(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        existed = self.db_path.exists()
        async with self._lock:
            self._connection = await aiosqlite.connect(self.db_path)
            await self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS responses (
                    cache_key TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    status INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    headers TEXT,
                    recorded_at TIMESTAMP
                );
                """
            )
            await self._connection.commit()
        if existed:
            logger.info(f"Using cached requests from {self.db_path}")
        else:
            logger.info(f"Start recording requests into {self.db_path}")
        await self.inner.will_start_crawling()

    async def did_finish_crawling(self) -> None:
        async with self._lock:
            if self._connection is not None:
                await self._connection.commit()
                await self._connection.close()
                self._connection = None
        logger.info(f"Saved recorded requests: {self.db_path} (recorded={self.recorded}, replayed={self.replayed})")
        await self.inner.did_finish_crawling()

    async def _lookup(self, key: str) -> Optional[Response]:
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT url, status, text, headers FROM responses WHERE cache_key = ?",
                (key,)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Response(url=row[0], status=row[1], text=row[2], headers=json.loads(row[3] or "{}"))

    async def _record(self, key: str, response: Response) -> None:
        async with self._lock:
            await self._connection.execute(
                "REPLACE INTO responses (cache_key, url, status, text, headers, recorded_at) VALUES (?, ?, ?, ?, ?, ?)",
                (key, response.url, response.status, response.text, json.dumps(response.headers), datetime.now().isoformat())
            )
            await self._connection.commit()

    async def send(self, request: RequestObject, context: Context) -> Response:
        if self._connection is None:
            raise RuntimeError("ReplayTransport.will_start_crawling() must be called before sending requests")
        key = request.cache_key
        cached = await self._lookup(key)
        if cached is not None:
            logger.debug(f"replaying {request.describe()}")
            context.request_url = request.url
            self.replayed += 1
            return cached
        response = await self.inner.send(request, context)
        await self._record(key, response)
        self.recorded += 1
        return response


def build_transport(settings: Settings, config: CrawlConfig) -> Transport:
    """The default transport stack for a crawl."""
    http = HttpTransport(
        settings,
        hooks=config.hooks,
        proxy_uri=config.proxy_uri,
        use_random_user_agent=config.use_random_user_agent,
    )
    if settings.cache_dir is not None:
        return ReplayTransport(http, settings.cache_dir, config.crawler.id)
    return CachingTransport(http)
