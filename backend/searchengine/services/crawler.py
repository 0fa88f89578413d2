import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from robotexclusionrulesparser import RobotExclusionRulesParser
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from searchengine.config import settings
from searchengine.models import Page, Site
from searchengine.services.extractor import ParsedPage, parse_page
from searchengine.services.lemma_finder import LemmaFinder
from searchengine.services.lemma_indexing import save_lemmas_with_retry
from searchengine.services.sites import is_under_base, mark_site_failed, touch_site

logger = logging.getLogger(__name__)

# Suppress per-request httpx logging (INFO:httpx:HTTP Request: GET ...)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

SKIP_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".svg", ".ico", ".webp",
    ".woff", ".woff2", ".ttf", ".eot",
    ".zip", ".rar", ".7z", ".tar", ".gz",
    ".mp3", ".wav", ".mp4", ".avi", ".webm", ".mov",
    ".css", ".js", ".json", ".csv",
    ".pdf",
}

SKIP_SCHEMES = ("mailto:", "tel:", "javascript:")


def request_headers() -> dict[str, str]:
    return {
        "User-Agent": settings.user_agent,
        "Referer": settings.referrer,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    }


def build_client(
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    max_connections: int = 10,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout if timeout is not None else settings.crawl_request_timeout_seconds,
        follow_redirects=True,
        http2=True,
        headers=request_headers(),
        transport=transport,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        ),
    )


def is_supported_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    content_type = content_type.lower()
    return content_type.startswith("text/") or "xml" in content_type


def normalize_url(url: str) -> str:
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return url
    path = parsed.path or "/"
    if path != "/":
        path = path.rstrip("/") or "/"
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}"


def url_path(url: str) -> str:
    return urlparse(url).path or "/"


@dataclass
class FetchedPage:
    url: str
    status_code: int
    content_type: str
    html: str


class SiteCrawler:
    """Crawls one site: every page task fetches a URL, stores it and then
    crawls all admissible links it found, returning only once they are done."""

    def __init__(
        self,
        site_id: int,
        root_url: str,
        session_factory: async_sessionmaker[AsyncSession],
        lemma_finder: LemmaFinder,
        should_stop: Callable[[], bool] = lambda: False,
        concurrency: int | None = None,
        delay_min_ms: int | None = None,
        delay_max_ms: int | None = None,
        respect_robots: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.site_id = site_id
        self.root_url = normalize_url(root_url)
        parsed = urlparse(self.root_url)
        self.domain = parsed.netloc
        self.scheme = parsed.scheme
        self.session_factory = session_factory
        self.lemma_finder = lemma_finder
        self.should_stop = should_stop
        if concurrency is None:
            concurrency = settings.crawl_concurrency
        if delay_min_ms is None:
            delay_min_ms = settings.crawl_delay_min_ms
        if delay_max_ms is None:
            delay_max_ms = settings.crawl_delay_max_ms
        if respect_robots is None:
            respect_robots = settings.crawl_respect_robots
        self.concurrency = max(concurrency, 1)
        self.delay_min = delay_min_ms / 1000.0
        self.delay_max = max(delay_max_ms, delay_min_ms) / 1000.0
        self.respect_robots = respect_robots
        self.transport = transport
        self.client: httpx.AsyncClient | None = None

        # Scoped to this run; claims happen without an await in between.
        self.visited: set[str] = set()
        self.saved: int = 0
        self.skipped: int = 0
        self.failed: int = 0
        self.robot_parser: RobotExclusionRulesParser | None = None
        self._semaphore = asyncio.Semaphore(self.concurrency)

    def summary(self) -> dict:
        return {
            "visited": len(self.visited),
            "saved": self.saved,
            "skipped": self.skipped,
            "failed": self.failed,
        }

    async def crawl(self) -> dict:
        async with build_client(
            transport=self.transport, max_connections=self.concurrency + 2
        ) as client:
            self.client = client
            if self.respect_robots:
                await self._load_robots()
            await self.crawl_url(self.root_url)
        self.client = None

        logger.info(
            "Crawl finished for %s: %d visited, %d saved, %d skipped, %d failed",
            self.root_url,
            len(self.visited),
            self.saved,
            self.skipped,
            self.failed,
        )
        return self.summary()

    def claim(self, url: str) -> bool:
        """Mark ``url`` visited; False if another task already claimed it."""
        if url in self.visited:
            return False
        self.visited.add(url)
        return True

    async def crawl_url(self, url: str) -> None:
        if self.should_stop():
            return
        url = normalize_url(url)
        if not self.claim(url):
            return

        try:
            async with self._semaphore:
                await asyncio.sleep(random.uniform(self.delay_min, self.delay_max))
                fetched, skip_reason = await self._fetch_page(url)

            if fetched is None:
                self.skipped += 1
                logger.debug("Skipped %s: %s", url, skip_reason)
                return
            if self.should_stop():
                return

            parsed = parse_page(fetched.html, fetched.url)
            await self._save_page(url, fetched, parsed)

            if self.should_stop():
                return
            links = [link for link in parsed.links if self.should_crawl(link)]
            if links:
                await asyncio.gather(*(self.crawl_url(link) for link in links))
        except Exception as exc:
            if self.should_stop():
                logger.debug("Error on %s while stopping: %s", url, exc)
                return
            self.failed += 1
            logger.exception("Failed to process page %s", url)
            await self._mark_failed(f"Page processing error: {exc}")

    async def _fetch_page(self, url: str) -> tuple[FetchedPage | None, str | None]:
        try:
            resp = await self.client.get(url)
        except httpx.TimeoutException:
            logger.warning("Timeout fetching %s", url)
            return None, "Timeout"
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Failed to fetch %s: %s", url, e)
            return None, str(e)[:100]

        if resp.status_code >= 400:
            logger.warning("Skipping %s: HTTP %s", url, resp.status_code)
            return None, f"HTTP {resp.status_code}"
        content_type = resp.headers.get("content-type", "")
        if not is_supported_content_type(content_type):
            return None, f"Unsupported content type ({content_type.split(';')[0].strip()})"

        return (
            FetchedPage(
                url=str(resp.url),
                status_code=resp.status_code,
                content_type=content_type,
                html=resp.text,
            ),
            None,
        )

    async def _save_page(self, url: str, fetched: FetchedPage, parsed: ParsedPage) -> None:
        path = url_path(url)
        async with self.session_factory() as db:
            site = await db.get(Site, self.site_id)
            if site is None:
                logger.warning("Site %s vanished while saving %s", self.site_id, url)
                return

            existing = await db.scalar(
                select(Page.id).where(Page.site_id == self.site_id, Page.path == path)
            )
            if existing is not None:
                return

            page = Page(
                site_id=self.site_id,
                path=path,
                code=fetched.status_code,
                content=fetched.html,
            )
            db.add(page)
            try:
                await db.commit()
            except IntegrityError:
                # Another task stored the same path first.
                await db.rollback()
                return
            self.saved += 1

            lemma_counts = await asyncio.to_thread(
                self.lemma_finder.collect_lemmas_from_text, parsed.text
            )
            if lemma_counts:
                await save_lemmas_with_retry(db, page, lemma_counts, site)
                logger.debug("Saved %s%s (%d lemmas)", self.root_url, path, len(lemma_counts))
            else:
                logger.warning("No lemmas found on %s", url)

            await touch_site(db, self.site_id)

    async def _mark_failed(self, error: str) -> None:
        try:
            async with self.session_factory() as db:
                await mark_site_failed(db, self.site_id, error)
        except Exception as e:
            logger.debug("Could not update status of site %s: %s", self.site_id, e)

    def should_crawl(self, link: str) -> bool:
        if not link or not link.strip():
            return False
        if link.strip().lower().startswith(SKIP_SCHEMES):
            return False
        if "#" in link or "?" in link:
            return False
        url = normalize_url(link)
        if not is_under_base(url, self.root_url):
            return False
        path = urlparse(url).path.lower()
        if any(path.endswith(ext) for ext in SKIP_EXTENSIONS):
            return False
        if self.robot_parser and not self.robot_parser.is_allowed(settings.user_agent, url):
            return False
        return True

    async def _load_robots(self) -> None:
        try:
            resp = await self.client.get(f"{self.scheme}://{self.domain}/robots.txt")
            if resp.status_code == 200:
                self.robot_parser = RobotExclusionRulesParser()
                self.robot_parser.parse(resp.text)
        except httpx.HTTPError as e:
            logger.debug("No robots.txt for %s: %s", self.domain, e)
