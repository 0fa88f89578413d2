import asyncio

import httpx
from sqlalchemy import func, select

from searchengine.config import SiteConfig
from searchengine.models import Page, Site, SiteStatus
from searchengine.schemas import IndexingResponse
from searchengine.services import crawler as crawler_module
from searchengine.services.indexing import STOPPED_BY_USER, IndexingService

from conftest import SITE_URL, html_page, site_transport

PAGES = {
    "/": html_page("Home", "Welcome home", ["/a", "/b"]),
    "/a": html_page("Page A", "Red cars", ["/b"]),
    "/b": html_page("Page B", "Blue cars", ["/a"]),
}


def _service(sites, session_factory, lemma_finder, transport):
    return IndexingService(
        sites=sites,
        session_factory=session_factory,
        lemma_finder_factory=lambda: lemma_finder,
        crawler_options={
            "delay_min_ms": 0,
            "delay_max_ms": 0,
            "respect_robots": False,
            "transport": transport,
        },
    )


async def _wait_until_idle(service, timeout=10):
    async def wait():
        while service.is_running:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait(), timeout)


async def test_full_crawl_indexes_site(sites, session_factory, lemma_finder):
    service = _service(sites, session_factory, lemma_finder, site_transport(PAGES))

    response = await service.start_indexing()
    assert response.result is True
    assert service.is_running
    await _wait_until_idle(service)

    async with session_factory() as db:
        site = await db.scalar(select(Site).where(Site.url == SITE_URL))
        pages = await db.scalar(select(func.count(Page.id)))

    assert site.status == SiteStatus.INDEXED
    assert site.last_error is None
    assert pages == 3
    assert service.pending_sites == 0


async def test_reindexing_replaces_previous_data(sites, session_factory, lemma_finder, seed_site):
    await seed_site({"/old": html_page("Old", "Stale page")}, status=SiteStatus.FAILED)
    service = _service(sites, session_factory, lemma_finder, site_transport(PAGES))

    await service.start_indexing()
    await _wait_until_idle(service)

    async with session_factory() as db:
        site_count = await db.scalar(select(func.count(Site.id)))
        paths = (await db.scalars(select(Page.path).order_by(Page.path))).all()

    assert site_count == 1
    assert paths == ["/", "/a", "/b"]


async def test_start_while_running_is_rejected(sites, session_factory, lemma_finder):
    service = _service(sites, session_factory, lemma_finder, site_transport(PAGES))

    await service.start_indexing()
    second = await service.start_indexing()
    await _wait_until_idle(service)

    assert second.result is False
    assert second.error == "already running"


async def test_stop_when_idle_is_rejected(sites, session_factory, lemma_finder):
    service = _service(sites, session_factory, lemma_finder, site_transport(PAGES))

    response = await service.stop_indexing()

    assert response.result is False
    assert response.error == "not running"


async def test_stop_marks_sites_failed(session_factory, lemma_finder):
    started = asyncio.Event()
    hosts = set()

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        hosts.add(request.url.host)
        if len(hosts) == 2:
            started.set()
        await asyncio.sleep(30)
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>late</p>")

    sites = [
        SiteConfig(url=SITE_URL, name="Example"),
        SiteConfig(url="https://second.example.org", name="Second"),
    ]
    service = _service(sites, session_factory, lemma_finder, httpx.MockTransport(slow_handler))

    await service.start_indexing()
    await asyncio.wait_for(started.wait(), 10)
    response = await service.stop_indexing()
    await service.shutdown()

    assert response.result is True
    assert not service.is_running
    async with session_factory() as db:
        stored = (await db.scalars(select(Site).order_by(Site.url))).all()

    assert [site.url for site in stored] == [SITE_URL, "https://second.example.org"]
    assert all(site.status == SiteStatus.FAILED for site in stored)
    assert all(site.last_error == STOPPED_BY_USER for site in stored)
    assert await service.stop_indexing() == IndexingResponse.failure("not running")


async def test_start_with_no_sites_finishes_immediately(session_factory, lemma_finder):
    service = _service([], session_factory, lemma_finder, site_transport(PAGES))

    response = await service.start_indexing()

    assert response.result is True
    assert not service.is_running


async def test_can_restart_after_completion(sites, session_factory, lemma_finder):
    service = _service(sites, session_factory, lemma_finder, site_transport(PAGES))

    await service.start_indexing()
    await _wait_until_idle(service)
    again = await service.start_indexing()
    await _wait_until_idle(service)

    assert again.result is True


async def test_page_error_keeps_site_failed_after_crawl(
    sites, session_factory, lemma_finder, monkeypatch
):
    real_save = crawler_module.save_lemmas_with_retry

    async def save(session, page, lemma_counts, site):
        if page.path == "/a":
            raise RuntimeError("index write exploded")
        await real_save(session, page, lemma_counts, site)

    monkeypatch.setattr(crawler_module, "save_lemmas_with_retry", save)
    service = _service(sites, session_factory, lemma_finder, site_transport(PAGES))

    await service.start_indexing()
    await _wait_until_idle(service)

    async with session_factory() as db:
        site = await db.scalar(select(Site).where(Site.url == SITE_URL))
        paths = set((await db.scalars(select(Page.path))).all())

    assert site.status == SiteStatus.FAILED
    assert site.last_error == "Page processing error: index write exploded"
    assert paths == {"/", "/a", "/b"}


async def test_second_stop_during_stop_is_rejected(session_factory, lemma_finder):
    started = asyncio.Event()

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        started.set()
        await asyncio.sleep(30)
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>late</p>")

    sites = [SiteConfig(url=SITE_URL, name="Example")]
    service = _service(sites, session_factory, lemma_finder, httpx.MockTransport(slow_handler))

    await service.start_indexing()
    await asyncio.wait_for(started.wait(), 10)
    first, second = await asyncio.gather(service.stop_indexing(), service.stop_indexing())
    await service.shutdown()

    assert first == IndexingResponse.ok()
    assert second == IndexingResponse.failure("not running")
