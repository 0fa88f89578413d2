import httpx
from sqlalchemy import func, select

from searchengine.models import IndexEntry, Lemma, Page, Site, SiteStatus
from searchengine.services import page_indexing
from searchengine.services.indexing import IndexingService
from searchengine.services.page_indexing import PageIndexingService

from conftest import SITE_URL, html_page, site_transport


def _service(sites, session_factory, lemma_finder, transport, crawl_running=False):
    indexing = IndexingService(sites=sites, session_factory=session_factory)
    indexing._running = crawl_running
    return PageIndexingService(
        sites=sites,
        session_factory=session_factory,
        lemma_finder_factory=lambda: lemma_finder,
        transport=transport,
        indexing_service=indexing,
    )


async def _counts(session_factory):
    async with session_factory() as db:
        return (
            await db.scalar(select(func.count(Page.id))),
            await db.scalar(select(func.count(Lemma.id))),
            await db.scalar(select(func.count(IndexEntry.id))),
        )


async def test_index_page_creates_site_and_page(sites, session_factory, lemma_finder):
    pages = {"/news": html_page("News", "Red cars and blue cars")}
    service = _service(sites, session_factory, lemma_finder, site_transport(pages))

    response = await service.index_page(SITE_URL + "/news")

    assert response.result is True
    async with session_factory() as db:
        site = await db.scalar(select(Site))
        page = await db.scalar(select(Page))
        car = await db.scalar(select(Lemma).where(Lemma.lemma == "car"))
        rank = await db.scalar(select(IndexEntry.rank).where(IndexEntry.lemma_id == car.id))

    assert site.status == SiteStatus.INDEXED
    assert page.path == "/news"
    assert car.frequency == 1
    assert rank == 2.0


async def test_reindexing_same_page_is_idempotent(sites, session_factory, lemma_finder):
    pages = {"/news": html_page("News", "Red cars")}
    service = _service(sites, session_factory, lemma_finder, site_transport(pages))

    await service.index_page(SITE_URL + "/news")
    first = await _counts(session_factory)
    await service.index_page(SITE_URL + "/news")
    second = await _counts(session_factory)

    assert first == second
    async with session_factory() as db:
        frequencies = (await db.scalars(select(Lemma.frequency))).all()
    assert set(frequencies) == {1}


async def test_reindexing_drops_lemmas_no_longer_on_page(sites, session_factory, lemma_finder):
    pages = {"/news": html_page("News", "Red cars")}
    service = _service(sites, session_factory, lemma_finder, site_transport(pages))

    await service.index_page(SITE_URL + "/news")
    pages["/news"] = html_page("News", "Green bikes")
    await service.index_page(SITE_URL + "/news")

    async with session_factory() as db:
        lemmas = set((await db.scalars(select(Lemma.lemma))).all())

    assert "green" in lemmas
    assert "red" not in lemmas
    assert "car" not in lemmas


async def test_page_outside_configured_sites_is_rejected(sites, session_factory, lemma_finder):
    service = _service(sites, session_factory, lemma_finder, site_transport({}))

    response = await service.index_page("https://elsewhere.org/page")

    assert response.result is False
    assert response.error == "This page is outside the sites listed in the configuration"
    assert await _counts(session_factory) == (0, 0, 0)
    async with session_factory() as db:
        assert await db.scalar(select(func.count(Site.id))) == 0


async def test_http_error_restores_existing_site(sites, session_factory, lemma_finder, seed_site):
    await seed_site({"/": html_page("Home", "Welcome")})
    service = _service(sites, session_factory, lemma_finder, site_transport({}))

    response = await service.index_page(SITE_URL + "/gone")

    assert response.result is False
    assert response.error == "Failed to index page: HTTP 404"
    async with session_factory() as db:
        site = await db.scalar(select(Site))
    assert site.status == SiteStatus.INDEXED
    assert site.last_error is None
    assert await _counts(session_factory) == (1, 2, 2)


async def test_failure_on_new_site_marks_it_failed(sites, session_factory, lemma_finder):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG")

    service = _service(sites, session_factory, lemma_finder, httpx.MockTransport(handler))

    response = await service.index_page(SITE_URL + "/logo")

    assert response.result is False
    assert "unsupported Content-Type image/png" in response.error
    async with session_factory() as db:
        site = await db.scalar(select(Site))
    assert site.status == SiteStatus.FAILED
    assert site.last_error == response.error


async def test_site_being_crawled_stays_indexing(sites, session_factory, lemma_finder, seed_site):
    await seed_site({}, status=SiteStatus.INDEXING)
    pages = {"/news": html_page("News", "Red cars")}
    service = _service(
        sites, session_factory, lemma_finder, site_transport(pages), crawl_running=True
    )

    response = await service.index_page(SITE_URL + "/news")

    assert response.result is True
    async with session_factory() as db:
        site = await db.scalar(select(Site))
    assert site.status == SiteStatus.INDEXING


async def test_stale_indexing_status_is_cleared_when_no_crawl_runs(
    sites, session_factory, lemma_finder, seed_site
):
    await seed_site({}, status=SiteStatus.INDEXING)
    pages = {"/news": html_page("News", "Red cars")}
    service = _service(sites, session_factory, lemma_finder, site_transport(pages))

    response = await service.index_page(SITE_URL + "/news")

    assert response.result is True
    async with session_factory() as db:
        site = await db.scalar(select(Site))
    assert site.status == SiteStatus.INDEXED


async def test_failed_reindex_keeps_previous_page_and_index(
    sites, session_factory, lemma_finder, monkeypatch
):
    pages = {"/news": html_page("News", "Red cars")}
    service = _service(sites, session_factory, lemma_finder, site_transport(pages))
    await service.index_page(SITE_URL + "/news")
    before = await _counts(session_factory)

    async def broken_write(session, page_id, site_id, lemma_counts):
        raise ValueError("index write failed")

    monkeypatch.setattr(page_indexing, "write_lemmas", broken_write)
    pages["/news"] = html_page("News", "Green bikes")
    response = await service.index_page(SITE_URL + "/news")

    assert response.result is False
    assert await _counts(session_factory) == before
    async with session_factory() as db:
        page = await db.scalar(select(Page))
        lemmas = set((await db.scalars(select(Lemma.lemma))).all())
        site = await db.scalar(select(Site))
    assert "Red cars" in page.content
    assert lemmas == {"news", "red", "car"}
    assert site.status == SiteStatus.INDEXED
