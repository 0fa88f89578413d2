from searchengine.config import SiteConfig
from searchengine.models import SiteStatus
from searchengine.services.indexing import IndexingService
from searchengine.services.sites import mark_site_failed
from searchengine.services.statistics import NOT_STARTED, StatisticsService

from conftest import SITE_URL, html_page


async def test_statistics_totals_and_details(sites, session_factory, seed_site):
    await seed_site({"/a": html_page("Alpha", "Red cars"), "/b": html_page("Beta", "Blue cars")})
    configured = sites + [SiteConfig(url="https://never.example.org", name="Never")]
    service = StatisticsService(
        sites=configured,
        session_factory=session_factory,
        indexing_service=IndexingService(sites=configured, session_factory=session_factory),
    )

    response = await service.get_statistics()

    total = response.statistics.total
    assert response.result is True
    assert (total.sites, total.pages, total.indexing) == (2, 2, False)
    # alpha, beta, red, blue, car
    assert total.lemmas == 5

    indexed, never = response.statistics.detailed
    assert indexed.url == SITE_URL
    assert indexed.status == "INDEXED"
    assert indexed.error is None
    assert (indexed.pages, indexed.lemmas) == (2, 5)
    assert indexed.status_time > 0

    assert never.status == "FAILED"
    assert never.error == NOT_STARTED
    assert (never.pages, never.lemmas) == (0, 0)


async def test_error_is_reported_only_for_failed_sites(sites, session_factory, seed_site):
    site_id = await seed_site({}, status=SiteStatus.FAILED)
    async with session_factory() as db:
        await mark_site_failed(db, site_id, "Page processing error: boom")
    service = StatisticsService(
        sites=sites,
        session_factory=session_factory,
        indexing_service=IndexingService(sites=sites, session_factory=session_factory),
    )

    response = await service.get_statistics()

    [item] = response.statistics.detailed
    assert item.status == "FAILED"
    assert item.error == "Page processing error: boom"

    dumped = response.model_dump(by_alias=True)
    assert "statusTime" in dumped["statistics"]["detailed"][0]
