import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from searchengine.config import SiteConfig
from searchengine.models import Base, Page, Site, SiteStatus
from searchengine.services.lemma_finder import LemmaFinder
from searchengine.services.lemma_indexing import save_lemmas_and_index
from searchengine.services.sites import utcnow

SITE_URL = "https://example.com"

STOPWORDS = {"a", "an", "and", "the", "of", "to", "in", "is", "on", "or"}


class LatinNormalizer:
    """Small stand-in for the Russian morphology: drops stopwords, folds plurals."""

    alphabet = "a-z"

    def lemma_for(self, word: str) -> str | None:
        if word in STOPWORDS:
            return None
        if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
            return word[:-1]
        return word


@pytest.fixture
def lemma_finder():
    return LemmaFinder(LatinNormalizer())


@pytest.fixture
def sites():
    return [SiteConfig(url=SITE_URL, name="Example")]


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


def html_page(title: str, body: str, links: list[str] | None = None) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links or [])
    return (
        f"<html><head><title>{title}</title><script>var hidden = 1;</script></head>"
        f"<body><p>{body}</p>{anchors}</body></html>"
    )


def site_transport(pages: dict[str, str], calls: list[str] | None = None) -> httpx.MockTransport:
    """MockTransport serving ``pages`` (path -> html); anything else is a 404."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request.url.path)
        path = request.url.path or "/"
        if path in pages:
            return httpx.Response(
                200, headers={"content-type": "text/html; charset=utf-8"}, text=pages[path]
            )
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler)


@pytest.fixture
def seed_site(session_factory, lemma_finder):
    """Store a site and its pages directly, returning the site id."""

    async def seed(
        pages: dict[str, str],
        url: str = SITE_URL,
        name: str = "Example",
        status: SiteStatus = SiteStatus.INDEXED,
    ) -> int:
        async with session_factory() as db:
            site = Site(url=url, name=name, status=status, status_time=utcnow())
            db.add(site)
            await db.commit()
            for path, html in pages.items():
                page = Page(site_id=site.id, path=path, code=200, content=html)
                db.add(page)
                await db.commit()
                await save_lemmas_and_index(db, page, lemma_finder.collect_lemmas(html), site)
            return site.id

    return seed
