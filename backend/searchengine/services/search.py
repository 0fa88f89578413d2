import asyncio
import html
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from searchengine.config import SiteConfig, settings
from searchengine.database import async_session
from searchengine.exceptions import (
    EmptyQuery,
    InvalidRange,
    NotIndexed,
    SearchEngineError,
    UnknownSite,
)
from searchengine.models import IndexEntry, Lemma, Page, Site, SiteStatus
from searchengine.schemas.search import SearchResponse, SearchResultItem
from searchengine.services.extractor import parse_page
from searchengine.services.lemma_finder import LemmaFinder, get_lemma_finder
from searchengine.services.sites import find_site_config, get_site_by_url, normalize_base_url

logger = logging.getLogger(__name__)

WORD_PATTERN = re.compile(r"[^\W_]+")
MIN_TERM_LENGTH = 2


@dataclass
class SearchHit:
    site_id: int
    page_id: int
    abs_relevance: float


def extract_query_terms(query: str) -> list[str]:
    """Lowercase query words of at least two characters, longest first."""
    unique = {
        token
        for token in WORD_PATTERN.findall(query.lower())
        if len(token) >= MIN_TERM_LENGTH
    }
    return sorted(unique, key=len, reverse=True)


class SearchService:
    def __init__(
        self,
        sites: Sequence[SiteConfig] | None = None,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        lemma_finder_factory: Callable[[], LemmaFinder] = get_lemma_finder,
        snippet_length: int | None = None,
        max_frequency_ratio: float | None = None,
    ):
        self.sites = list(sites) if sites is not None else list(settings.sites)
        self.session_factory = session_factory
        self.lemma_finder_factory = lemma_finder_factory
        self.snippet_length = (
            snippet_length if snippet_length is not None else settings.search_snippet_length
        )
        self.max_frequency_ratio = (
            max_frequency_ratio
            if max_frequency_ratio is not None
            else settings.search_max_frequency_ratio
        )

    async def search(
        self,
        query: str | None,
        site: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> SearchResponse:
        if limit is None:
            limit = settings.search_default_limit
        try:
            return await self._search(query, site, offset, limit)
        except SearchEngineError as e:
            logger.info("Search rejected (%s): %r", e, query)
            return SearchResponse.failure(str(e))

    async def _search(
        self, query: str | None, site_url: str | None, offset: int, limit: int
    ) -> SearchResponse:
        query = (query or "").strip()
        if not query:
            raise EmptyQuery()
        if offset < 0 or limit < 1:
            raise InvalidRange()

        query_terms = extract_query_terms(query)
        if not query_terms:
            raise EmptyQuery()
        lemma_finder = await asyncio.to_thread(self.lemma_finder_factory)
        query_lemmas = set(lemma_finder.collect_lemmas_from_text(query))
        if not query_lemmas:
            raise EmptyQuery()

        site_url = (site_url or "").strip() or None
        if site_url and find_site_config(self.sites, site_url) is None:
            raise UnknownSite()

        async with self.session_factory() as db:
            sites = await self._resolve_sites(db, site_url)
            if not sites:
                raise NotIndexed("Site is not indexed" if site_url else None)

            hits: list[SearchHit] = []
            for site in sites:
                hits.extend(await self._site_hits(db, site, query_lemmas))

            if not hits:
                return SearchResponse.ok(0, [])

            hits.sort(key=lambda hit: hit.abs_relevance, reverse=True)
            max_abs = hits[0].abs_relevance or 1.0
            page_hits = hits[offset:offset + limit]

            pages = await self._load_pages(db, [hit.page_id for hit in page_hits])

        data: list[SearchResultItem] = []
        for hit in page_hits:
            page = pages.get(hit.page_id)
            if page is None:
                continue
            parsed = parse_page(page.content, page.site.url + page.path)
            data.append(
                SearchResultItem(
                    site=normalize_base_url(page.site.url),
                    site_name=page.site.name,
                    uri=page.path,
                    title=parsed.title,
                    snippet=self.build_snippet(
                        parsed.text, query_terms, query_lemmas, lemma_finder
                    ),
                    relevance=hit.abs_relevance / max_abs,
                )
            )
        return SearchResponse.ok(len(hits), data)

    async def _resolve_sites(self, db: AsyncSession, site_url: str | None) -> list[Site]:
        configs = (
            [find_site_config(self.sites, site_url)] if site_url else self.sites
        )
        result = []
        for site_config in configs:
            site = await get_site_by_url(db, site_config.url)
            if site is not None and site.status == SiteStatus.INDEXED:
                result.append(site)
        return result

    async def _site_hits(
        self, db: AsyncSession, site: Site, query_lemmas: set[str]
    ) -> list[SearchHit]:
        lemmas = (
            await db.scalars(
                select(Lemma).where(Lemma.site_id == site.id, Lemma.lemma.in_(query_lemmas))
            )
        ).all()
        # Every query lemma must exist on the site.
        if len(lemmas) != len(query_lemmas):
            return []

        page_count = await db.scalar(
            select(func.count(Page.id)).where(Page.site_id == site.id)
        )
        page_count = page_count or 0
        # A single-page site would lose every word to the cut, so it is exempt.
        if page_count > 1:
            threshold = page_count * self.max_frequency_ratio
            lemmas = [lemma for lemma in lemmas if lemma.frequency <= threshold]
        if not lemmas:
            return []

        lemma_ids = [lemma.id for lemma in sorted(lemmas, key=lambda lemma: lemma.frequency)]
        rows = await db.execute(
            select(IndexEntry.page_id, func.sum(IndexEntry.rank))
            .join(Page, Page.id == IndexEntry.page_id)
            .where(
                Page.site_id == site.id,
                Page.code < 400,
                IndexEntry.lemma_id.in_(lemma_ids),
            )
            .group_by(IndexEntry.page_id)
            .having(func.count(distinct(IndexEntry.lemma_id)) == len(lemma_ids))
        )
        return [
            SearchHit(site_id=site.id, page_id=page_id, abs_relevance=float(abs_sum))
            for page_id, abs_sum in rows
        ]

    async def _load_pages(self, db: AsyncSession, page_ids: list[int]) -> dict[int, Page]:
        if not page_ids:
            return {}
        pages = (
            await db.scalars(
                select(Page).where(Page.id.in_(page_ids)).options(selectinload(Page.site))
            )
        ).all()
        return {page.id: page for page in pages}

    def build_snippet(
        self,
        text: str,
        query_terms: list[str],
        query_lemmas: set[str],
        lemma_finder: LemmaFinder,
    ) -> str:
        """Window of page text around the first query match with matches in ``<b>``."""
        normalized = " ".join((text or "").split())
        if not normalized:
            return ""

        def matches(word: str) -> bool:
            lower = word.lower()
            if lower in terms:
                return True
            lemma = lemma_finder.get_lemma_for_word(lower)
            return lemma is not None and lemma in query_lemmas

        terms = set(query_terms)
        match_index = next(
            (m.start() for m in WORD_PATTERN.finditer(normalized) if matches(m.group())),
            -1,
        )

        length = self.snippet_length
        start = 0 if match_index < 0 else max(0, match_index - length // 2)
        end = min(len(normalized), start + length)
        if end - start < length:
            start = max(0, end - length)

        window = normalized[start:end]
        prefix = "... " if start > 0 else ""
        suffix = " ..." if end < len(normalized) else ""
        return prefix + self._highlight(window, matches) + suffix

    @staticmethod
    def _highlight(window: str, matches: Callable[[str], bool]) -> str:
        # Whole words only; escaping word by word keeps entities intact.
        parts: list[str] = []
        position = 0
        for m in WORD_PATTERN.finditer(window):
            parts.append(html.escape(window[position:m.start()]))
            word = html.escape(m.group())
            parts.append(f"<b>{word}</b>" if matches(m.group()) else word)
            position = m.end()
        parts.append(html.escape(window[position:]))
        return "".join(parts)


@lru_cache(maxsize=None)
def get_search_service() -> SearchService:
    return SearchService()
