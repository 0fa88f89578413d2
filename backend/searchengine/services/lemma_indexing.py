"""Lemma and search index persistence.

Crawl tasks for different pages of one site write the same lemmas at the same
time, so every counter change is a single ``INSERT ... ON CONFLICT DO UPDATE``
statement rather than a read followed by a write.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
    wait_random,
)

from searchengine.config import settings
from searchengine.models import IndexEntry, Lemma, Page, Site

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_CONTENTION_MARKERS = (
    "deadlock",
    "database is locked",
    "database table is locked",
    "lock wait timeout",
    "lock timeout",
    "could not obtain lock",
    "could not serialize",
)


def is_lock_contention(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _LOCK_CONTENTION_MARKERS)


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"No atomic upsert available for dialect {dialect!r}")


async def write_lemmas(
    session: AsyncSession, page_id: int, site_id: int, lemma_counts: dict[str, int]
) -> None:
    insert = _insert_for(session)
    # Sorted order keeps row locks in the same sequence across writers.
    for lemma_text in sorted(lemma_counts):
        if not lemma_text or not lemma_text.strip():
            continue
        count = lemma_counts[lemma_text]

        lemma_stmt = insert(Lemma).values(site_id=site_id, lemma=lemma_text, frequency=1)
        lemma_stmt = lemma_stmt.on_conflict_do_update(
            index_elements=["site_id", "lemma"],
            set_={"frequency": Lemma.frequency + 1},
        ).returning(Lemma.id)
        lemma_id = (await session.execute(lemma_stmt)).scalar_one()

        index_stmt = insert(IndexEntry).values(
            page_id=page_id, lemma_id=lemma_id, rank=float(count)
        )
        index_stmt = index_stmt.on_conflict_do_update(
            index_elements=["page_id", "lemma_id"],
            set_={"rank": index_stmt.excluded.rank},
        )
        await session.execute(index_stmt)


async def save_lemmas_and_index(
    session: AsyncSession, page: Page, lemma_counts: dict[str, int], site: Site
) -> None:
    if page is None or site is None:
        raise ValueError("page and site are required")
    await write_lemmas(session, page.id, site.id, lemma_counts)
    await session.commit()


async def run_with_retry(session: AsyncSession, work: Callable[[], Awaitable[T]]) -> T:
    """Run ``work`` and commit as one transaction, retrying on lock contention.

    Every failed attempt is rolled back, so ``work`` must redo all of its
    writes. Waits ``base * attempt`` plus random jitter between attempts and
    re-raises the last error once ``lemma_write_max_retries`` retries are used up.
    """
    base = settings.lemma_write_retry_base_ms / 1000
    jitter = settings.lemma_write_retry_jitter_ms / 1000

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_lock_contention),
        stop=stop_after_attempt(settings.lemma_write_max_retries + 1),
        wait=wait_incrementing(start=base, increment=base) + wait_random(0, jitter),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            try:
                result = await work()
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    return result


async def save_lemmas_with_retry(
    session: AsyncSession, page: Page, lemma_counts: dict[str, int], site: Site
) -> None:
    if page is None or site is None:
        raise ValueError("page and site are required")
    # A rollback expires loaded instances; keep the keys.
    page_id, site_id = page.id, site.id
    await run_with_retry(
        session, lambda: write_lemmas(session, page_id, site_id, lemma_counts)
    )


async def remove_page_data(session: AsyncSession, page: Page) -> None:
    """Delete a page with its index rows and bring affected lemma frequencies back in line.

    Lemmas no longer referenced by any page are deleted; the rest get their
    frequency recounted from the index. The caller commits.
    """
    page_id = page.id
    lemma_ids = (
        await session.scalars(
            select(IndexEntry.lemma_id).where(IndexEntry.page_id == page_id).distinct()
        )
    ).all()

    await session.execute(delete(IndexEntry).where(IndexEntry.page_id == page_id))
    await session.execute(delete(Page).where(Page.id == page_id))

    if not lemma_ids:
        return

    usage = (
        select(func.count(IndexEntry.id))
        .where(IndexEntry.lemma_id == Lemma.id)
        .scalar_subquery()
    )
    await session.execute(
        update(Lemma)
        .where(Lemma.id.in_(lemma_ids))
        .values(frequency=usage)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(Lemma)
        .where(Lemma.id.in_(lemma_ids), Lemma.frequency <= 0)
        .execution_options(synchronize_session=False)
    )
    logger.debug("Removed page %s, recounted %d lemma(s)", page_id, len(lemma_ids))
