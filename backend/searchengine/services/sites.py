import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from searchengine.config import SiteConfig
from searchengine.models import IndexEntry, Lemma, Page, Site, SiteStatus

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_base_url(url: str | None) -> str:
    if not url:
        return ""
    return url.strip().rstrip("/")


def is_under_base(url: str, base_url: str) -> bool:
    """True if ``url`` is the base URL itself or a path below it."""
    base = normalize_base_url(base_url)
    target = normalize_base_url(url)
    if not base or not target:
        return False
    return target == base or target.startswith(base + "/")


def find_site_config(sites: Sequence[SiteConfig], url: str | None) -> SiteConfig | None:
    normalized = normalize_base_url(url)
    if not normalized:
        return None
    for site_config in sites:
        if normalize_base_url(site_config.url) == normalized:
            return site_config
    return None


def find_owning_site_config(sites: Sequence[SiteConfig], url: str) -> SiteConfig | None:
    for site_config in sites:
        if is_under_base(url, site_config.url):
            return site_config
    return None


async def get_site_by_url(session: AsyncSession, url: str) -> Site | None:
    normalized = normalize_base_url(url)
    result = await session.execute(
        select(Site).where(Site.url.in_([normalized, normalized + "/"])).order_by(Site.id)
    )
    return result.scalars().first()


async def reload_site(session: AsyncSession, site_id: int) -> Site | None:
    # Other tasks update the status concurrently; never trust the identity map here.
    return await session.get(Site, site_id, populate_existing=True)


async def clear_site_data(session: AsyncSession, url: str) -> None:
    """Delete the site row for ``url`` with all its pages, lemmas and index rows."""
    site = await get_site_by_url(session, url)
    if site is None:
        return
    site_id = site.id
    page_ids = select(Page.id).where(Page.site_id == site_id)
    await session.execute(
        delete(IndexEntry)
        .where(IndexEntry.page_id.in_(page_ids))
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(Lemma).where(Lemma.site_id == site_id).execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(Page).where(Page.site_id == site_id).execution_options(synchronize_session=False)
    )
    await session.execute(
        delete(Site).where(Site.id == site_id).execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("Cleared previous index data for %s", url)


async def mark_site_failed(session: AsyncSession, site_id: int, error: str) -> None:
    site = await reload_site(session, site_id)
    if site is None:
        return
    site.status = SiteStatus.FAILED
    site.last_error = error[:2048]
    site.status_time = utcnow()
    await session.commit()


async def touch_site(session: AsyncSession, site_id: int) -> None:
    site = await reload_site(session, site_id)
    if site is None:
        return
    site.status_time = utcnow()
    await session.commit()
