import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from searchengine.models.base import Base, TimestampMixin


class SiteStatus(str, enum.Enum):
    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"


class Site(Base, TimestampMixin):
    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[SiteStatus] = mapped_column(
        Enum(SiteStatus, name="site_status", native_enum=False, length=20)
    )
    status_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)

    pages = relationship("Page", back_populates="site", passive_deletes=True)
    lemmas = relationship("Lemma", back_populates="site", passive_deletes=True)
