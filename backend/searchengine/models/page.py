from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from searchengine.models.base import Base, TimestampMixin


class Page(Base, TimestampMixin):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("site_id", "path", name="uq_pages_site_path"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), index=True)
    path: Mapped[str] = mapped_column(String(2048))
    code: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)

    site = relationship("Site", back_populates="pages")
