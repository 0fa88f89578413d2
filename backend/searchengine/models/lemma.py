from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from searchengine.models.base import Base


class Lemma(Base):
    __tablename__ = "lemmas"
    __table_args__ = (UniqueConstraint("site_id", "lemma", name="uq_lemmas_site_lemma"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="CASCADE"), index=True)
    lemma: Mapped[str] = mapped_column(String(255))
    # Number of pages of the site containing the lemma at least once
    frequency: Mapped[int] = mapped_column(Integer, default=0)

    site = relationship("Site", back_populates="lemmas")
