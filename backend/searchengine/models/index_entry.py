from sqlalchemy import Float, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from searchengine.models.base import Base


class IndexEntry(Base):
    __tablename__ = "search_index"
    __table_args__ = (
        UniqueConstraint("page_id", "lemma_id", name="uq_search_index_page_lemma"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    page_id: Mapped[int] = mapped_column(ForeignKey("pages.id", ondelete="CASCADE"), index=True)
    lemma_id: Mapped[int] = mapped_column(ForeignKey("lemmas.id", ondelete="CASCADE"), index=True)
    # Occurrences of the lemma on the page
    rank: Mapped[float] = mapped_column(Float)

    page = relationship("Page")
    lemma = relationship("Lemma")
