"""Initial migration

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sites",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("status_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sites_url", "sites", ["url"], unique=True)

    op.create_table(
        "pages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("path", sa.String(2048), nullable=False),
        sa.Column("code", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("site_id", "path", name="uq_pages_site_path"),
    )
    op.create_index("ix_pages_site_id", "pages", ["site_id"])

    op.create_table(
        "lemmas",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("site_id", sa.Integer(), sa.ForeignKey("sites.id", ondelete="CASCADE"), nullable=False),
        sa.Column("lemma", sa.String(255), nullable=False),
        sa.Column("frequency", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("site_id", "lemma", name="uq_lemmas_site_lemma"),
    )
    op.create_index("ix_lemmas_site_id", "lemmas", ["site_id"])

    op.create_table(
        "search_index",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("page_id", sa.Integer(), sa.ForeignKey("pages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("lemma_id", sa.Integer(), sa.ForeignKey("lemmas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("rank", sa.Float(), nullable=False),
        sa.UniqueConstraint("page_id", "lemma_id", name="uq_search_index_page_lemma"),
    )
    op.create_index("ix_search_index_page_id", "search_index", ["page_id"])
    op.create_index("ix_search_index_lemma_id", "search_index", ["lemma_id"])


def downgrade() -> None:
    op.drop_table("search_index")
    op.drop_table("lemmas")
    op.drop_table("pages")
    op.drop_table("sites")
