"""Store the local path of downloaded message media.

Revision ID: 0002_message_media_path
Revises: 0001_initial
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_message_media_path"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add the media_path column to stored messages."""
    op.add_column("whatsapp_messages", sa.Column("media_path", sa.Text(), nullable=True))


def downgrade() -> None:
    """Drop the media_path column."""
    op.drop_column("whatsapp_messages", "media_path")
