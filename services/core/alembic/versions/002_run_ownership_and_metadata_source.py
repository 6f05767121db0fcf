"""Run ownership and conversation metadata source

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

- sync_state.heartbeat_at: refreshed on every checkpoint; staleness is
  judged from it instead of started_at
- sync_state.run_token: owner of a running row
- conversations.metadata_source: which source last wrote the PBX metadata
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("sync_state", sa.Column("heartbeat_at", sa.DateTime, nullable=True))
    op.add_column("sync_state", sa.Column("run_token", sa.String(32), nullable=True))
    op.add_column(
        "conversations", sa.Column("metadata_source", sa.String(16), nullable=True)
    )


def downgrade() -> None:
    op.drop_column("conversations", "metadata_source")
    op.drop_column("sync_state", "run_token")
    op.drop_column("sync_state", "heartbeat_at")
