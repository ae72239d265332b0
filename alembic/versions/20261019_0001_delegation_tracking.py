"""Delegation events, sync cursors, vote weights and delegates.

Revision ID: 0001_delegation_tracking
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_delegation_tracking"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Event Store: both partitions in one table, told apart by `complete`
    op.create_table(
        "delegation_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("to_delegate", sa.String(42), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("delegator", sa.String(42), nullable=True),
        sa.Column("from_delegate", sa.String(42), nullable=True),
        sa.Column("amount_delegated_changed", sa.String(96), nullable=True),
        sa.Column("complete", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", "to_delegate", name="uq_delegation_events_key"),
    )
    op.create_index(
        "idx_delegation_events_partition_block",
        "delegation_events",
        ["complete", "block_number"],
    )
    op.create_index("idx_delegation_events_to_delegate", "delegation_events", ["to_delegate"])

    # Watermark and any future ingestion cursors
    op.create_table(
        "sync_cursors",
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "vote_weights",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("weight", sa.Numeric(38, 2), nullable=False),
        sa.Column("event_calc_weight", sa.Numeric(38, 2), nullable=True),
        sa.Column("unique_delegators", sa.Integer(), nullable=True),
        sa.Column("delegator_percent", sa.Numeric(7, 2), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )
    op.create_index("idx_vote_weights_weight", "vote_weights", ["weight"])

    op.create_table(
        "delegates",
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("ens", sa.String(256), nullable=True),
        sa.Column("tally_profile", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_seeking_delegation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("address"),
    )
    op.create_index("idx_delegates_tally_profile", "delegates", ["tally_profile"])


def downgrade() -> None:
    op.drop_index("idx_delegates_tally_profile", table_name="delegates")
    op.drop_table("delegates")
    op.drop_index("idx_vote_weights_weight", table_name="vote_weights")
    op.drop_table("vote_weights")
    op.drop_table("sync_cursors")
    op.drop_index("idx_delegation_events_to_delegate", table_name="delegation_events")
    op.drop_index("idx_delegation_events_partition_block", table_name="delegation_events")
    op.drop_table("delegation_events")
