"""create_sync_engine_tables

Revision ID: 3f9a1c7d2b10
Revises:
Create Date: 2026-10-17 09:12:41.318204

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9a1c7d2b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum types are shared between tables, so they are created once up front
chain_side = postgresql.ENUM("PRIMARY", "MIRROR", name="chainside", create_type=False)
wrap_state = postgresql.ENUM("NONE", "PRIMARY", "MIRROR", name="wrapstate", create_type=False)
record_type = postgresql.ENUM(
    "TEXT", "ADDRESS", "CONTENT_HASH", "CUSTOM", name="recordtype", create_type=False
)
job_type = postgresql.ENUM(
    "MIRROR_DOMAIN",
    "UPSERT_RECORD",
    "DELETE_RECORD",
    "SET_WRAP_STATE",
    "MARK_CHECKPOINT",
    name="jobtype",
    create_type=False,
)
job_status = postgresql.ENUM(
    "PENDING", "IN_FLIGHT", "DONE", "FAILED", name="jobstatus", create_type=False
)

ENUMS = (chain_side, wrap_state, record_type, job_type, job_status)


def upgrade() -> None:
    """Create domains, records, sync_jobs, processed_events and scan_checkpoints."""
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "domains",
        sa.Column("name_hash", sa.String(length=66), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("owner_primary", sa.String(length=64), nullable=False),
        sa.Column("owner_mirror", sa.String(length=64), nullable=True),
        sa.Column("expiration", sa.BigInteger(), nullable=False),
        sa.Column("resolver_address", sa.String(length=64), nullable=True),
        sa.Column("wrap_state", wrap_state, nullable=False),
        sa.Column("expired", sa.Boolean(), nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False),
        sa.Column("primary_version", sa.BigInteger(), nullable=False),
        sa.Column("mirror_version", sa.BigInteger(), nullable=False),
        sa.Column("source_chain", chain_side, nullable=False),
        sa.Column("last_primary_block", sa.BigInteger(), nullable=True),
        sa.Column("last_primary_tx", sa.String(length=66), nullable=True),
        sa.Column("last_mirror_slot", sa.BigInteger(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("name_hash"),
    )
    op.create_index("ix_domains_label", "domains", ["label"])
    op.create_index("ix_domains_owner_primary", "domains", ["owner_primary"])
    op.create_index("ix_domains_owner_mirror", "domains", ["owner_mirror"])
    op.create_index("ix_domains_expired", "domains", ["expired"])

    op.create_table(
        "records",
        sa.Column("name_hash", sa.String(length=66), nullable=False),
        sa.Column("key_hash", sa.String(length=66), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("record_type", record_type, nullable=False),
        sa.Column("value", sa.LargeBinary(), nullable=False),
        sa.Column("tombstone", sa.Boolean(), nullable=False),
        sa.Column("source_chain", chain_side, nullable=False),
        sa.Column("version", sa.BigInteger(), nullable=False),
        sa.Column("primary_version", sa.BigInteger(), nullable=False),
        sa.Column("mirror_version", sa.BigInteger(), nullable=False),
        sa.Column("observed_at", sa.BigInteger(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("name_hash", "key_hash"),
    )

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("job_type", job_type, nullable=False),
        sa.Column("target_chain", chain_side, nullable=False),
        sa.Column("name_hash", sa.String(length=66), nullable=False),
        sa.Column("key_hash", sa.String(length=66), nullable=True),
        sa.Column("version", sa.BigInteger(), nullable=False),
        sa.Column("value_hash", sa.String(length=66), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("depends_on", sa.Uuid(), nullable=True),
        sa.Column("status", job_status, nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("tx_id", sa.String(length=128), nullable=True),
        sa.Column("superseded", sa.Boolean(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sync_jobs_dedupe_key", "sync_jobs", ["dedupe_key"], unique=True)
    op.create_index("ix_sync_jobs_target_chain", "sync_jobs", ["target_chain"])
    op.create_index("ix_sync_jobs_name_hash", "sync_jobs", ["name_hash"])
    op.create_index("ix_sync_jobs_status", "sync_jobs", ["status"])
    # Claim query: pending jobs for one chain that are due
    op.create_index(
        "ix_sync_jobs_claim",
        "sync_jobs",
        ["target_chain", "next_attempt_at"],
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "processed_events",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("chain", chain_side, nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("event_name", sa.String(length=64), nullable=False),
        sa.Column("name_hash", sa.String(length=66), nullable=True),
        sa.Column("applied_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chain", "tx_hash", "log_index", name="uq_processed_events_identity"
        ),
    )
    op.create_index("ix_processed_events_chain", "processed_events", ["chain"])
    op.create_index("ix_processed_events_tx_hash", "processed_events", ["tx_hash"])
    op.create_index("ix_processed_events_block_number", "processed_events", ["block_number"])
    op.create_index("ix_processed_events_name_hash", "processed_events", ["name_hash"])

    op.create_table(
        "scan_checkpoints",
        sa.Column("chain", chain_side, nullable=False),
        sa.Column("contract_group", sa.String(length=64), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=False),
        sa.Column("events_processed", sa.BigInteger(), nullable=False),
        sa.Column("last_tick_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.String(length=1000), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("chain", "contract_group"),
    )


def downgrade() -> None:
    """Drop all sync engine tables and enum types."""
    op.drop_table("scan_checkpoints")
    op.drop_table("processed_events")
    op.drop_table("sync_jobs")
    op.drop_table("records")
    op.drop_table("domains")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
