"""Create lease and sync run tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE sync_run_status AS ENUM ('running', 'completed', 'failed');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute("""
        DO $$ BEGIN
            CREATE TYPE sync_run_kind AS ENUM ('full', 'project', 'board', 'sprint', 'issue', 'changelog');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Create sync_leases table
    op.create_table(
        "sync_leases",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("lock_name", sa.String(255), nullable=False),
        sa.Column("holder_id", sa.String(255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_sync_leases_name_active", "sync_leases", ["lock_name", "is_active"])
    op.create_index("ix_sync_leases_expires_at", "sync_leases", ["expires_at"])
    op.create_index("ix_sync_leases_acquired_at", "sync_leases", ["acquired_at"])

    # At most one active lease per lock name
    op.execute("""
        CREATE UNIQUE INDEX uq_sync_leases_active_lock
        ON sync_leases (lock_name)
        WHERE is_active
    """)

    # Create sync_runs table
    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column(
            "kind",
            postgresql.ENUM(
                "full", "project", "board", "sprint", "issue", "changelog",
                name="sync_run_kind",
                create_type=False,
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            postgresql.ENUM("running", "completed", "failed", name="sync_run_status", create_type=False),
            nullable=False,
            server_default="running",
        ),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_name", sa.String(255), nullable=True),
        sa.Column("scope", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_sync_runs_kind_status_end", "sync_runs", ["kind", "status", "end_time"])
    op.create_index("ix_sync_runs_start_time", "sync_runs", ["start_time"])
    op.create_index("ix_sync_runs_lock_name", "sync_runs", ["lock_name"])

    # Abandoned-run sweep only looks at running records
    op.execute("""
        CREATE INDEX ix_sync_runs_running_start
        ON sync_runs (start_time)
        WHERE status = 'running'
    """)


def downgrade() -> None:
    # Drop indexes
    op.execute("DROP INDEX IF EXISTS ix_sync_runs_running_start")
    op.drop_index("ix_sync_runs_lock_name")
    op.drop_index("ix_sync_runs_start_time")
    op.drop_index("ix_sync_runs_kind_status_end")
    op.execute("DROP INDEX IF EXISTS uq_sync_leases_active_lock")
    op.drop_index("ix_sync_leases_acquired_at")
    op.drop_index("ix_sync_leases_expires_at")
    op.drop_index("ix_sync_leases_name_active")

    # Drop tables
    op.drop_table("sync_runs")
    op.drop_table("sync_leases")

    # Drop enums
    op.execute("DROP TYPE IF EXISTS sync_run_kind")
    op.execute("DROP TYPE IF EXISTS sync_run_status")
