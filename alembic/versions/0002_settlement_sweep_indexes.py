"""indexes for sweep/worker candidate scans

Revision ID: 0002_settlement_sweep_indexes
Revises: 0001_settlement_records
Create Date: 2026-10-02 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_settlement_sweep_indexes"
down_revision = "0001_settlement_records"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_settlement_records_status_updated
          ON app.settlement_records (status, updated_at);
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_settlement_records_pending_created
          ON app.settlement_records (created_at)
          WHERE status = 'PENDING';
        """
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS app.ix_settlement_records_pending_created;")
    op.execute("DROP INDEX IF EXISTS app.ix_settlement_records_status_updated;")
