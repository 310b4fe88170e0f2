"""settlement records table

Revision ID: 0001_settlement_records
Revises:
Create Date: 2026-09-28 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_settlement_records"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.settlement_records (
          kind text NOT NULL CHECK (kind IN ('ALLOCATION', 'DISBURSEMENT')),
          ref text NOT NULL,
          status text NOT NULL DEFAULT 'PENDING' CHECK (
            status IN ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED', 'AWAITING_TX_HASH', 'AWAITING_AMOUNT')
          ),
          required_inputs jsonb NOT NULL DEFAULT '{}'::jsonb,
          raw_payload jsonb NOT NULL DEFAULT '{}'::jsonb,
          attempt_count integer NOT NULL DEFAULT 0,
          max_attempts integer NOT NULL DEFAULT 3,
          started_at timestamptz NULL,
          last_attempt_at timestamptz NULL,
          last_error text NULL,
          settlement_result jsonb NULL,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now(),
          PRIMARY KEY (kind, ref),
          CONSTRAINT settlement_records_attempts_bounded CHECK (attempt_count >= 0 AND attempt_count <= max_attempts),
          CONSTRAINT settlement_records_completed_has_result CHECK (status <> 'COMPLETED' OR settlement_result IS NOT NULL)
        );
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.settlement_records;")
