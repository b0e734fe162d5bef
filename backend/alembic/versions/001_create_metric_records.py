"""Create metric_records table

Revision ID: 001
Revises: None
Create Date: 2026-10-18 00:00:00.000000+00:00

What:  Creates `metric_records`, one row per stored health measurement.
How:   PostgreSQL UUID keys, TIMESTAMP WITH TIME ZONE, JSONB raw payload.

Rollback: downgrade() drops the table (all stored metrics are lost).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "metric_records",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            comment="Owner of the measurement",
        ),
        sa.Column(
            "device_id",
            postgresql.UUID(as_uuid=True),
            nullable=True,
            comment="Capturing device, when known",
        ),
        sa.Column("metric_type", sa.String(50), nullable=False),
        sa.Column("value", sa.Numeric(10, 2), nullable=False),
        sa.Column("unit", sa.String(20), nullable=False),
        sa.Column("start_time", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_time", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("source", sa.String(255), nullable=False),
        sa.Column("raw_payload", postgresql.JSONB(), nullable=True),
        sa.Column(
            "confidence",
            sa.Numeric(3, 2),
            nullable=True,
            comment="Estimator confidence in [0, 1]",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id", name="pk_metric_records"),
    )

    # Per-user metric history, newest-first range scans
    op.create_index(
        "idx_metric_records_user_type_start",
        "metric_records",
        ["user_id", "metric_type", "start_time"],
    )
    op.create_index("idx_metric_records_start_time", "metric_records", ["start_time"])


def downgrade() -> None:
    op.drop_index("idx_metric_records_start_time", table_name="metric_records")
    op.drop_index("idx_metric_records_user_type_start", table_name="metric_records")
    op.drop_table("metric_records")
