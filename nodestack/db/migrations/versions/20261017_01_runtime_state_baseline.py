"""Runtime state and certificate schema baseline

Revision ID: 20261017_01
Revises: None
Create Date: 2026-10-17
"""
# pylint: disable=no-member,invalid-name,wrong-import-order

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_01"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""

    op.create_table(
        "service_runtime_state",
        sa.Column("service_name", sa.Text(), primary_key=True),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("start_sequence", sa.Integer(), nullable=True),
        sa.Column("restart_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("stop_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("updated_at_utc", sa.Text(), nullable=False),
        sa.CheckConstraint(
            "state IN ('pending', 'starting', 'awaiting_health', 'healthy', 'degraded', 'stopped', 'failed')",
            name="ck_service_runtime_state_state",
        ),
    )
    op.create_index("ix_service_runtime_state_start_sequence", "service_runtime_state", ["start_sequence"])

    op.create_table(
        "orchestrator_process",
        sa.Column("slot", sa.Integer(), primary_key=True),
        sa.Column("pid", sa.Integer(), nullable=False),
        sa.Column("hostname", sa.Text(), nullable=False),
        sa.Column("started_at_utc", sa.Text(), nullable=False),
        sa.CheckConstraint("slot = 1", name="ck_orchestrator_process_single_slot"),
    )

    op.create_table(
        "certificate_record",
        sa.Column("domain", sa.Text(), primary_key=True),
        sa.Column("validation_status", sa.Text(), nullable=False),
        sa.Column("issued_at_utc", sa.Text(), nullable=True),
        sa.Column("expires_at_utc", sa.Text(), nullable=True),
        sa.Column("certificate_path", sa.Text(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("first_failure_at_utc", sa.Text(), nullable=True),
        sa.Column("next_attempt_at_utc", sa.Text(), nullable=True),
        sa.Column("updated_at_utc", sa.Text(), nullable=False),
        sa.CheckConstraint(
            "validation_status IN ('valid', 'pending', 'failed')",
            name="ck_certificate_record_validation_status",
        ),
    )


def downgrade() -> None:
    """Downgrade schema."""

    op.drop_table("certificate_record")
    op.drop_table("orchestrator_process")
    op.drop_index("ix_service_runtime_state_start_sequence", table_name="service_runtime_state")
    op.drop_table("service_runtime_state")
