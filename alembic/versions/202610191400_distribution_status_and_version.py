"""add distribution status and allocation version

Revision ID: 202610191400
Revises: 202610190900
Create Date: 2026-10-19 14:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610191400"
down_revision = "202610190900"
branch_labels = None
depends_on = None


allocation_status_enum = sa.Enum("pending", "complete", name="allocationstatus")


def upgrade() -> None:
    with op.batch_alter_table("allocation_records") as batch_op:
        batch_op.add_column(
            sa.Column(
                "status",
                allocation_status_enum,
                nullable=False,
                server_default="pending",
            )
        )
        batch_op.add_column(
            sa.Column(
                "matched_amount",
                sa.Float(),
                nullable=False,
                server_default=sa.text("0"),
            )
        )

    with op.batch_alter_table("income_plans") as batch_op:
        batch_op.add_column(
            sa.Column(
                "allocations_version",
                sa.Integer(),
                nullable=False,
                server_default=sa.text("0"),
            )
        )


def downgrade() -> None:
    with op.batch_alter_table("income_plans") as batch_op:
        batch_op.drop_column("allocations_version")

    with op.batch_alter_table("allocation_records") as batch_op:
        batch_op.drop_column("matched_amount")
        batch_op.drop_column("status")
