"""track hand-edited allocations, stop reusing record ids

Revision ID: 202610191700
Revises: 202610191400
Create Date: 2026-10-19 17:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610191700"
down_revision = "202610191400"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("income_plans") as batch_op:
        batch_op.add_column(
            sa.Column(
                "allocations_customized",
                sa.Boolean(),
                nullable=False,
                server_default=sa.text("0"),
            )
        )

    if op.get_bind().dialect.name == "sqlite":
        with op.batch_alter_table(
            "allocation_records",
            recreate="always",
            table_kwargs={"sqlite_autoincrement": True},
        ):
            pass


def downgrade() -> None:
    if op.get_bind().dialect.name == "sqlite":
        with op.batch_alter_table(
            "allocation_records",
            recreate="always",
            table_kwargs={"sqlite_autoincrement": False},
        ):
            pass

    with op.batch_alter_table("income_plans") as batch_op:
        batch_op.drop_column("allocations_customized")
