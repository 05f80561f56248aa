"""Allow voided invoices.

Cancelling a group voids the unpaid invoices of its remaining cycles so a
late payment can no longer settle them.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    with op.batch_alter_table("invoices") as batch:
        batch.drop_constraint("ck_invoices_status", type_="check")
        batch.create_check_constraint("ck_invoices_status", "status IN ('pending', 'paid', 'failed', 'void')")


def downgrade() -> None:
    op.execute("UPDATE invoices SET status = 'failed' WHERE status = 'void'")
    with op.batch_alter_table("invoices") as batch:
        batch.drop_constraint("ck_invoices_status", type_="check")
        batch.create_check_constraint("ck_invoices_status", "status IN ('pending', 'paid', 'failed')")
