"""Track when a receipt image was purged by the retention job.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

Expenses keep their row after the hosted image is deleted; the image
columns are cleared and ``image_deleted_at`` records when that happened.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "expenses",
        sa.Column("image_deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_expenses_hosted_images",
        "expenses",
        ["expense_date"],
        postgresql_where=sa.text("image_url IS NOT NULL AND image_deleted_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_expenses_hosted_images", table_name="expenses")
    op.drop_column("expenses", "image_deleted_at")
