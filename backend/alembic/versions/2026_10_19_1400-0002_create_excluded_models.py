"""create excluded_models

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

One row per (company, key, model) taken out of rotation after its daily
quota ran out; retry_at drives the re-check schedule.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "excluded_models",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.UUID(), nullable=False),
        sa.Column("key_id", sa.UUID(), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False, server_default="RPD_EXHAUSTED"),
        sa.Column("excluded_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("retry_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["key_id"], ["gemini_keys.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "company_id", "key_id", "model",
            name="uq_excluded_models_company_key_model",
        ),
    )
    # The selector re-checks rows whose retry_at has passed
    op.create_index("ix_excluded_models_retry_at", "excluded_models", ["retry_at"])


def downgrade() -> None:
    op.drop_index("ix_excluded_models_retry_at", table_name="excluded_models")
    op.drop_table("excluded_models")
