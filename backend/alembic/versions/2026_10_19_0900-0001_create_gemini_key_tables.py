"""create companies, gemini_keys and gemini_key_models

Revision ID: 0001
Revises:
Create Date: 2026-10-19

gemini_key_models.usage is TEXT holding the JSON windows blob
(rpm/rph/rpd/tpm), not JSONB; rows are read-modify-written as a whole
under SELECT … FOR UPDATE.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("use_central_keys", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "gemini_keys",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("company_id", sa.UUID(), nullable=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("api_key", sa.Text(), nullable=False),
        sa.Column("key_type", sa.String(10), nullable=False, server_default="COMPANY"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["company_id"], ["companies.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "key_type IN ('COMPANY', 'CENTRAL')",
            name="ck_gemini_keys_key_type_valid",
        ),
    )
    op.create_index("ix_gemini_keys_company_id", "gemini_keys", ["company_id"])

    op.create_table(
        "gemini_key_models",
        sa.Column("id", sa.UUID(), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("key_id", sa.UUID(), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("usage", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("last_used", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["key_id"], ["gemini_keys.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("key_id", "model", name="uq_gemini_key_models_key_model"),
    )
    # Selection scans one key's models in priority order
    op.create_index(
        "ix_gemini_key_models_key_priority",
        "gemini_key_models",
        ["key_id", "priority"],
    )


def downgrade() -> None:
    op.drop_index("ix_gemini_key_models_key_priority", table_name="gemini_key_models")
    op.drop_table("gemini_key_models")
    op.drop_index("ix_gemini_keys_company_id", table_name="gemini_keys")
    op.drop_table("gemini_keys")
    op.drop_table("companies")
