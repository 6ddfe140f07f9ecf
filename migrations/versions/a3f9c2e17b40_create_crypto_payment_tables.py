"""create crypto payment tables

Revision ID: a3f9c2e17b40
Revises:
Create Date: 2026-09-28 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "a3f9c2e17b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _get_inspector():
    conn = op.get_bind()
    return conn, sa.inspect(conn)


def _table_exists(inspector, table_name: str) -> bool:
    try:
        return table_name in inspector.get_table_names()
    except Exception:
        return False


def upgrade() -> None:
    _, inspector = _get_inspector()

    if not _table_exists(inspector, "crypto_payments"):
        op.create_table(
            "crypto_payments",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("plan_id", sa.String(length=36), nullable=True),
            sa.Column("payment_method", sa.String(length=16), nullable=False),
            sa.Column("tx_id", sa.String(length=128), nullable=False),
            sa.Column("from_address", sa.String(length=128), nullable=True),
            sa.Column("to_address", sa.String(length=128), nullable=False),
            sa.Column("amount", sa.Numeric(36, 18), nullable=True),
            sa.Column("currency", sa.String(length=16), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("confirmation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("required_confirmations", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("block_height", sa.BigInteger(), nullable=True),
            sa.Column("block_hash", sa.String(length=128), nullable=True),
            sa.Column("network_fee", sa.Numeric(36, 18), nullable=True),
            sa.Column("verification_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_verification_at", sa.DateTime(), nullable=True),
            sa.Column("verified_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("proof_url", sa.String(length=1024), nullable=True),
            sa.Column("image_hash", sa.String(length=64), nullable=True),
            sa.Column("ai_extracted", sa.JSON(), nullable=True),
            sa.Column("ai_confidence", sa.Float(), nullable=True),
            sa.Column("fraud_score", sa.Float(), nullable=True),
            sa.Column("fraud_signals", sa.JSON(), nullable=True),
            sa.Column("recommendations", sa.JSON(), nullable=True),
            sa.Column("validation_status", sa.String(length=16), nullable=True),
            sa.Column("auto_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("low_confidence", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("admin_override", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("reviewed_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_crypto_payments_user_id", "crypto_payments", ["user_id"])
        op.create_index("ix_crypto_payments_tx_id", "crypto_payments", ["tx_id"])
        op.create_index("ix_crypto_payments_status", "crypto_payments", ["status"])
        op.create_index("ix_crypto_payments_expires_at", "crypto_payments", ["expires_at"])
        op.create_index("ix_crypto_payments_image_hash", "crypto_payments", ["image_hash"])
        op.create_index("ix_crypto_payments_created_at", "crypto_payments", ["created_at"])

    if not _table_exists(inspector, "crypto_payment_verifications"):
        op.create_table(
            "crypto_payment_verifications",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("payment_id", sa.String(length=36), sa.ForeignKey("crypto_payments.id"), nullable=False),
            sa.Column("verification_type", sa.String(length=16), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("confirmation_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("explorer_response", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index(
            "ix_crypto_payment_verifications_payment_id", "crypto_payment_verifications", ["payment_id"]
        )

    if not _table_exists(inspector, "subscriptions"):
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("plan_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
            sa.Column("payment_id", sa.String(length=36), nullable=True),
            sa.Column("current_period_start", sa.DateTime(), nullable=False),
            sa.Column("current_period_end", sa.DateTime(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_crypto_payment_verifications_payment_id", table_name="crypto_payment_verifications")
    op.drop_table("crypto_payment_verifications")
    for index in ("created_at", "image_hash", "expires_at", "status", "tx_id", "user_id"):
        op.drop_index(f"ix_crypto_payments_{index}", table_name="crypto_payments")
    op.drop_table("crypto_payments")
