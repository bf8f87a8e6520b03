"""initial reconciliation schema"""
from alembic import op
import sqlalchemy as sa

revision = "20261001_initial_reconciliation_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("milestone_id", sa.Integer(), nullable=False),
        sa.Column("business_id", sa.Integer(), nullable=True),
        sa.Column("contractor_id", sa.Integer(), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("intent_status", sa.String(length=64), nullable=True),
        sa.Column("transfer_status", sa.String(length=64), nullable=True),
        sa.Column("rail", sa.String(length=16), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=128), nullable=True),
        sa.Column("transfer_id", sa.String(length=128), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.UniqueConstraint("payment_intent_id"),
        sa.UniqueConstraint("transfer_id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index("ix_payments_contract", "payments", ["contract_id"])
    op.create_index("ix_payments_business", "payments", ["business_id"])
    op.create_index("ix_payments_milestone_id", "payments", ["milestone_id"])
    op.create_index("ix_payments_contractor_id", "payments", ["contractor_id"])

    op.create_table(
        "contractor_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("contractor_id", sa.Integer(), nullable=False),
        sa.Column("rail", sa.String(length=16), nullable=False),
        sa.Column("external_account_id", sa.String(length=128), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("contractor_id", "rail", name="uq_contractor_accounts_contractor_rail"),
        sa.UniqueConstraint("external_account_id"),
    )
    op.create_index("ix_contractor_accounts_contractor_id", "contractor_accounts", ["contractor_id"])

    op.create_table(
        "budget_periods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("business_id", sa.Integer(), nullable=False),
        sa.Column("cap", sa.BigInteger(), nullable=True),
        sa.Column("used", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reset_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint("used >= 0", name="ck_budget_used_non_negative"),
        sa.CheckConstraint("cap IS NULL OR cap >= 0", name="ck_budget_cap_non_negative"),
    )
    op.create_index("ix_budget_periods_business_id", "budget_periods", ["business_id"], unique=True)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_budget_periods_business_id", table_name="budget_periods")
    op.drop_table("budget_periods")
    op.drop_index("ix_contractor_accounts_contractor_id", table_name="contractor_accounts")
    op.drop_table("contractor_accounts")
    for name in (
        "ix_payments_contractor_id",
        "ix_payments_milestone_id",
        "ix_payments_business",
        "ix_payments_contract",
        "ix_payments_created_at",
    ):
        op.drop_index(name, table_name="payments")
    op.drop_table("payments")
