"""Create loan ledger tables"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261001_ledger_schema"
down_revision = None
branch_labels = None
depends_on = None


PAYMENT_STATUSES = (
    "pending",
    "scheduled",
    "authorized",
    "confirmed",
    "paid",
    "failed",
    "cancelled",
    "deferred",
    "manual",
    "rejected",
    "rebate",
)
TRANSACTION_STATUSES = ("initiated", "pending", "processing", "completed", "failed", "cancelled")


def _in_list(column: str, values) -> str:
    return f"{column} IN (" + ", ".join(f"'{value}'" for value in values) + ")"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("preferred_language", sa.String(length=2), server_default="en", nullable=False),
        *_timestamps(),
        sa.CheckConstraint("preferred_language IN ('en', 'fr')", name="ck_users_preferred_language"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "loans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("application_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("principal_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("interest_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("remaining_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("disbursement_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_disbursement"),
        *_timestamps(),
        sa.CheckConstraint("principal_amount >= 0", name="ck_loans_principal_nonneg"),
        sa.CheckConstraint("remaining_balance >= 0", name="ck_loans_remaining_balance_nonneg"),
        sa.CheckConstraint("interest_rate IS NULL OR interest_rate >= 0", name="ck_loans_interest_rate_nonneg"),
        sa.CheckConstraint(
            _in_list("status", ("pending_disbursement", "active", "completed", "defaulted", "cancelled")),
            name="ck_loans_status",
        ),
    )
    op.create_index("ix_loans_application_id", "loans", ["application_id"])
    op.create_index("ix_loans_user_id", "loans", ["user_id"])
    op.create_index("ix_loans_status", "loans", ["status"])

    op.create_table(
        "loan_payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "loan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("interest", sa.Numeric(12, 2), nullable=True),
        sa.Column("principal", sa.Numeric(12, 2), nullable=True),
        sa.Column("remaining_balance", sa.Numeric(12, 2), nullable=True),
        sa.Column("payment_number", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(length=32), nullable=True),
        sa.Column("external_transaction_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(_in_list("status", PAYMENT_STATUSES), name="ck_loan_payments_status"),
        sa.CheckConstraint(
            "payment_number IS NULL OR payment_number >= 1",
            name="ck_loan_payments_number_positive",
        ),
    )
    op.create_index("ix_loan_payments_loan_id", "loan_payments", ["loan_id"])
    op.create_index("ix_loan_payments_payment_date", "loan_payments", ["payment_date"])
    op.create_index("ix_loan_payments_status", "loan_payments", ["status"])
    op.create_index("ix_loan_payments_loan_date", "loan_payments", ["loan_id", "payment_date"])

    op.create_table(
        "loan_contracts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "loan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loans.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("contract_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "contract_terms",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_loan_contracts_loan_id", "loan_contracts", ["loan_id"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "loan_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "loan_payment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loan_payments.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="processor"),
        sa.Column("external_transaction_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("transaction_type", sa.String(length=32), nullable=False, server_default="collection"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="initiated"),
        sa.Column(
            "provider_data",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.CheckConstraint(_in_list("status", TRANSACTION_STATUSES), name="ck_payment_transactions_status"),
        sa.CheckConstraint(
            "transaction_type IN ('collection', 'disbursement')",
            name="ck_payment_transactions_type",
        ),
    )
    op.create_index("ix_payment_transactions_loan_payment_id", "payment_transactions", ["loan_payment_id"])
    op.create_index("ix_payment_transactions_loan_status", "payment_transactions", ["loan_id", "status"])

    op.create_table(
        "outbox_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("topic", sa.String(length=100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('pending', 'delivered', 'failed')", name="ck_outbox_messages_status"),
        sa.CheckConstraint("attempts >= 0", name="ck_outbox_messages_attempts_nonneg"),
    )
    op.create_index("ix_outbox_messages_status_available", "outbox_messages", ["status", "available_at"])


def downgrade() -> None:
    op.drop_index("ix_outbox_messages_status_available", table_name="outbox_messages")
    op.drop_table("outbox_messages")
    op.drop_index("ix_payment_transactions_loan_status", table_name="payment_transactions")
    op.drop_index("ix_payment_transactions_loan_payment_id", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index("ix_loan_contracts_loan_id", table_name="loan_contracts")
    op.drop_table("loan_contracts")
    op.drop_index("ix_loan_payments_loan_date", table_name="loan_payments")
    op.drop_index("ix_loan_payments_status", table_name="loan_payments")
    op.drop_index("ix_loan_payments_payment_date", table_name="loan_payments")
    op.drop_index("ix_loan_payments_loan_id", table_name="loan_payments")
    op.drop_table("loan_payments")
    op.drop_index("ix_loans_status", table_name="loans")
    op.drop_index("ix_loans_user_id", table_name="loans")
    op.drop_index("ix_loans_application_id", table_name="loans")
    op.drop_table("loans")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
