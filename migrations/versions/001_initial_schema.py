"""Create service request, payment, escrow and milestone tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(14, 2)


def upgrade() -> None:
    op.create_table(
        "artisans",
        sa.Column("artisan_id", sa.Uuid(), primary_key=True),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("balance", MONEY, nullable=False, server_default="0.00"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "service_requests",
        sa.Column("request_id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.Uuid(), nullable=False),
        sa.Column("artisan_id", sa.Uuid(), sa.ForeignKey("artisans.artisan_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("job_type", sa.String(64), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "open", "quote_accepted", "job_active", "completed", "cancelled",
                name="servicerequeststatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column("contact_revealed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "quotes",
        sa.Column("quote_id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("service_requests.request_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("artisan_id", sa.Uuid(), sa.ForeignKey("artisans.artisan_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_quotes_request_id", "quotes", ["request_id"])

    op.create_table(
        "service_fee_payments",
        sa.Column("fee_payment_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "request_id", sa.Uuid(),
            sa.ForeignKey("service_requests.request_id", ondelete="RESTRICT"),
            unique=True, nullable=False,
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "paid", "failed", "refunded", name="servicefeestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("transaction_ref", sa.String(128), unique=True, nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "payment_attempts",
        sa.Column("attempt_id", sa.Uuid(), primary_key=True),
        sa.Column("reference", sa.String(128), unique=True, nullable=False),
        sa.Column("purpose", sa.Enum("service_fee", "escrow", name="paymentpurpose"), nullable=False),
        sa.Column("payment_id", sa.Uuid(), nullable=False),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("service_requests.request_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("payer", sa.String(256), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "success", "failed", "timed_out", name="attemptstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("redirect_url", sa.Text(), nullable=True),
        sa.Column("instructions", JSONB, nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("channel", sa.String(32), nullable=True),
        sa.Column("paid_amount", MONEY, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_attempts_payment_id", "payment_attempts", ["payment_id"])
    op.create_index(
        "ix_payment_attempts_pending", "payment_attempts", ["status"],
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "escrow_payments",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "request_id", sa.Uuid(),
            sa.ForeignKey("service_requests.request_id", ondelete="RESTRICT"),
            unique=True, nullable=False,
        ),
        sa.Column(
            "service_fee_id", sa.Uuid(),
            sa.ForeignKey("service_fee_payments.fee_payment_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("platform_fee", MONEY, nullable=False),
        sa.Column("artisan_amount", MONEY, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "escrowed", "released", "disputed", "refunded", name="escrowstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("transaction_ref", sa.String(128), unique=True, nullable=True),
        sa.Column("paid_channel", sa.String(32), nullable=True),
        sa.Column("milestone_templates", JSONB, nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("escrowed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("platform_fee + artisan_amount = total_amount", name="ck_escrow_split_reconciles"),
        sa.CheckConstraint("platform_fee >= 0 AND artisan_amount >= 0", name="ck_escrow_non_negative"),
    )

    op.create_table(
        "escrow_milestones",
        sa.Column("milestone_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("percentage", sa.Numeric(6, 2), nullable=False),
        sa.Column("commission", MONEY, nullable=False, server_default="0.00"),
        sa.Column(
            "status",
            sa.Enum("pending", "ready", "deposited", "released", "disputed", name="milestonestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("dependencies", JSONB, nullable=False, server_default="[]"),
        sa.Column("evidence_required", JSONB, nullable=False, server_default="[]"),
        sa.Column("approval_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("resolution", sa.String(16), nullable=True),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("escrow_id", "order", name="uq_milestone_escrow_order"),
    )

    op.create_table(
        "milestone_evidence",
        sa.Column("evidence_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "milestone_id", sa.Uuid(),
            sa.ForeignKey("escrow_milestones.milestone_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "kind",
            sa.Enum(
                "photos", "documents", "video", "description", "customer_approval",
                name="evidencekind",
            ),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("submitted_by", sa.Uuid(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approved_by", sa.Uuid(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_by", sa.Uuid(), nullable=True),
    )
    op.create_index("ix_milestone_evidence_milestone_id", "milestone_evidence", ["milestone_id"])

    op.create_table(
        "escrow_ledger_entries",
        sa.Column("entry_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "milestone_id", sa.Uuid(),
            sa.ForeignKey("escrow_milestones.milestone_id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column(
            "action",
            sa.Enum(
                "created", "deposited", "milestone_funded", "released", "milestone_released",
                "refunded", "disputed", "resolved",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("commission", MONEY, nullable=True),
        sa.Column("reference", sa.String(160), unique=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_escrow_ledger_entries_escrow_id", "escrow_ledger_entries", ["escrow_id"])


def downgrade() -> None:
    op.drop_table("escrow_ledger_entries")
    op.drop_table("milestone_evidence")
    op.drop_table("escrow_milestones")
    op.drop_table("escrow_payments")
    op.drop_table("payment_attempts")
    op.drop_table("service_fee_payments")
    op.drop_table("quotes")
    op.drop_table("service_requests")
    op.drop_table("artisans")
    for enum_name in (
        "escrowaction", "evidencekind", "milestonestatus", "escrowstatus",
        "attemptstatus", "paymentpurpose", "servicefeestatus", "servicerequeststatus",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
