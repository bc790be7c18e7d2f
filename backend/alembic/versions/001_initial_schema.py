# backend/alembic/versions/001_initial_schema.py
"""Initial schema - calendar, classes, requests, ledger, escrow, deposits, payments, outbox

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates every table of the scheduling and settlement engine. On PostgreSQL
it also adds a btree_gist exclusion constraint forbidding overlapping live
schedule entries per tutor.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(18, 2)
RATE = sa.Numeric(6, 4)
STATUS = sa.String(32)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    # Requests and classes
    op.create_table(
        "class_requests",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=True),
        sa.Column("subject", sa.String(120), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("mode", STATUS, nullable=False),
        sa.Column("budget", MONEY, nullable=False),
        sa.Column("student_limit", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("class_start_date", sa.Date(), nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="pending"),
        _ts("expires_at"),
        _ts("cancelled_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("budget > 0", name="ck_class_requests_budget_positive"),
    )
    op.create_index("ix_class_requests_student_id", "class_requests", ["student_id"])
    op.create_index("ix_class_requests_tutor_id", "class_requests", ["tutor_id"])
    op.create_index("ix_class_requests_status", "class_requests", ["status"])
    op.create_index("ix_class_requests_expires_at", "class_requests", ["expires_at"])

    op.create_table(
        "tutor_applications",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("class_request_id", sa.String(26), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", STATUS, nullable=False, server_default="pending"),
        _ts("applied_at"),
        _ts("responded_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_request_id"], ["class_requests.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("class_request_id", "tutor_id", name="uq_tutor_applications_request_tutor"),
    )
    op.create_index("ix_tutor_applications_tutor_id", "tutor_applications", ["tutor_id"])

    op.create_table(
        "classes",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("class_request_id", sa.String(26), nullable=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("subject", sa.String(120), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("mode", STATUS, nullable=False),
        sa.Column("price", MONEY, nullable=False),
        sa.Column("student_limit", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_student_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="pending"),
        sa.Column("cancellation_reason", STATUS, nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        _ts("cancelled_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_request_id"], ["class_requests.id"]),
        sa.UniqueConstraint("class_request_id", name="uq_classes_class_request_id"),
        sa.CheckConstraint("price >= 0", name="ck_classes_price_non_negative"),
        sa.CheckConstraint("student_limit >= 1", name="ck_classes_student_limit_positive"),
        sa.CheckConstraint(
            "current_student_count >= 0 AND current_student_count <= student_limit",
            name="ck_classes_student_count_bounds",
        ),
    )
    op.create_index("ix_classes_tutor_id", "classes", ["tutor_id"])
    op.create_index("ix_classes_status", "classes", ["status"])

    op.create_table(
        "class_assigns",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("class_id", sa.String(26), nullable=False),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("approval_status", STATUS, nullable=False, server_default="pending"),
        sa.Column("payment_status", STATUS, nullable=False, server_default="unpaid"),
        sa.Column("payment_waived", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("enrolled_at"),
        _ts("approved_at", nullable=True),
        _ts("withdrawn_at", nullable=True),
        sa.Column("withdrawal_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("class_id", "student_id", name="uq_class_assigns_class_student"),
    )
    op.create_index("ix_class_assigns_student_id", "class_assigns", ["student_id"])

    op.create_table(
        "lessons",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("class_id", sa.String(26), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="scheduled"),
        _ts("completed_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("class_id", "sequence", name="uq_lessons_class_sequence"),
    )
    op.create_index("ix_lessons_class_id", "lessons", ["class_id"])
    op.create_index("ix_lessons_status", "lessons", ["status"])

    # Tutor calendar
    op.create_table(
        "recurring_schedule_rules",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("class_request_id", sa.String(26), nullable=True),
        sa.Column("class_id", sa.String(26), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_request_id"], ["class_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"], ondelete="CASCADE"),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_schedule_rules_day_of_week"),
        sa.CheckConstraint("start_time < end_time", name="ck_schedule_rules_time_order"),
        sa.CheckConstraint(
            "(class_request_id IS NULL) <> (class_id IS NULL)", name="ck_schedule_rules_single_owner"
        ),
    )
    op.create_index("ix_recurring_schedule_rules_class_request_id", "recurring_schedule_rules", ["class_request_id"])
    op.create_index("ix_recurring_schedule_rules_class_id", "recurring_schedule_rules", ["class_id"])

    op.create_table(
        "availability_blocks",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("rules", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("until_date", sa.Date(), nullable=False),
        _ts("created_at"),
        _ts("deleted_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("start_date <= until_date", name="ck_availability_blocks_date_order"),
    )
    op.create_index("ix_availability_blocks_tutor_id", "availability_blocks", ["tutor_id"])

    op.create_table(
        "schedule_entries",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        _ts("start_at"),
        _ts("end_at"),
        sa.Column("entry_type", STATUS, nullable=False),
        sa.Column("lesson_id", sa.String(26), nullable=True),
        sa.Column("block_id", sa.String(26), nullable=True),
        _ts("deleted_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lesson_id"], ["lessons.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["block_id"], ["availability_blocks.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("lesson_id", name="uq_schedule_entries_lesson_id"),
        sa.CheckConstraint("start_at < end_at", name="ck_schedule_entries_time_order"),
        sa.CheckConstraint(
            "(entry_type = 'lesson' AND lesson_id IS NOT NULL AND block_id IS NULL) OR "
            "(entry_type = 'block' AND block_id IS NOT NULL AND lesson_id IS NULL)",
            name="ck_schedule_entries_payload",
        ),
    )
    op.create_index("ix_schedule_entries_tutor_window", "schedule_entries", ["tutor_id", "start_at", "end_at"])

    if is_postgres:
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            """
            ALTER TABLE schedule_entries
              ADD CONSTRAINT schedule_entries_no_overlap_per_tutor
              EXCLUDE USING gist (
                tutor_id WITH =,
                tstzrange(start_at, end_at, '[)') WITH &&
              )
              WHERE (deleted_at IS NULL)
            """
        )

    op.create_table(
        "tutor_schedule_locks",
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("tutor_id"),
    )

    op.create_table(
        "reschedule_requests",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("lesson_id", sa.String(26), nullable=False),
        sa.Column("schedule_entry_id", sa.String(26), nullable=False),
        sa.Column("requester_id", sa.String(64), nullable=False),
        sa.Column("responder_id", sa.String(64), nullable=True),
        _ts("old_start_at"),
        _ts("old_end_at"),
        _ts("new_start_at"),
        _ts("new_end_at"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", STATUS, nullable=False, server_default="pending"),
        _ts("created_at"),
        _ts("responded_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lesson_id"], ["lessons.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_entry_id"], ["schedule_entries.id"]),
        sa.CheckConstraint("new_start_at < new_end_at", name="ck_reschedule_requests_time_order"),
    )
    op.create_index("ix_reschedule_requests_lesson_id", "reschedule_requests", ["lesson_id"])
    op.create_index("ix_reschedule_requests_requester_id", "reschedule_requests", ["requester_id"])
    op.create_index(
        "uq_reschedule_requests_pending_per_lesson",
        "reschedule_requests",
        ["lesson_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    # Ledger
    op.create_table(
        "wallets",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("version", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )
    op.create_index("ix_wallets_user_id", "wallets", ["user_id"], unique=True)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("wallet_id", sa.String(26), nullable=False),
        sa.Column("type", STATUS, nullable=False),
        sa.Column("direction", STATUS, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="succeeded"),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("counterparty_wallet_id", sa.String(26), nullable=True),
        sa.Column("reference_type", sa.String(40), nullable=True),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["wallet_id"], ["wallets.id"]),
        sa.ForeignKeyConstraint(["counterparty_wallet_id"], ["wallets.id"]),
        sa.CheckConstraint("amount > 0", name="ck_wallet_transactions_amount_positive"),
    )
    op.create_index("ix_wallet_transactions_wallet_id", "wallet_transactions", ["wallet_id"])
    op.create_index(
        "ix_wallet_transactions_reference", "wallet_transactions", ["reference_type", "reference_id"]
    )

    op.create_table(
        "commission_configs",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("one_to_one_online", RATE, nullable=False),
        sa.Column("one_to_one_offline", RATE, nullable=False),
        sa.Column("group_online", RATE, nullable=False),
        sa.Column("group_offline", RATE, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(64), nullable=True),
        _ts("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_commission_configs_single_active",
        "commission_configs",
        ["is_active"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )

    op.create_table(
        "escrows",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("class_id", sa.String(26), nullable=False),
        sa.Column("class_assign_id", sa.String(26), nullable=False),
        sa.Column("payer_user_id", sa.String(64), nullable=False),
        sa.Column("student_id", sa.String(64), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("gross_amount", MONEY, nullable=False),
        sa.Column("commission_rate_snapshot", RATE, nullable=False),
        sa.Column("commission_amount", MONEY, nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="held"),
        sa.Column("released_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("refunded_amount", MONEY, nullable=False, server_default="0"),
        _ts("released_at", nullable=True),
        _ts("refunded_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"]),
        sa.ForeignKeyConstraint(["class_assign_id"], ["class_assigns.id"]),
        sa.CheckConstraint("gross_amount > 0", name="ck_escrows_gross_positive"),
        sa.CheckConstraint(
            "released_amount + refunded_amount <= gross_amount", name="ck_escrows_settled_bounds"
        ),
    )
    op.create_index("ix_escrows_class_id", "escrows", ["class_id"])
    op.create_index("ix_escrows_class_assign_id", "escrows", ["class_assign_id"])
    op.create_index("ix_escrows_payer_user_id", "escrows", ["payer_user_id"])
    op.create_index("ix_escrows_tutor_id", "escrows", ["tutor_id"])
    op.create_index("ix_escrows_status", "escrows", ["status"])
    op.create_index(
        "uq_escrows_single_held_per_assign",
        "escrows",
        ["class_assign_id"],
        unique=True,
        postgresql_where=sa.text("status = 'held'"),
        sqlite_where=sa.text("status = 'held'"),
    )

    op.create_table(
        "tutor_deposits",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("class_id", sa.String(26), nullable=False),
        sa.Column("tutor_id", sa.String(64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("rate_snapshot", RATE, nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="held"),
        sa.Column("forfeit_reason", STATUS, nullable=True),
        _ts("refunded_at", nullable=True),
        _ts("forfeited_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"]),
        sa.CheckConstraint("amount > 0", name="ck_tutor_deposits_amount_positive"),
    )
    op.create_index("ix_tutor_deposits_class_id", "tutor_deposits", ["class_id"])
    op.create_index("ix_tutor_deposits_tutor_id", "tutor_deposits", ["tutor_id"])
    op.create_index("ix_tutor_deposits_status", "tutor_deposits", ["status"])
    op.create_index(
        "uq_tutor_deposits_single_held_per_class",
        "tutor_deposits",
        ["class_id"],
        unique=True,
        postgresql_where=sa.text("status = 'held'"),
        sqlite_where=sa.text("status = 'held'"),
    )

    # Payments and outbox
    op.create_table(
        "gateway_payments",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("context_type", STATUS, nullable=False),
        sa.Column("context_id", sa.String(64), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("status", STATUS, nullable=False, server_default="pending"),
        sa.Column("gateway_payment_id", sa.String(128), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("confirmed_at", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("context_id", name="uq_gateway_payments_context_id"),
        sa.CheckConstraint("amount > 0", name="ck_gateway_payments_amount_positive"),
    )
    op.create_index("ix_gateway_payments_user_id", "gateway_payments", ["user_id"])
    op.create_index("ix_gateway_payments_status", "gateway_payments", ["status"])

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.String(26), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("aggregate_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at", nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_event_outbox_idempotency_key"),
    )
    op.create_index("ix_event_outbox_event_type", "event_outbox", ["event_type"])
    op.create_index("ix_event_outbox_aggregate_id", "event_outbox", ["aggregate_id"])
    op.create_index("ix_event_outbox_status", "event_outbox", ["status"])
    op.create_index("ix_event_outbox_next_attempt_at", "event_outbox", ["next_attempt_at"])


def downgrade() -> None:
    for table in (
        "event_outbox",
        "gateway_payments",
        "tutor_deposits",
        "escrows",
        "commission_configs",
        "wallet_transactions",
        "wallets",
        "reschedule_requests",
        "tutor_schedule_locks",
        "schedule_entries",
        "availability_blocks",
        "recurring_schedule_rules",
        "lessons",
        "class_assigns",
        "classes",
        "tutor_applications",
        "class_requests",
    ):
        op.drop_table(table)
