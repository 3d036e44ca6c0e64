from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _payment_columns(payment_status) -> list[sa.Column]:
    return [
        sa.Column("gross_cents", sa.Integer(), nullable=False),
        sa.Column("processor_fee_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("coach_payout_cents", sa.Integer(), nullable=False),
        sa.Column("payment_status", payment_status, server_default="awaiting_client_payment"),
        sa.Column("payment_due_at", sa.DateTime(timezone=True)),
        sa.Column("payment_final_reminder_sent_at", sa.DateTime(timezone=True)),
        sa.Column("processor_hold_ref", sa.String(length=128)),
        sa.Column("processor_charge_ref", sa.String(length=128)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("refund_amount_cents", sa.Integer()),
        sa.Column("refund_ref", sa.String(length=128)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
    ]


def upgrade() -> None:
    user_role = postgresql.ENUM("client", "coach", "admin", name="userrole", create_type=False)
    user_role.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("role", user_role, server_default="client"),
        sa.Column("timezone", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "coach_profiles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("hourly_rate", sa.Numeric(10, 2), nullable=False),
        sa.Column("platform_fee_percentage", sa.Numeric(5, 2), server_default="15"),
        sa.Column("processor_account_id", sa.String(length=128)),
        sa.Column("allow_public_groups", sa.Boolean(), server_default=sa.true()),
        sa.CheckConstraint(
            "platform_fee_percentage >= 0 AND platform_fee_percentage < 100",
            name="ck_coach_platform_fee_range",
        ),
    )

    op.create_table(
        "recurring_lesson_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("coach_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), index=True),
        sa.Column("title", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("duration_min", sa.Integer(), nullable=False),
        sa.Column("min_participants", sa.Integer(), nullable=False),
        sa.Column("max_participants", sa.Integer(), nullable=False),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        sa.Column("location", sa.JSON()),
        sa.Column("starts_on", sa.Date(), nullable=False),
        sa.Column("ends_on", sa.Date()),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("deactivated_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="ck_recurring_day_of_week"),
        sa.CheckConstraint("max_participants >= min_participants", name="ck_recurring_capacity"),
    )

    booking_type = postgresql.ENUM("individual", "private_group", "public_group", name="bookingtype", create_type=False)
    booking_type.create(op.get_bind(), checkfirst=True)
    approval_status = postgresql.ENUM(
        "pending_review", "accepted", "declined", "cancelled", "expired", name="approvalstatus", create_type=False
    )
    approval_status.create(op.get_bind(), checkfirst=True)
    fulfillment_status = postgresql.ENUM("scheduled", "completed", "disputed", name="fulfillmentstatus", create_type=False)
    fulfillment_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_type", booking_type, nullable=False),
        sa.Column("coach_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), index=True),
        sa.Column("scheduled_start_at", sa.DateTime(timezone=True), index=True),
        sa.Column("scheduled_end_at", sa.DateTime(timezone=True)),
        sa.Column("duration_min", sa.Integer(), nullable=False),
        sa.Column("location", sa.JSON()),
        sa.Column("approval_status", approval_status, server_default="pending_review", index=True),
        sa.Column("fulfillment_status", fulfillment_status, server_default="scheduled"),
        sa.Column("idempotency_key", sa.String(length=64), index=True),
        sa.Column("coach_responded_at", sa.DateTime(timezone=True)),
        sa.Column("coach_marked_complete_at", sa.DateTime(timezone=True)),
        sa.Column("client_confirmed_complete_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("disputed_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_reason", sa.String(length=1000)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_by", sa.String(length=64)),
        sa.Column("cancellation_reason", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("scheduled_end_at > scheduled_start_at", name="ck_booking_window"),
    )

    payment_status = postgresql.ENUM(
        "awaiting_client_payment", "captured", "failed", "refunded", name="detailpaymentstatus", create_type=False
    )
    payment_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "individual_booking_details",
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), index=True),
        sa.Column("hourly_rate", sa.Numeric(10, 2), nullable=False),
        sa.Column("client_message", sa.Text()),
        *_payment_columns(payment_status),
    )

    op.create_table(
        "private_group_booking_details",
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("organizer_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), index=True),
        sa.Column("headcount", sa.Integer(), nullable=False),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        sa.Column("client_message", sa.Text()),
        *_payment_columns(payment_status),
    )

    capacity_status = postgresql.ENUM("open", "full", "cancelled", name="capacitystatus", create_type=False)
    capacity_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "public_group_lesson_details",
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("title", sa.String(length=255)),
        sa.Column("description", sa.Text()),
        sa.Column("min_participants", sa.Integer(), nullable=False),
        sa.Column("max_participants", sa.Integer(), nullable=False),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        sa.Column("capacity_status", capacity_status, server_default="open"),
        sa.Column("current_participants", sa.Integer(), server_default="0"),
        sa.Column("authorized_participants", sa.Integer(), server_default="0"),
        sa.Column("captured_participants", sa.Integer(), server_default="0"),
        sa.Column(
            "recurring_template_id",
            sa.Integer(),
            sa.ForeignKey("recurring_lesson_templates.id", ondelete="SET NULL"),
            index=True,
        ),
        sa.CheckConstraint("min_participants >= 2", name="ck_public_lesson_min"),
        sa.CheckConstraint("max_participants >= min_participants", name="ck_public_lesson_max"),
        sa.CheckConstraint(
            "captured_participants <= authorized_participants"
            " AND authorized_participants <= current_participants"
            " AND current_participants <= max_participants",
            name="ck_public_lesson_counters",
        ),
    )

    participant_status = postgresql.ENUM(
        "awaiting_payment", "confirmed", "cancelled", name="participantstatus", create_type=False
    )
    participant_status.create(op.get_bind(), checkfirst=True)
    participant_payment_status = postgresql.ENUM(
        "requires_payment_method",
        "created",
        "captured",
        "failed",
        "refunded",
        name="participantpaymentstatus",
        create_type=False,
    )
    participant_payment_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "booking_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id", ondelete="CASCADE"), index=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), index=True),
        sa.Column("status", participant_status, server_default="awaiting_payment"),
        sa.Column("payment_status", participant_payment_status, server_default="requires_payment_method"),
        sa.Column("amount_cents", sa.Integer(), server_default="0"),
        sa.Column("processor_fee_cents", sa.Integer(), server_default="0"),
        sa.Column("platform_fee_cents", sa.Integer(), server_default="0"),
        sa.Column("coach_payout_cents", sa.Integer(), server_default="0"),
        sa.Column("hold_idempotency_key", sa.String(length=128)),
        sa.Column("processor_ref", sa.String(length=128)),
        sa.Column("processor_charge_ref", sa.String(length=128)),
        sa.Column("expires_at", sa.DateTime(timezone=True), index=True),
        sa.Column("hold_released_at", sa.DateTime(timezone=True)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("refund_amount_cents", sa.Integer()),
        sa.Column("refund_ref", sa.String(length=128)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("booking_id", "user_id", name="uq_participant_booking_user"),
    )

    op.create_table(
        "group_pricing_tiers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("coach_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), index=True),
        sa.Column("min_participants", sa.Integer(), nullable=False),
        sa.Column("max_participants", sa.Integer()),
        sa.Column("price_per_person_cents", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), server_default="0"),
        sa.CheckConstraint("min_participants >= 2", name="ck_tier_min"),
        sa.CheckConstraint(
            "max_participants IS NULL OR max_participants >= min_participants",
            name="ck_tier_max",
        ),
        sa.CheckConstraint("price_per_person_cents > 0", name="ck_tier_price"),
    )

    op.create_table(
        "booking_state_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.Integer(), nullable=False, index=True),
        sa.Column("participant_id", sa.Integer(), index=True),
        sa.Column("field", sa.String(length=64), nullable=False),
        sa.Column("old_value", sa.String(length=64)),
        sa.Column("new_value", sa.String(length=64), nullable=False),
        sa.Column("actor", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("booking_state_transitions")
    op.drop_table("group_pricing_tiers")
    op.drop_table("booking_participants")
    op.drop_table("public_group_lesson_details")
    op.drop_table("private_group_booking_details")
    op.drop_table("individual_booking_details")
    op.drop_table("bookings")
    op.drop_table("recurring_lesson_templates")
    op.drop_table("coach_profiles")
    op.drop_table("users")
    for enum_name in (
        "participantpaymentstatus",
        "participantstatus",
        "capacitystatus",
        "detailpaymentstatus",
        "fulfillmentstatus",
        "approvalstatus",
        "bookingtype",
        "userrole",
    ):
        postgresql.ENUM(name=enum_name).drop(op.get_bind(), checkfirst=True)
