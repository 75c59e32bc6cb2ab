from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)
ACTIVE_WITHDRAWAL = sa.text("status IN ('requested', 'approved')")


def upgrade():
    op.create_table(
        "services",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("commission_percent", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )

    op.create_table(
        "technicians",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("skills", sa.JSON(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=True),
        sa.Column("pincode", sa.String(), nullable=True),
        sa.Column("is_online", sa.Boolean(), nullable=False),
        sa.Column("profile_complete", sa.Boolean(), nullable=False),
        sa.Column("training_completed", sa.Boolean(), nullable=False),
        sa.Column("work_status", sa.String(), nullable=False),
        sa.Column("rating_avg", sa.Float(), nullable=False),
        sa.Column("rating_count", sa.Integer(), nullable=False),
        sa.Column("jobs_completed", sa.Integer(), nullable=False),
        sa.Column("wallet_balance", MONEY, nullable=False),
    )
    op.create_index("ix_technicians_user_id", "technicians", ["user_id"], unique=True)
    op.create_index("ix_technicians_pincode", "technicians", ["pincode"], unique=False)
    op.create_index("ix_technicians_is_online", "technicians", ["is_online"], unique=False)

    op.create_table(
        "technician_kyc",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("technician_id", sa.String(36), sa.ForeignKey("technicians.id"), nullable=False, unique=True),
        sa.Column("verification_status", sa.String(), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "service_bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("customer_id", sa.String(36), nullable=False),
        sa.Column("service_id", sa.String(36), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("technician_id", sa.String(36), sa.ForeignKey("technicians.id"), nullable=True),
        sa.Column("base_amount", MONEY, nullable=False),
        sa.Column("address", sa.String(), nullable=False),
        sa.Column("address_snapshot", sa.JSON(), nullable=True),
        sa.Column("city", sa.String(), nullable=True),
        sa.Column("state", sa.String(), nullable=True),
        sa.Column("pincode", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("radius_meters", sa.Float(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("broadcasted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_service_bookings_customer_id", "service_bookings", ["customer_id"], unique=False)
    op.create_index("ix_service_bookings_service_id", "service_bookings", ["service_id"], unique=False)
    op.create_index("ix_service_bookings_technician_id", "service_bookings", ["technician_id"], unique=False)
    op.create_index("ix_service_bookings_payment_status", "service_bookings", ["payment_status"], unique=False)
    op.create_index("ix_service_bookings_status", "service_bookings", ["status"], unique=False)
    op.create_index(
        "ix_service_bookings_technician_status", "service_bookings", ["technician_id", "status"], unique=False
    )

    op.create_table(
        "job_broadcasts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("service_bookings.id"), nullable=False),
        sa.Column("technician_id", sa.String(36), sa.ForeignKey("technicians.id"), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("booking_id", "technician_id", name="uq_job_broadcasts_booking_technician"),
    )
    op.create_index("ix_job_broadcasts_booking_id", "job_broadcasts", ["booking_id"], unique=False)
    op.create_index("ix_job_broadcasts_technician_id", "job_broadcasts", ["technician_id"], unique=False)
    op.create_index("ix_job_broadcasts_expires_at", "job_broadcasts", ["expires_at"], unique=False)
    op.create_index("ix_job_broadcasts_status", "job_broadcasts", ["status"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("service_bookings.id"), nullable=False, unique=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("provider_order_id", sa.String(), nullable=True),
        sa.Column("provider_payment_id", sa.String(), nullable=True),
        sa.Column("provider_signature", sa.String(), nullable=True),
        sa.Column("base_amount", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("commission_amount", MONEY, nullable=False),
        sa.Column("technician_amount", MONEY, nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("provider", "provider_order_id", name="uq_payments_provider_order"),
        sa.UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_payment"),
    )
    op.create_index("ix_payments_status", "payments", ["status"], unique=False)

    op.create_table(
        "payment_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False, unique=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=True),
        sa.Column("payment_id", sa.String(36), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_events_event_type", "payment_events", ["event_type"], unique=False)
    op.create_index("ix_payment_events_booking_id", "payment_events", ["booking_id"], unique=False)
    op.create_index("ix_payment_events_payment_id", "payment_events", ["payment_id"], unique=False)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("technician_id", sa.String(36), sa.ForeignKey("technicians.id"), nullable=False),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("service_bookings.id"), nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("booking_id", "type", "source", name="uq_wallet_tx_booking_type_source"),
    )
    op.create_index("ix_wallet_transactions_technician_id", "wallet_transactions", ["technician_id"], unique=False)
    op.create_index("ix_wallet_transactions_booking_id", "wallet_transactions", ["booking_id"], unique=False)

    op.create_table(
        "withdrawal_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("technician_id", sa.String(36), sa.ForeignKey("technicians.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decided_by", sa.String(36), nullable=True),
        sa.Column("decision_note", sa.String(), nullable=True),
        sa.Column("payout_provider", sa.String(), nullable=True),
        sa.Column("payout_reference", sa.String(), nullable=True),
        sa.Column("wallet_transaction_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_withdrawal_requests_technician_id", "withdrawal_requests", ["technician_id"], unique=False)
    op.create_index("ix_withdrawal_requests_status", "withdrawal_requests", ["status"], unique=False)
    op.create_index(
        "uq_withdrawal_requests_one_active",
        "withdrawal_requests",
        ["technician_id"],
        unique=True,
        sqlite_where=ACTIVE_WITHDRAWAL,
        postgresql_where=ACTIVE_WITHDRAWAL,
    )


def downgrade():
    op.drop_index("uq_withdrawal_requests_one_active", table_name="withdrawal_requests")
    op.drop_index("ix_withdrawal_requests_status", table_name="withdrawal_requests")
    op.drop_index("ix_withdrawal_requests_technician_id", table_name="withdrawal_requests")
    op.drop_table("withdrawal_requests")

    op.drop_index("ix_wallet_transactions_booking_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_technician_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")

    op.drop_index("ix_payment_events_payment_id", table_name="payment_events")
    op.drop_index("ix_payment_events_booking_id", table_name="payment_events")
    op.drop_index("ix_payment_events_event_type", table_name="payment_events")
    op.drop_table("payment_events")

    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_job_broadcasts_status", table_name="job_broadcasts")
    op.drop_index("ix_job_broadcasts_expires_at", table_name="job_broadcasts")
    op.drop_index("ix_job_broadcasts_technician_id", table_name="job_broadcasts")
    op.drop_index("ix_job_broadcasts_booking_id", table_name="job_broadcasts")
    op.drop_table("job_broadcasts")

    op.drop_index("ix_service_bookings_technician_status", table_name="service_bookings")
    op.drop_index("ix_service_bookings_status", table_name="service_bookings")
    op.drop_index("ix_service_bookings_payment_status", table_name="service_bookings")
    op.drop_index("ix_service_bookings_technician_id", table_name="service_bookings")
    op.drop_index("ix_service_bookings_service_id", table_name="service_bookings")
    op.drop_index("ix_service_bookings_customer_id", table_name="service_bookings")
    op.drop_table("service_bookings")

    op.drop_table("technician_kyc")

    op.drop_index("ix_technicians_is_online", table_name="technicians")
    op.drop_index("ix_technicians_pincode", table_name="technicians")
    op.drop_index("ix_technicians_user_id", table_name="technicians")
    op.drop_table("technicians")

    op.drop_table("services")
