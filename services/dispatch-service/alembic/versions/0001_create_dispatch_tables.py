from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("service_type", sa.String(), nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("scheduled_time", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("technician_id", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("technician_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("technician_rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("technician_earnings", sa.Integer(), nullable=True),
        sa.Column("platform_commission", sa.Integer(), nullable=True),
        sa.Column("commission_rate", sa.Float(), nullable=True),
        sa.Column("commission_fallback", sa.Boolean(), nullable=True),
        sa.Column("dispatch_round", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_service_type", "bookings", ["service_type"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)
    op.create_index("ix_bookings_technician_id", "bookings", ["technician_id"], unique=False)

    op.create_table(
        "technicians",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("technician_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("specializations", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("availability", sa.JSON(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False, server_default="0"),
        sa.Column("completed_bookings", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_technicians_technician_id", "technicians", ["technician_id"], unique=True)
    op.create_index("ix_technicians_status", "technicians", ["status"], unique=False)

    op.create_table(
        "job_offers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("offer_id", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("technician_id", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(), nullable=True),
        sa.UniqueConstraint("booking_id", "technician_id", name="uq_job_offers_booking_technician"),
    )
    op.create_index("ix_job_offers_offer_id", "job_offers", ["offer_id"], unique=True)
    op.create_index("ix_job_offers_booking_id", "job_offers", ["booking_id"], unique=False)
    op.create_index("ix_job_offers_technician_id", "job_offers", ["technician_id"], unique=False)
    op.create_index("ix_job_offers_state", "job_offers", ["state"], unique=False)
    op.create_index("ix_job_offers_expires_at", "job_offers", ["expires_at"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("notification_id", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("technician_id", sa.String(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_important", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_notification_id", "notifications", ["notification_id"], unique=True)
    op.create_index("ix_notifications_scope", "notifications", ["scope"], unique=False)
    op.create_index("ix_notifications_technician_id", "notifications", ["technician_id"], unique=False)

    op.create_table(
        "platform_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(), nullable=False, unique=True),
        sa.Column("value", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

def downgrade():
    op.drop_table("platform_settings")
    op.drop_index("ix_notifications_technician_id", table_name="notifications")
    op.drop_index("ix_notifications_scope", table_name="notifications")
    op.drop_index("ix_notifications_notification_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_job_offers_expires_at", table_name="job_offers")
    op.drop_index("ix_job_offers_state", table_name="job_offers")
    op.drop_index("ix_job_offers_technician_id", table_name="job_offers")
    op.drop_index("ix_job_offers_booking_id", table_name="job_offers")
    op.drop_index("ix_job_offers_offer_id", table_name="job_offers")
    op.drop_table("job_offers")
    op.drop_index("ix_technicians_status", table_name="technicians")
    op.drop_index("ix_technicians_technician_id", table_name="technicians")
    op.drop_table("technicians")
    op.drop_index("ix_bookings_technician_id", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_service_type", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")
