"""initial_commerce_schema

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "1a2b3c4d5e6f"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


platform_enum = postgresql.ENUM("SALLA", "ZID", name="platform", create_type=False)
subscription_status_enum = postgresql.ENUM(
    "ACTIVE", "INACTIVE", "CANCELED", "EXPIRED", "TRIAL", name="subscription_status", create_type=False
)
webhook_event_status_enum = postgresql.ENUM("PROCESSED", "FAILED", name="webhook_event_status", create_type=False)
commission_status_enum = postgresql.ENUM(
    "PENDING", "APPROVED", "REJECTED", name="commission_status", create_type=False
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in (platform_enum, subscription_status_enum, webhook_event_status_enum, commission_status_enum):
        enum.create(bind, checkfirst=True)

    op.create_table(
        "merchants",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("commission_rate", sa.Float(), nullable=False),
        sa.Column("subscription_status", subscription_status_enum, nullable=False),
        sa.Column("subscription_plan", sa.String(length=100), nullable=True),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_merchants_name"), "merchants", ["name"], unique=False)

    op.create_table(
        "platform_connections",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("store_id", sa.String(length=100), nullable=True),
        sa.Column("store_url", sa.Text(), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("manager_token", sa.Text(), nullable=True),
        sa.Column("scope", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_id", "platform", name="uq_platform_connections_merchant_platform"),
        sa.UniqueConstraint("platform", "store_id", name="uq_platform_connections_platform_store"),
    )
    op.create_index(
        op.f("ix_platform_connections_merchant_id"), "platform_connections", ["merchant_id"], unique=False
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("merchant_id", sa.Integer(), nullable=True),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=300), nullable=False),
        sa.Column("salla_category_id", sa.String(length=100), nullable=True),
        sa.Column("zid_category_id", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["parent_id"], ["categories.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_id", "salla_category_id", name="uq_categories_merchant_salla"),
        sa.UniqueConstraint("merchant_id", "zid_category_id", name="uq_categories_merchant_zid"),
    )
    op.create_index(op.f("ix_categories_merchant_id"), "categories", ["merchant_id"], unique=False)
    op.create_index(op.f("ix_categories_slug"), "categories", ["slug"], unique=True)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("slug", sa.String(length=300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("regular_price", sa.Float(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("product_url", sa.Text(), nullable=True),
        sa.Column("salla_product_id", sa.String(length=100), nullable=True),
        sa.Column("zid_product_id", sa.String(length=100), nullable=True),
        sa.Column("category_hint", sa.String(length=200), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("click_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"]),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("merchant_id", "salla_product_id", name="uq_products_merchant_salla"),
        sa.UniqueConstraint("merchant_id", "zid_product_id", name="uq_products_merchant_zid"),
    )
    op.create_index(op.f("ix_products_merchant_id"), "products", ["merchant_id"], unique=False)
    op.create_index(op.f("ix_products_category_id"), "products", ["category_id"], unique=False)
    op.create_index(op.f("ix_products_slug"), "products", ["slug"], unique=True)
    op.create_index(op.f("ix_products_is_active"), "products", ["is_active"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("salla_order_id", sa.String(length=100), nullable=True),
        sa.Column("zid_order_id", sa.String(length=100), nullable=True),
        sa.Column("total", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=100), nullable=True),
        sa.Column("payment_status", sa.String(length=100), nullable=True),
        sa.Column("referrer_code", sa.String(length=200), nullable=True),
        sa.Column("product_external_ids_json", sa.Text(), nullable=True),
        sa.Column("ordered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("salla_order_id"),
        sa.UniqueConstraint("zid_order_id"),
    )
    op.create_index(op.f("ix_orders_merchant_id"), "orders", ["merchant_id"], unique=False)
    op.create_index(op.f("ix_orders_referrer_code"), "orders", ["referrer_code"], unique=False)

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("store_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("idempotency_key", sa.String(length=300), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", webhook_event_status_enum, nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        # Exactly-once ingestion across concurrent workers
        sa.UniqueConstraint(
            "platform",
            "store_id",
            "idempotency_key",
            name="uq_webhook_events_platform_store_key",
        ),
    )
    op.create_index(op.f("ix_webhook_events_store_id"), "webhook_events", ["store_id"], unique=False)
    op.create_index(op.f("ix_webhook_events_event_type"), "webhook_events", ["event_type"], unique=False)
    op.create_index(op.f("ix_webhook_events_status"), "webhook_events", ["status"], unique=False)
    op.create_index(op.f("ix_webhook_events_created_at"), "webhook_events", ["created_at"], unique=False)

    op.create_table(
        "click_trackings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tracking_id", sa.String(length=64), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("platform", platform_enum, nullable=False),
        sa.Column("destination_url", sa.Text(), nullable=False),
        sa.Column("tracking_url", sa.Text(), nullable=False),
        sa.Column("commission_rate", sa.Float(), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("converted", sa.Boolean(), nullable=False),
        sa.Column("converted_count", sa.Integer(), nullable=False),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_click_trackings_tracking_id"), "click_trackings", ["tracking_id"], unique=True)
    op.create_index(op.f("ix_click_trackings_product_id"), "click_trackings", ["product_id"], unique=False)
    op.create_index(op.f("ix_click_trackings_merchant_id"), "click_trackings", ["merchant_id"], unique=False)
    op.create_index(op.f("ix_click_trackings_clicked_at"), "click_trackings", ["clicked_at"], unique=False)
    op.create_index(op.f("ix_click_trackings_expires_at"), "click_trackings", ["expires_at"], unique=False)

    op.create_table(
        "outbound_click_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tracking_id", sa.String(length=64), nullable=True),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("merchant_id", sa.Integer(), nullable=True),
        sa.Column("platform", platform_enum, nullable=True),
        sa.Column("destination_url", sa.Text(), nullable=True),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("ip_hash", sa.String(length=64), nullable=True),
        sa.Column("ua_hash", sa.String(length=64), nullable=True),
        sa.Column("qualified", sa.Boolean(), nullable=False),
        sa.Column("disqualify_reason", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_outbound_click_events_tracking_id"), "outbound_click_events", ["tracking_id"], unique=False
    )
    op.create_index(
        op.f("ix_outbound_click_events_product_id"), "outbound_click_events", ["product_id"], unique=False
    )
    op.create_index(op.f("ix_outbound_click_events_ip_hash"), "outbound_click_events", ["ip_hash"], unique=False)
    op.create_index(
        op.f("ix_outbound_click_events_disqualify_reason"),
        "outbound_click_events",
        ["disqualify_reason"],
        unique=False,
    )
    op.create_index(
        op.f("ix_outbound_click_events_created_at"), "outbound_click_events", ["created_at"], unique=False
    )

    op.create_table(
        "commissions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("merchant_id", sa.Integer(), nullable=False),
        sa.Column("click_id", sa.Integer(), nullable=True),
        sa.Column("order_total", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("commission_rate", sa.Float(), nullable=False),
        sa.Column("commission_amount", sa.Float(), nullable=False),
        sa.Column("status", commission_status_enum, nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["click_id"], ["click_trackings.id"]),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        # At most one commission per order
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(op.f("ix_commissions_merchant_id"), "commissions", ["merchant_id"], unique=False)
    op.create_index(op.f("ix_commissions_click_id"), "commissions", ["click_id"], unique=False)
    op.create_index(op.f("ix_commissions_status"), "commissions", ["status"], unique=False)


def downgrade() -> None:
    op.drop_table("commissions")
    op.drop_table("outbound_click_events")
    op.drop_table("click_trackings")
    op.drop_table("webhook_events")
    op.drop_table("orders")
    op.drop_table("products")
    op.drop_table("categories")
    op.drop_table("platform_connections")
    op.drop_table("merchants")

    bind = op.get_bind()
    for enum in (commission_status_enum, webhook_event_status_enum, subscription_status_enum, platform_enum):
        enum.drop(bind, checkfirst=True)
