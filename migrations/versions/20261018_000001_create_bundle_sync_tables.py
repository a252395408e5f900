"""Create bundle discount link, auto-bundle rule, recommendation, A/B assignment and event tables.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("bundle_discount_links"):
        op.create_table(
            "bundle_discount_links",
            sa.Column("bundle_id", sa.String(), primary_key=True),
            sa.Column("discount_id", sa.String(), nullable=True),
            sa.Column("bundle_name", sa.Text(), nullable=False),
            sa.Column("shop", sa.String(), nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("shop", "bundle_name", name="uq_bundle_discount_links_shop_name"),
        )
        op.create_index("ix_bundle_discount_links_shop", "bundle_discount_links", ["shop"])

    if not inspector.has_table("auto_bundle_rules"):
        op.create_table(
            "auto_bundle_rules",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop", sa.String(), nullable=False),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("collections", _json(), nullable=False),
            sa.Column("tags", _json(), nullable=False),
            sa.Column("min_price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("max_price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("min_products", sa.Integer(), nullable=False, server_default=sa.text("2")),
            sa.Column("discount_percent", sa.Numeric(5, 2), nullable=False, server_default=sa.text("10")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("bundle_id", sa.String(), nullable=True),
            *_timestamps(),
            sa.CheckConstraint("discount_percent BETWEEN 0 AND 100", name="ck_auto_bundle_rules_discount"),
        )
        op.create_index("ix_auto_bundle_rules_shop", "auto_bundle_rules", ["shop"])
        op.create_index("ix_auto_bundle_rules_shop_active", "auto_bundle_rules", ["shop", "is_active"])

    if not inspector.has_table("ai_fbt_bundles"):
        op.create_table(
            "ai_fbt_bundles",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop", sa.String(), nullable=False),
            sa.Column("product_id", sa.String(), nullable=False),
            sa.Column("bundled_product_ids", _json(), nullable=False),
            sa.Column("confidence_score", sa.Numeric(12, 6), nullable=False),
            sa.Column("variant_group_id", sa.String(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("generated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("confidence_score BETWEEN 0 AND 1", name="ck_ai_fbt_bundles_confidence"),
        )
        op.create_index("ix_ai_fbt_bundles_shop_product", "ai_fbt_bundles", ["shop", "product_id"])
        op.create_index("ix_ai_fbt_bundles_shop_active", "ai_fbt_bundles", ["shop", "is_active"])

    if not inspector.has_table("ai_bundle_ab_assignments"):
        op.create_table(
            "ai_bundle_ab_assignments",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop", sa.String(), nullable=False),
            sa.Column("session_id", sa.String(), nullable=False),
            sa.Column("product_id", sa.String(), nullable=False),
            sa.Column("variant_group_id", sa.String(), nullable=False),
            sa.Column("generation", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("assigned_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint(
                "shop", "session_id", "product_id", "generation",
                name="uq_ai_bundle_ab_assignments_key_generation",
            ),
        )
        op.create_index(
            "ix_ai_bundle_ab_assignments_session_product",
            "ai_bundle_ab_assignments",
            ["session_id", "product_id"],
        )
        op.create_index("ix_ai_bundle_ab_assignments_expires_at", "ai_bundle_ab_assignments", ["expires_at"])

    if not inspector.has_table("ai_bundle_events"):
        op.create_table(
            "ai_bundle_events",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("shop", sa.String(), nullable=False),
            sa.Column("bundle_id", sa.String(), nullable=False),
            sa.Column("product_id", sa.String(), nullable=False),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("variant_group_id", sa.String(), nullable=True),
            sa.Column("session_id", sa.String(), nullable=True),
            sa.Column("customer_id", sa.String(), nullable=True),
            sa.Column("metadata", _json(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint(
                "event_type IN ('impression','click','add_to_cart','purchase')",
                name="ck_ai_bundle_events_type",
            ),
        )
        op.create_index("ix_ai_bundle_events_shop_bundle", "ai_bundle_events", ["shop", "bundle_id"])
        op.create_index("ix_ai_bundle_events_shop_product", "ai_bundle_events", ["shop", "product_id"])
        op.create_index("ix_ai_bundle_events_created_at", "ai_bundle_events", ["created_at"])


def downgrade() -> None:
    for table in (
        "ai_bundle_events",
        "ai_bundle_ab_assignments",
        "ai_fbt_bundles",
        "auto_bundle_rules",
        "bundle_discount_links",
    ):
        op.drop_table(table)
