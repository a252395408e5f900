# --- models.py (or the models section of database.py) ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    JSON, String, Text, Integer, Numeric, DateTime, Boolean,
    func, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging, os, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

# JSONB on PostgreSQL/CockroachDB, plain JSON elsewhere (sqlite fallback, tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

# -------------------------------------------------------------------
# Engine / Session (CockroachDB compatible)
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg uses 'ssl' parameter, not 'sslmode'
    if "sslmode=verify-full" in DATABASE_URL:
        DATABASE_URL = DATABASE_URL.replace("?sslmode=verify-full", "")
        DATABASE_URL = DATABASE_URL.replace("&sslmode=verify-full", "")

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=int(os.getenv("DB_POOL_SIZE", "20")),
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=20,
        connect_args={
            "ssl": "require",  # CockroachDB requires SSL
            "server_settings": {
                "application_name": "bundle_discount_sync",
            },
            "command_timeout": 60,
            "timeout": 30,
        },
    )
else:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_NAME = os.getenv("DB_NAME", "bundles")
    SOCKET = os.getenv("INSTANCE_UNIX_SOCKET")
    if SOCKET:
        DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:@/{DB_NAME}?host={SOCKET}"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_timeout=15,
        )
    else:
        DATABASE_URL = "sqlite+aiosqlite:///:memory:"
        engine = create_async_engine(
            DATABASE_URL,
            echo=os.getenv("NODE_ENV") == "development",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
    except ValueError:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class DiscountLink(Base):
    """Local correlation between a remote bundle record and its automatic discount."""
    __tablename__ = "bundle_discount_links"

    bundle_id: Mapped[str] = mapped_column(String, primary_key=True)
    # NULL while a product-set change has deleted the old discount but not yet created the new one
    discount_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    bundle_name: Mapped[str] = mapped_column(Text, nullable=False)
    shop: Mapped[str] = mapped_column(String, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("shop", "bundle_name", name="uq_bundle_discount_links_shop_name"),
    )


class AutoBundleRule(Base):
    __tablename__ = "auto_bundle_rules"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop: Mapped[str] = mapped_column(String, index=True, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    collections: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    tags: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    min_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    max_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    min_products: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    discount_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=10)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Remote bundle generated for this rule (auto-rule-<id>), once one exists
    bundle_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("discount_percent BETWEEN 0 AND 100", name="ck_auto_bundle_rules_discount"),
    )


class AIRecommendation(Base):
    """Externally generated FBT candidate. Read-only for this service apart from seeding."""
    __tablename__ = "ai_fbt_bundles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    bundled_product_ids: Mapped[list] = mapped_column(JsonColumn, nullable=False, default=list)
    confidence_score: Mapped[float] = mapped_column(Numeric(12, 6), nullable=False)
    variant_group_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    generated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("confidence_score BETWEEN 0 AND 1", name="ck_ai_fbt_bundles_confidence"),
    )


class ABAssignment(Base):
    """Sticky experiment binding. Append-only; readers filter on expires_at."""
    __tablename__ = "ai_bundle_ab_assignments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop: Mapped[str] = mapped_column(String, nullable=False)
    session_id: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    variant_group_id: Mapped[str] = mapped_column(String, nullable=False)
    # Count of expired rows for the key at insert time; the unique key below makes
    # concurrent first-visit inserts collide instead of producing two live rows.
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "shop", "session_id", "product_id", "generation",
            name="uq_ai_bundle_ab_assignments_key_generation",
        ),
    )


class AnalyticsEvent(Base):
    __tablename__ = "ai_bundle_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    shop: Mapped[str] = mapped_column(String, nullable=False)
    bundle_id: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    variant_group_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JsonColumn, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('impression','click','add_to_cart','purchase')",
            name="ck_ai_bundle_events_type",
        ),
    )

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_auto_bundle_rules_shop_active', AutoBundleRule.shop, AutoBundleRule.is_active)
Index('ix_ai_fbt_bundles_shop_product', AIRecommendation.shop, AIRecommendation.product_id)
Index('ix_ai_fbt_bundles_shop_active', AIRecommendation.shop, AIRecommendation.is_active)
Index('ix_ai_bundle_ab_assignments_session_product', ABAssignment.session_id, ABAssignment.product_id)
Index('ix_ai_bundle_ab_assignments_expires_at', ABAssignment.expires_at)
Index('ix_ai_bundle_events_shop_bundle', AnalyticsEvent.shop, AnalyticsEvent.bundle_id)
Index('ix_ai_bundle_events_shop_product', AnalyticsEvent.shop, AnalyticsEvent.product_id)
Index('ix_ai_bundle_events_created_at', AnalyticsEvent.created_at)
# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def check_db_health() -> Dict[str, Any]:
    """Run a trivial query and report latency for the health endpoint."""
    import time

    start = time.time()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": int((time.time() - start) * 1000)}
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
