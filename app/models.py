from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class FulfillmentSupplier(str, Enum):
    PRIMARY = 'primary'
    FALLBACK = 'fallback'
    MANUAL = 'manual'


class FulfillmentStatus(str, Enum):
    PENDING = 'pending'
    ORDERED = 'ordered'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    RETURNED = 'returned'


class FulfillmentOrder(Base):
    __tablename__ = 'fulfillment_orders'
    __table_args__ = (
        UniqueConstraint('sale_id', 'line_item_id', name='fulfillment_orders_sale_line_key'),
        CheckConstraint('quantity > 0', name='fulfillment_orders_quantity_positive_ck'),
        Index('fulfillment_orders_supplier_status_idx', 'supplier', 'status'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sale_id: Mapped[str] = mapped_column(Text, nullable=False)
    line_item_id: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')

    shipping_name: Mapped[str | None] = mapped_column(Text)
    shipping_address1: Mapped[str | None] = mapped_column(Text)
    shipping_address2: Mapped[str | None] = mapped_column(Text)
    shipping_city: Mapped[str | None] = mapped_column(Text)
    shipping_province: Mapped[str | None] = mapped_column(Text)
    shipping_country: Mapped[str | None] = mapped_column(Text)
    shipping_zip: Mapped[str | None] = mapped_column(Text)
    shipping_phone: Mapped[str | None] = mapped_column(Text)

    supplier: Mapped[FulfillmentSupplier] = mapped_column(
        SQLEnum(FulfillmentSupplier, name='fulfillment_supplier'), nullable=False
    )
    status: Mapped[FulfillmentStatus] = mapped_column(
        SQLEnum(FulfillmentStatus, name='fulfillment_status'),
        nullable=False,
        default=FulfillmentStatus.PENDING,
        server_default='PENDING',
    )

    supplier_order_id: Mapped[str | None] = mapped_column(Text)
    tracking_number: Mapped[str | None] = mapped_column(Text)
    carrier: Mapped[str | None] = mapped_column(Text)
    tracking_url: Mapped[str | None] = mapped_column(Text)

    sale_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    supplier_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    shipping_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    profit: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')

    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    lock_owner: Mapped[str | None] = mapped_column(Text)

    storefront_fulfillment_sent: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default='false'
    )
    storefront_fulfillment_id: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class SupplierVariantMapping(Base):
    __tablename__ = 'supplier_variant_mappings'
    __table_args__ = (
        UniqueConstraint('sku', 'supplier', name='supplier_variant_mappings_sku_supplier_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    supplier: Mapped[str] = mapped_column(Text, nullable=False)
    supplier_product_id: Mapped[str | None] = mapped_column(Text)
    supplier_variant_id: Mapped[str | None] = mapped_column(Text)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class FulfillmentAuditLog(Base):
    __tablename__ = 'fulfillment_audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    fulfillment_order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('fulfillment_orders.id', ondelete='CASCADE'), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(Text, nullable=False)
    previous_status: Mapped[str | None] = mapped_column(Text)
    new_status: Mapped[str | None] = mapped_column(Text)
    performed_by: Mapped[str] = mapped_column(Text, nullable=False, default='system', server_default='system')
    reason: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
