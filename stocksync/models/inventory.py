# stocksync/models/inventory.py
"""
One row per sellable variant, keyed by the supplier's variant SKU.

Stock quantities come from supplier ingestion. The channel identifiers are
cached here the first time a reconciliation run resolves them, so later runs
only need to look up records that are still missing one.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from stocksync.core.enums import SyncStatus
from stocksync.database import Base


class InventoryRecord(Base):
    __tablename__ = "inventory_records"

    # Stable keyset pagination key
    id = Column(Integer, primary_key=True)

    # --- Supplier side ---
    variant_key = Column(String(128), unique=True, nullable=False, index=True)
    base_product_key = Column(String(128), nullable=False, index=True)
    color = Column(String(64), nullable=True)
    size = Column(String(32), nullable=True)
    stock_quantity = Column(Integer, nullable=False, default=0)

    # --- Channel linkage (cached after first successful match) ---
    channel_variant_id = Column(String(128), nullable=True, index=True)
    channel_inventory_item_id = Column(String(128), nullable=True, index=True)
    last_known_channel_quantity = Column(Integer, nullable=True)

    # --- Sync state ---
    sync_status = Column(String(16), nullable=False, default=SyncStatus.UNRESOLVED.value, index=True)
    sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __init__(self, **kwargs):
        # Column defaults only apply on INSERT; in-memory records need them up front
        kwargs.setdefault("sync_status", SyncStatus.UNRESOLVED.value)
        kwargs.setdefault("stock_quantity", 0)
        super().__init__(**kwargs)

    @property
    def is_updatable(self) -> bool:
        """A quantity push needs both channel identifiers."""
        return bool(self.channel_variant_id) and bool(self.channel_inventory_item_id)

    @property
    def in_stock(self) -> bool:
        return (self.stock_quantity or 0) > 0

    def __repr__(self) -> str:
        return (f"<InventoryRecord(id={self.id}, key='{self.variant_key}', qty={self.stock_quantity}, "
                f"status='{self.sync_status}')>")
