# stocksync/services/inventory_store.py
"""
Access to inventory records for the reconciliation scan.

Pages are fetched with keyset pagination on the primary key, so records
inserted while a scan is running are either seen once or not at all and
never shift a page boundary. Saves are idempotent: identifier fields are
last-writer-wins and `last_synced_at` never moves backwards.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import and_, case, func, or_, select, update

from stocksync.core.exceptions import DatabaseError
from stocksync.core.utils import later_of
from stocksync.models.inventory import InventoryRecord

logger = logging.getLogger(__name__)

# Fields the resolver is allowed to write back
SYNC_FIELDS = (
    "channel_variant_id",
    "channel_inventory_item_id",
    "last_known_channel_quantity",
    "sync_status",
    "sync_error",
)


@dataclass
class InventoryFilter:
    only_missing_identifiers: bool = False
    only_in_stock: bool = False
    variant_keys: Optional[List[str]] = None
    min_quantity: Optional[int] = None
    max_quantity: Optional[int] = None

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "InventoryFilter":
        config = config or {}
        return cls(
            only_missing_identifiers=bool(config.get("only_missing_identifiers", False)),
            only_in_stock=bool(config.get("only_in_stock", False)),
            variant_keys=list(config["variant_keys"]) if config.get("variant_keys") else None,
            min_quantity=config.get("min_quantity"),
            max_quantity=config.get("max_quantity"),
        )

    def to_config(self) -> dict:
        return {
            "only_missing_identifiers": self.only_missing_identifiers,
            "only_in_stock": self.only_in_stock,
            "variant_keys": self.variant_keys,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
        }

    def matches(self, record: InventoryRecord) -> bool:
        if self.only_missing_identifiers and record.is_updatable:
            return False
        if self.only_in_stock and not record.in_stock:
            return False
        if self.variant_keys is not None and record.variant_key not in self.variant_keys:
            return False
        quantity = record.stock_quantity or 0
        if self.min_quantity is not None and quantity < self.min_quantity:
            return False
        if self.max_quantity is not None and quantity > self.max_quantity:
            return False
        return True

    def clauses(self) -> list:
        """The same predicate as `matches`, as SQLAlchemy where-clauses."""
        conditions = []
        if self.only_missing_identifiers:
            conditions.append(or_(
                InventoryRecord.channel_variant_id.is_(None),
                InventoryRecord.channel_inventory_item_id.is_(None),
                InventoryRecord.channel_variant_id == "",
                InventoryRecord.channel_inventory_item_id == "",
            ))
        if self.only_in_stock:
            conditions.append(InventoryRecord.stock_quantity > 0)
        if self.variant_keys is not None:
            conditions.append(InventoryRecord.variant_key.in_(self.variant_keys))
        if self.min_quantity is not None:
            conditions.append(InventoryRecord.stock_quantity >= self.min_quantity)
        if self.max_quantity is not None:
            conditions.append(InventoryRecord.stock_quantity <= self.max_quantity)
        return conditions


class InventoryStore(ABC):

    @abstractmethod
    async def find_page(self, filter: InventoryFilter, after_key: Optional[int], limit: int) -> List[InventoryRecord]:
        """Up to `limit` matching records with id > after_key, ascending by id."""
        pass

    @abstractmethod
    async def count_matching(self, filter: InventoryFilter) -> int:
        pass

    @abstractmethod
    async def save(self, record: InventoryRecord) -> None:
        """Persist the record's sync fields. Safe to repeat."""
        pass


def _copy_record(record: InventoryRecord) -> InventoryRecord:
    values = {column.key: getattr(record, column.key) for column in InventoryRecord.__table__.columns}
    return InventoryRecord(**values)


class InMemoryInventoryStore(InventoryStore):
    """
    Dict-backed store for tests and dry runs.

    Hands out copies, so callers must `save` to make a change visible,
    exactly as with the SQL store.
    """

    def __init__(self, records: Optional[List[InventoryRecord]] = None):
        self._records: Dict[int, InventoryRecord] = {}
        self._next_id = 1
        self.save_calls = 0
        for record in records or []:
            self.add(record)

    def add(self, record: InventoryRecord) -> InventoryRecord:
        if record.id is None:
            record.id = self._next_id
        self._next_id = max(self._next_id, record.id + 1)
        self._records[record.id] = _copy_record(record)
        return record

    def get(self, record_id: int) -> Optional[InventoryRecord]:
        record = self._records.get(record_id)
        return _copy_record(record) if record else None

    def get_by_key(self, variant_key: str) -> Optional[InventoryRecord]:
        for record in self._records.values():
            if record.variant_key == variant_key:
                return _copy_record(record)
        return None

    def all(self) -> List[InventoryRecord]:
        return [_copy_record(self._records[key]) for key in sorted(self._records)]

    async def find_page(self, filter: InventoryFilter, after_key: Optional[int], limit: int) -> List[InventoryRecord]:
        page = []
        for record_id in sorted(self._records):
            if after_key is not None and record_id <= after_key:
                continue
            record = self._records[record_id]
            if filter.matches(record):
                page.append(_copy_record(record))
                if len(page) >= limit:
                    break
        return page

    async def count_matching(self, filter: InventoryFilter) -> int:
        return sum(1 for record in self._records.values() if filter.matches(record))

    async def save(self, record: InventoryRecord) -> None:
        self.save_calls += 1
        stored = self._records.get(record.id)
        if stored is None:
            self.add(record)
            return
        for name in SYNC_FIELDS:
            setattr(stored, name, getattr(record, name))
        if record.last_synced_at is not None:
            stored.last_synced_at = later_of(stored.last_synced_at, record.last_synced_at)


class SqlInventoryStore(InventoryStore):
    """Async SQLAlchemy store; one short-lived session per operation."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def find_page(self, filter: InventoryFilter, after_key: Optional[int], limit: int) -> List[InventoryRecord]:
        stmt = select(InventoryRecord)
        conditions = filter.clauses()
        if after_key is not None:
            conditions.append(InventoryRecord.id > after_key)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(InventoryRecord.id.asc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_matching(self, filter: InventoryFilter) -> int:
        stmt = select(func.count(InventoryRecord.id))
        conditions = filter.clauses()
        if conditions:
            stmt = stmt.where(and_(*conditions))
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

    async def save(self, record: InventoryRecord) -> None:
        values = {name: getattr(record, name) for name in SYNC_FIELDS}
        if record.last_synced_at is not None:
            values["last_synced_at"] = case(
                (
                    or_(
                        InventoryRecord.last_synced_at.is_(None),
                        InventoryRecord.last_synced_at < record.last_synced_at,
                    ),
                    record.last_synced_at,
                ),
                else_=InventoryRecord.last_synced_at,
            )

        async with self.session_factory() as session:
            try:
                if record.id is None:
                    session.add(record)
                else:
                    await session.execute(
                        update(InventoryRecord)
                        .where(InventoryRecord.id == record.id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to save inventory record {record.variant_key}: {e}")
                raise DatabaseError(f"Failed to save inventory record {record.variant_key}: {e}") from e
