# stocksync/services/identifier_resolver.py
"""
Fills in missing channel identifiers for a page of inventory records.

Keys are looked up in bulk, one channel call per sub-batch. A failing
sub-batch is recorded on its records and the remaining sub-batches still
run; only cancellation and store failures stop the whole page.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from stocksync.core.enums import SyncStatus
from stocksync.core.exceptions import (
    ExternalServiceError,
    OperationCancelledError,
    TransientExternalError,
)
from stocksync.core.utils import cancellable_sleep, chunked, is_cancelled, later_of, unique_in_order, utc_now
from stocksync.integrations.base import ChannelClient, ChannelVariant
from stocksync.models.inventory import InventoryRecord
from stocksync.services import sku_matcher
from stocksync.services.inventory_store import InventoryStore
from stocksync.services.resilience import ResilientCaller

logger = logging.getLogger(__name__)

MISSING_IDENTIFIERS = "missing-identifiers"


@dataclass
class ResolutionReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    unresolved: int = 0
    fuzzy_matches: int = 0
    lookups: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "unresolved": self.unresolved,
            "fuzzy_matches": self.fuzzy_matches,
            "lookups": self.lookups,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }


class IdentifierResolver:

    def __init__(
        self,
        store: InventoryStore,
        channel: ChannelClient,
        caller: Optional[ResilientCaller] = None,
        sub_batch_size: int = 500,
        sub_batch_delay: float = 0.5,
        fuzzy_threshold: Optional[int] = 80,
    ):
        if sub_batch_size <= 0:
            raise ValueError("sub_batch_size must be positive")
        self.store = store
        self.channel = channel
        self.caller = caller or ResilientCaller()
        self.sub_batch_size = sub_batch_size
        self.sub_batch_delay = sub_batch_delay
        self.fuzzy_threshold = fuzzy_threshold

    @classmethod
    def from_settings(cls, settings, store: InventoryStore, channel: ChannelClient,
                      caller: Optional[ResilientCaller] = None) -> "IdentifierResolver":
        return cls(
            store,
            channel,
            caller=caller,
            sub_batch_size=settings.LOOKUP_SUB_BATCH_SIZE,
            sub_batch_delay=settings.LOOKUP_SUB_BATCH_DELAY,
            fuzzy_threshold=settings.FUZZY_MATCH_THRESHOLD,
        )

    @property
    def fuzzy_enabled(self) -> bool:
        return self.fuzzy_threshold is not None and self.channel.supports_search

    async def resolve(self, records: Sequence[InventoryRecord], cancel_token=None) -> ResolutionReport:
        """
        Resolve identifiers for every record that is not yet updatable.

        Records are updated in place and saved through the store. Once the
        cancel token is set no further lookups are issued; records already
        changed are still saved.
        """
        pending = [record for record in records if not record.is_updatable]
        report = ResolutionReport(attempted=len(pending))
        if not pending:
            return report

        for index, batch in enumerate(chunked(pending, self.sub_batch_size)):
            if is_cancelled(cancel_token):
                report.cancelled = True
                break
            if index and self.sub_batch_delay > 0:
                if await cancellable_sleep(self.sub_batch_delay, cancel_token):
                    report.cancelled = True
                    break

            touched: List[InventoryRecord] = []
            try:
                await self._resolve_batch(batch, report, touched, cancel_token)
            except OperationCancelledError:
                report.cancelled = True
            except ExternalServiceError as e:
                logger.warning(f"Lookup for {len(batch)} keys failed: {e}")
                report.errors.append(f"lookup of {len(batch)} keys failed: {e}")
                for record in batch:
                    if record not in touched:
                        self._record_error(record, e)
                        touched.append(record)
            finally:
                for record in touched:
                    await self.store.save(record)

            if report.cancelled:
                break

        for record in pending:
            if record.sync_status == SyncStatus.SUCCESS.value:
                report.succeeded += 1
            elif record.sync_status == SyncStatus.FAILED.value:
                report.failed += 1
            else:
                report.unresolved += 1

        logger.info(
            f"Resolved {report.succeeded}/{report.attempted} records "
            f"({report.failed} failed, {report.unresolved} unresolved, {report.lookups} lookups)"
        )
        return report

    async def _resolve_batch(self, batch: List[InventoryRecord], report: ResolutionReport,
                             touched: List[InventoryRecord], cancel_token) -> None:
        keys = unique_in_order(record.variant_key for record in batch)
        found = await self.caller.call(self.channel.lookup_by_keys, keys, cancel_token=cancel_token)
        report.lookups += 1

        # Channel SKUs are matched case-insensitively when there is no exact hit
        by_lower: Dict[str, ChannelVariant] = {}
        for sku, variant in found.items():
            by_lower.setdefault(sku.lower(), variant)

        for record in batch:
            variant = found.get(record.variant_key) or by_lower.get(record.variant_key.lower())
            try:
                if variant is None and self.fuzzy_enabled:
                    variant = await self._fuzzy_match(record, report, cancel_token)
                    if variant is not None:
                        report.fuzzy_matches += 1
                if variant is not None:
                    self._apply_variant(record, variant)
                if record.channel_variant_id and not record.channel_inventory_item_id:
                    info = await self.caller.call(
                        self.channel.lookup_inventory_item, record.channel_variant_id, cancel_token=cancel_token
                    )
                    report.lookups += 1
                    if info.inventory_item_id:
                        record.channel_inventory_item_id = info.inventory_item_id
                    if info.quantity is not None:
                        record.last_known_channel_quantity = info.quantity
            except OperationCancelledError:
                # Keep whatever was already copied onto the record
                if variant is not None:
                    if record.is_updatable:
                        self._apply_outcome(record)
                    touched.append(record)
                raise
            except ExternalServiceError as e:
                logger.warning(f"Lookup for {record.variant_key} failed: {e}")
                report.errors.append(f"{record.variant_key}: {e}")
                self._record_error(record, e)
                touched.append(record)
                continue

            self._apply_outcome(record)
            touched.append(record)

    async def _fuzzy_match(self, record: InventoryRecord, report: ResolutionReport,
                           cancel_token) -> Optional[ChannelVariant]:
        parsed = sku_matcher.parse(record.variant_key)
        candidates = await self.caller.call(
            self.channel.search_products, parsed.base_product_key, cancel_token=cancel_token
        )
        report.lookups += 1

        ranked = sku_matcher.rank(parsed, candidates)
        if not ranked or ranked[0].score < self.fuzzy_threshold:
            return None

        best = ranked[0]
        variant = sku_matcher.match_variant(parsed, best.candidate)
        if variant is not None:
            logger.info(
                f"Fuzzy matched {record.variant_key} to {variant.variant_id} "
                f"(score {best.score}: {', '.join(best.reasons)})"
            )
        return variant

    @staticmethod
    def _apply_variant(record: InventoryRecord, variant: ChannelVariant) -> None:
        record.channel_variant_id = variant.variant_id
        if variant.inventory_item_id:
            record.channel_inventory_item_id = variant.inventory_item_id
        if variant.quantity is not None:
            record.last_known_channel_quantity = variant.quantity

    @staticmethod
    def _apply_outcome(record: InventoryRecord) -> None:
        if record.is_updatable:
            record.sync_status = SyncStatus.SUCCESS.value
            record.sync_error = None
        else:
            record.sync_status = SyncStatus.FAILED.value
            record.sync_error = MISSING_IDENTIFIERS
        record.last_synced_at = later_of(record.last_synced_at, utc_now())

    @staticmethod
    def _record_error(record: InventoryRecord, error: ExternalServiceError) -> None:
        if isinstance(error, TransientExternalError):
            # Worth another try on the next run
            record.sync_status = SyncStatus.UNRESOLVED.value
        else:
            record.sync_status = SyncStatus.FAILED.value
        record.sync_error = f"{type(error).__name__}: {error}"
