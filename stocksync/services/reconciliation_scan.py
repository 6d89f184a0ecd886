# stocksync/services/reconciliation_scan.py
"""
Streams inventory records page by page through the identifier resolver.

A page counts as committed once its records are classified and the cursor
has moved past it; progress is reported after every committed page. A page
interrupted by cancellation is not committed, so a resumed run fetches it
again (saves are idempotent).
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from stocksync.core.utils import cancellable_sleep, is_cancelled
from stocksync.services.identifier_resolver import IdentifierResolver
from stocksync.services.inventory_store import InventoryFilter, InventoryStore

logger = logging.getLogger(__name__)


@dataclass
class ScanProgress:
    scanned: int
    resolved: int
    skipped: int
    total_estimate: int
    last_key: Optional[int]
    pages: int

    @property
    def percentage(self) -> int:
        if not self.total_estimate:
            return 0
        return min(100, round(self.scanned * 100 / self.total_estimate))

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "resolved": self.resolved,
            "skipped": self.skipped,
            "total_estimate": self.total_estimate,
            "last_key": self.last_key,
            "pages": self.pages,
            "percentage": self.percentage,
        }


ProgressCallback = Callable[[ScanProgress], Awaitable[None]]


@dataclass
class ScanResult:
    scanned: int = 0
    resolved: int = 0
    skipped: int = 0
    total_estimate: int = 0
    last_key: Optional[int] = None
    pages: int = 0
    lookups: int = 0
    lookup_failures: int = 0
    errors: List[str] = field(default_factory=list)
    stopped: bool = False
    stop_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "resolved": self.resolved,
            "skipped": self.skipped,
            "total_estimate": self.total_estimate,
            "last_key": self.last_key,
            "pages": self.pages,
            "lookups": self.lookups,
            "lookup_failures": self.lookup_failures,
            "errors": list(self.errors),
            "stopped": self.stopped,
            "stop_reason": self.stop_reason,
        }


class ReconciliationScan:

    def __init__(self, store: InventoryStore, resolver: IdentifierResolver, max_errors: int = 20):
        self.store = store
        self.resolver = resolver
        self.max_errors = max_errors

    async def run(
        self,
        filter: InventoryFilter,
        batch_size: int,
        on_progress: Optional[ProgressCallback] = None,
        *,
        update_out_of_stock: bool = True,
        batch_delay: float = 0.0,
        after_key: Optional[int] = None,
        start_counts: Optional[Tuple[int, int, int]] = None,
        total_estimate: Optional[int] = None,
        cancel_token=None,
    ) -> ScanResult:
        """
        Scan every record matching `filter`, resolving identifiers as it goes.

        Args:
            filter: Which records to visit
            batch_size: Records per page
            on_progress: Awaited after each committed page
            update_out_of_stock: When False, zero-stock records count as skipped
            batch_delay: Seconds to wait between pages
            after_key: Resume point, the last committed key of an earlier run
            start_counts: (scanned, resolved, skipped) carried over from that run
            total_estimate: Estimate carried over; counted afresh when None
            cancel_token: asyncio.Event, checked at the top of every page

        Returns:
            ScanResult with the final counts and cursor
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        if total_estimate is None:
            total_estimate = await self.store.count_matching(filter)

        scanned, resolved, skipped = start_counts or (0, 0, 0)
        result = ScanResult(
            scanned=scanned,
            resolved=resolved,
            skipped=skipped,
            total_estimate=max(total_estimate, scanned),
            last_key=after_key,
        )
        cursor = after_key

        logger.info(
            f"Scan starting after key {cursor} (batch_size={batch_size}, estimate={result.total_estimate})"
        )

        while True:
            if is_cancelled(cancel_token):
                result.stopped = True
                result.stop_reason = "cancelled"
                break

            page = await self.store.find_page(filter, cursor, batch_size)
            if not page:
                break

            report = await self.resolver.resolve(page, cancel_token=cancel_token)
            result.lookups += report.lookups
            result.lookup_failures += len(report.errors)
            self._keep_errors(result, report.errors)

            if report.cancelled:
                # Not committed; a resumed run starts from this page again
                result.stopped = True
                result.stop_reason = "cancelled"
                break

            for record in page:
                if record.is_updatable and (update_out_of_stock or record.in_stock):
                    result.resolved += 1
                else:
                    result.skipped += 1
            result.scanned += len(page)
            result.pages += 1
            cursor = page[-1].id
            result.last_key = cursor
            # Concurrent inserts may push scanned past the estimate
            result.total_estimate = max(result.total_estimate, result.scanned)

            if on_progress:
                await on_progress(ScanProgress(
                    scanned=result.scanned,
                    resolved=result.resolved,
                    skipped=result.skipped,
                    total_estimate=result.total_estimate,
                    last_key=cursor,
                    pages=result.pages,
                ))

            if len(page) < batch_size:
                break

            if batch_delay > 0 and await cancellable_sleep(batch_delay, cancel_token):
                result.stopped = True
                result.stop_reason = "cancelled"
                break

        logger.info(
            f"Scan {'stopped' if result.stopped else 'finished'}: scanned={result.scanned} "
            f"resolved={result.resolved} skipped={result.skipped} pages={result.pages}"
        )
        return result

    def _keep_errors(self, result: ScanResult, errors: List[str]) -> None:
        room = self.max_errors - len(result.errors)
        if room > 0:
            result.errors.extend(errors[:room])
