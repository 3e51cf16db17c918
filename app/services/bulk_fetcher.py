"""
Bulk Fetcher

Drives a paginated source client across every page of one entity.

Page 1 is fetched alone to learn the total; the remaining pages go out in
small concurrent batches with a pause between batches so the external
rate limits are not tripped. Any page failure aborts the fetch and the
error propagates to the caller.
"""
import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from app.connectors.base import PaginatedSourceClient
from app.utils.logger import log

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class FetchResult:
    """All records collected for one entity"""
    records: List[Any] = field(default_factory=list)
    total: int = 0
    pages_fetched: int = 0
    truncated: bool = False  # Safety cap stopped the fetch early


def plan_page_count(total: int, page_size: int, max_pages: int) -> int:
    """Pages needed to cover `total` records, bounded by the safety cap"""
    if total <= 0:
        return 0
    return min(math.ceil(total / page_size), max_pages)


async def fetch_all(
    client: PaginatedSourceClient,
    entity: str,
    page_size: Optional[int] = None,
    modified_since: Optional[datetime] = None,
    max_pages: int = 400,
    concurrency: int = 3,
    batch_delay: float = 0.2
) -> FetchResult:
    """
    Collect every record of `entity` from `client`

    Args:
        client: Source client to drive
        entity: 'customers' or 'orders'
        page_size: Records per page (defaults to the client's maximum)
        modified_since: Incremental filter passed through to every page
        max_pages: Safety cap on pages requested
        concurrency: Page requests in flight per batch
        batch_delay: Seconds to wait between batches

    Returns:
        FetchResult with records in page order
    """
    if max_pages < 1:
        raise ValueError("max_pages must be at least 1")
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    page_size = page_size or client.default_page_size()
    source = client.source_name

    first = await client.fetch_page(entity, 1, page_size, modified_since)
    total = first.total
    log.info(f"{source} {entity} page 1: {len(first.records)} records (total: {total})")

    if total == 0:
        return FetchResult(records=[], total=0, pages_fetched=1)

    page_count = plan_page_count(total, page_size, max_pages)
    truncated = math.ceil(total / page_size) > max_pages
    if truncated:
        log.warning(
            f"{source} {entity}: {math.ceil(total / page_size)} pages available, "
            f"stopping at safety cap of {max_pages}"
        )

    records: List[Any] = list(first.records)
    remaining = list(range(2, page_count + 1))

    for i in range(0, len(remaining), concurrency):
        batch = remaining[i:i + concurrency]
        pages = await asyncio.gather(*[
            client.fetch_page(entity, page, page_size, modified_since)
            for page in batch
        ])
        # gather preserves argument order, so records stay in page order
        for page in pages:
            records.extend(page.records)

        last_page = batch[-1]
        if last_page % 10 == 0 or last_page == page_count:
            log.info(f"{source} {entity} page {last_page}/{page_count}: {len(records)} records fetched so far")

        if i + concurrency < len(remaining):
            await asyncio.sleep(batch_delay)

    log.info(f"{source} {entity}: fetched {len(records)} records in {page_count} pages")
    return FetchResult(
        records=records,
        total=total,
        pages_fetched=max(page_count, 1),
        truncated=truncated,
    )


async def fetch_in_batches(
    keys: Sequence[K],
    fetch: Callable[[K], Awaitable[V]],
    concurrency: int = 5,
    batch_delay: float = 0.5,
    label: str = "items"
) -> Dict[K, V]:
    """
    Call `fetch` once per key, `concurrency` calls at a time

    Used for per-record detail endpoints. Any failed call aborts the whole
    run and the error propagates, like a failed page does.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    results: Dict[K, V] = {}
    for i in range(0, len(keys), concurrency):
        batch = keys[i:i + concurrency]
        values = await asyncio.gather(*[fetch(key) for key in batch])
        results.update(zip(batch, values))

        done = i + len(batch)
        if done % 100 < concurrency or done == len(keys):
            log.info(f"Fetched {done}/{len(keys)} {label}")

        if done < len(keys):
            await asyncio.sleep(batch_delay)

    return results
