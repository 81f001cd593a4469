import asyncio
import logging
from typing import AsyncIterator, List, Optional

from chaintrace.core.entities.ingestion import PaginationCursor, TransactionRef
from chaintrace.core.exceptions import UpstreamUnavailable
from chaintrace.core.interfaces.datasource import IChainProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 100
DEFAULT_PAGE_DELAY_SECONDS = 0.1


async def paginate(
    provider: IChainProvider,
    address: str,
    page_size: int,
    overall_limit: Optional[int] = None,
    max_pages: int = DEFAULT_MAX_PAGES,
    page_delay: float = DEFAULT_PAGE_DELAY_SECONDS,
    cursor: Optional[PaginationCursor] = None
) -> AsyncIterator[List[TransactionRef]]:
    """
    Walks a wallet's transaction listing from newest to oldest, one page at
    a time.

    Stops on an empty page, once `overall_limit` records were yielded (the
    last page is trimmed), or after `max_pages`. Pages are fetched
    sequentially with a fixed `page_delay` pause in between.

    A failure on the first page raises UpstreamUnavailable. A failure on a
    later page ends the walk; the error is kept on `cursor.error` so the
    caller can report a partial result.
    """
    cursor = cursor if cursor is not None else PaginationCursor()
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    while cursor.pages < max_pages:
        if overall_limit is not None and cursor.count >= overall_limit:
            break
        size = page_size
        if overall_limit is not None:
            size = min(page_size, overall_limit - cursor.count)

        if cursor.pages > 0 and page_delay > 0:
            await asyncio.sleep(page_delay)

        try:
            page = await provider.list_transaction_page(address, size, before=cursor.before)
        except Exception as e:
            if cursor.pages == 0:
                if isinstance(e, UpstreamUnavailable):
                    raise
                raise UpstreamUnavailable(f"Listing transactions failed: {e}") from e
            logger.warning(f"Pagination for {address} stopped after {cursor.pages} pages: {e}")
            cursor.error = f"Pagination stopped after {cursor.pages} pages: {e}"
            return

        cursor.pages += 1
        items = page.items
        if not items:
            cursor.exhausted = True
            return

        if overall_limit is not None:
            items = items[: overall_limit - cursor.count]
        cursor.count += len(items)
        cursor.before = page.next_before or items[-1].transaction_id

        yield items

    if cursor.pages >= max_pages:
        logger.info(f"Pagination for {address} hit the {max_pages} page cap")
