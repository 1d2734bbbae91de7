"""
Paged extraction of source rows.

Rows are produced lazily, one page at a time. Page failures are retried
in-process when transient; once retries run out (or on an authentication /
permanent failure) the whole sequence fails with SequenceError.
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set
import asyncio
from core.config import settings
from core.exceptions import ClientError, RetryableError, SequenceError
from engine.client import EnvironmentClient, KeyFilter, Page
import logging

logger = logging.getLogger(__name__)

# Key prefix for rows that lack a value in the natural key field
POSITIONAL_KEY_PREFIX = "#"


@dataclass
class SourceRow:
    """
    One raw row with its source key.

    error is set when the row cannot enter the pipeline at all
    (recorded as a failure at stage "extract").
    """
    key: str
    data: Dict[str, Any]
    position: int
    error: Optional[str] = None


class RowExtractor:
    """
    Lazy, finite, non-restartable sequence of source rows.

    Attributes:
        key_field: Natural key column; rows are keyed by position when None
        key_filter: Restrict the sequence to these keys (retry runs)
        page_size: Rows per page (default: settings.PAGE_SIZE)
        max_attempts: Attempts per page (default: settings.PAGE_MAX_ATTEMPTS)
        retry_delay: Initial page backoff in seconds (default: settings.PAGE_RETRY_DELAY)
    """

    def __init__(
        self,
        client: EnvironmentClient,
        environment_id: str,
        entity: str,
        key_field: Optional[str] = None,
        key_filter: Optional[Set[str]] = None,
        page_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        on_total: Optional[Callable[[int], Awaitable[Any]]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.client = client
        self.environment_id = environment_id
        self.entity = entity
        self.key_field = key_field
        self.key_filter = set(key_filter) if key_filter is not None else None
        self.page_size = page_size or settings.PAGE_SIZE
        self.max_attempts = max(1, max_attempts or settings.PAGE_MAX_ATTEMPTS)
        self.retry_delay = retry_delay if retry_delay is not None else settings.PAGE_RETRY_DELAY
        self._on_total = on_total
        self._should_stop = should_stop or (lambda: False)
        self._sleep = sleep
        self._started = False

        self.pages_fetched = 0
        self.rows_read = 0
        # Filtered keys the source no longer holds, known once the sequence is exhausted
        self.unmatched_keys: Set[str] = set()

    def __aiter__(self) -> AsyncIterator[SourceRow]:
        if self._started:
            raise RuntimeError("RowExtractor sequences cannot be restarted")
        self._started = True
        return self._rows()

    def _server_filter(self) -> Optional[KeyFilter]:
        if self.key_filter is None or self.key_field is None:
            return None
        if any(k.startswith(POSITIONAL_KEY_PREFIX) for k in self.key_filter):
            return None
        return KeyFilter(field_name=self.key_field, keys=set(self.key_filter))

    def _row_key(self, row: Dict[str, Any], position: int) -> SourceRow:
        if self.key_field is None:
            return SourceRow(key=str(position), data=row, position=position)

        value = row.get(self.key_field)
        if value is None or value == "" or isinstance(value, (dict, list)):
            return SourceRow(
                key=f"{POSITIONAL_KEY_PREFIX}{position}",
                data=row,
                position=position,
                error=f"Row has no value for key field '{self.key_field}'"
            )
        return SourceRow(key=str(value), data=row, position=position)

    def _duplicate(self, row: SourceRow) -> SourceRow:
        """A repeated natural key cannot identify the row; key it by position instead"""
        logger.warning(
            f"Duplicate key {row.key!r} in {self.entity} at position {row.position}"
        )
        return SourceRow(
            key=f"{POSITIONAL_KEY_PREFIX}{row.position}",
            data=row.data,
            position=row.position,
            error=f"Duplicate key value {row.key!r} for key field '{self.key_field}'"
        )

    async def _rows(self) -> AsyncIterator[SourceRow]:
        remaining = set(self.key_filter) if self.key_filter is not None else None
        server_filter = self._server_filter()
        seen: Set[str] = set()
        page_token: Optional[str] = None
        position = 0

        while True:
            if self._should_stop():
                logger.info(f"Extraction of {self.entity} stopped before page {self.pages_fetched + 1}")
                return

            page = await self._fetch_page(page_token, server_filter)

            if self.pages_fetched == 1 and self.key_filter is None and page.total_count is not None:
                if self._on_total:
                    await self._on_total(page.total_count)

            for raw in page.rows:
                row = self._row_key(raw, position)
                position += 1
                self.rows_read += 1

                if row.error is None and self.key_field is not None:
                    if row.key in seen:
                        row = self._duplicate(row)
                    else:
                        seen.add(row.key)

                if remaining is not None:
                    if row.key not in remaining:
                        continue
                    remaining.discard(row.key)

                yield row

            if remaining is not None and not remaining:
                return
            if not page.next_page_token or not page.rows:
                self.unmatched_keys = remaining or set()
                return
            page_token = page.next_page_token

    async def _fetch_page(self, page_token: Optional[str], key_filter: Optional[KeyFilter]) -> Page:
        page_number = self.pages_fetched + 1
        context = {
            "environment_id": self.environment_id,
            "entity": self.entity,
            "page": page_number,
        }

        for attempt in range(1, self.max_attempts + 1):
            try:
                page = await self.client.page_entity_rows(
                    self.entity,
                    page_token,
                    key_filter=key_filter,
                    page_size=self.page_size
                )
                self.pages_fetched += 1
                logger.debug(f"Fetched page {page_number} of {self.entity}: {len(page.rows)} rows")
                return page

            except RetryableError as e:
                if attempt >= self.max_attempts:
                    raise SequenceError(
                        f"Page {page_number} of {self.entity} failed after {attempt} attempts: {e.message}",
                        context={**context, "attempts": attempt},
                        original_exception=e
                    )
                delay = self.retry_delay * (2 ** (attempt - 1))
                if e.retry_after is not None and e.retry_after > delay:
                    delay = e.retry_after
                logger.warning(
                    f"Transient error on page {page_number} of {self.entity} "
                    f"(attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s: {e.message}"
                )
                await self._sleep(delay)

            except ClientError as e:
                raise SequenceError(
                    f"Page {page_number} of {self.entity} failed: {e.message}",
                    context={**context, "attempts": attempt, "status_code": e.status_code},
                    original_exception=e
                )

            except Exception as e:
                raise SequenceError(
                    f"Unexpected error reading page {page_number} of {self.entity}",
                    context={**context, "attempts": attempt},
                    original_exception=e
                )

        # Unreachable: the last attempt either returns or raises
        raise SequenceError("Page retries exhausted", context=context)
