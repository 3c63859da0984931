"""Paged, failure-isolating iteration over large source tables."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .exceptions import RecordSkippedError, StoreConnectionError

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

PageFetcher = Callable[[int, int], Sequence[T]]
ProgressCallback = Callable[[int, int], None]


@dataclass
class BatchResult:
    """Counters for one run over a table."""

    total: int
    processed: int = 0
    created: int = 0
    already_mapped: int = 0
    skipped: int = 0
    failed: int = 0
    pages: int = 0
    failures: list[str] = field(default_factory=list)


def log_progress(name: str) -> ProgressCallback:
    """Progress callback that logs "name: processed/total" lines."""

    def report(processed: int, total: int) -> None:
        percent = f" ({processed * 100 // total}%)" if total else ""
        logger.info(f"{name}: {processed}/{total}{percent}")

    return report


@dataclass
class RecordHandler(Generic[T]):
    """What the runner needs to know about one kind of record.

    Attributes:
        describe: Short identification of a record for log lines (e.g. "post 42").
        process: Does the work for one record. Returns True if something was
            created. Raises RecordSkippedError to skip a record with a reason.
        is_done: Returns True for records that were migrated by an earlier run;
            checked before any work is done on the record.
        prepare_page: Optional whole-page step run before records are processed.
    """

    describe: Callable[[T], str]
    process: Callable[[T], bool]
    is_done: Callable[[T], bool] = lambda _record: False
    prepare_page: Callable[[list[T]], list[T]] | None = None


class BatchRunner:
    """Streams a table page by page through a record handler.

    Pages are requested by offset until an empty page comes back; the fetcher
    must order rows by a stable key so that a re-run visits them in the same
    order. One bad record never stops the run: validation and referential
    problems are skipped, any other exception is logged with the record's
    identification and counted as a failure. Losing the connection to either
    store is the only thing that aborts the run.
    """

    page_size: int

    def __init__(self, page_size: int) -> None:
        if page_size <= 0:
            msg = f"Page size must be positive, got {page_size}"
            raise ValueError(msg)
        self.page_size = page_size

    def run(
        self,
        name: str,
        total: int,
        fetch_page: PageFetcher[T],
        handler: RecordHandler[T],
        progress: ProgressCallback | None = None,
    ) -> BatchResult:
        result = BatchResult(total=total)
        report = progress or log_progress(name)
        offset = 0

        while True:
            page = list(fetch_page(offset, self.page_size))
            if not page:
                break
            result.pages += 1
            offset += len(page)

            if handler.prepare_page is not None:
                page = handler.prepare_page(page)

            for record in page:
                self._handle(name, record, handler, result)
                # Rows can appear after the count query ran; never report more than the total
                result.processed = min(result.processed + 1, total)

            report(result.processed, total)

        logger.info(
            f"{name}: {result.created} created, {result.already_mapped} already migrated, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    @staticmethod
    def _handle(name: str, record: T, handler: RecordHandler[T], result: BatchResult) -> None:
        try:
            if handler.is_done(record):
                result.already_mapped += 1
                return
            if handler.process(record):
                result.created += 1
            else:
                result.skipped += 1
        except StoreConnectionError:
            raise
        except RecordSkippedError as e:
            result.skipped += 1
            logger.warning(f"Skipping {handler.describe(record)}: {e}")
        except Exception as e:
            result.failed += 1
            description = handler.describe(record)
            result.failures.append(f"{name}: {description}: {e}")
            logger.exception(f"Failed to migrate {description}")
