from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from ..config.loader import SyncConfig
from ..db.store import PhoneStore, StoreError
from ..models.phone_record import PhoneRecord, is_blank
from ..models.processing_result import (
    ConsolidationResult,
    RecordFailure,
    RevalidationResult,
    SyncResult,
)
from ..models.store_rows import RawRow, UpsertOutcome, ValidatedRow
from .phone import PhoneNormalizer
from .reconciler import FieldFill, field_union, plan_completeness_merge

"""Store synchronisation.

The raw store and the validated store are two independent projections of the
same record stream. Both writes are idempotent, so a run interrupted between
them is repaired by running it again.

Writes are issued one record at a time in batch order. A ``StoreError`` marked
retryable is retried for that record alone with linear backoff; anything else
becomes a ``RecordFailure`` and the batch carries on.
"""

__all__ = [
    "STORE_WIDE_ID",
    "UNIQUE_FIELDS",
    "RetryPolicy",
    "PromoteResult",
    "Synchronizer",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# never copied between rows: the validated store keeps them unique
UNIQUE_FIELDS = ("email",)
# record_id of failures raised by whole-store reads
STORE_WIDE_ID = "*"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5

    @classmethod
    def from_config(cls, cfg: SyncConfig) -> RetryPolicy:
        return cls(max_attempts=cfg.max_attempts, backoff_seconds=cfg.backoff_seconds)

    def delay(self, attempt: int) -> float:
        """Wait before the retry following ``attempt`` (1-based)."""
        return self.backoff_seconds * attempt


@dataclass
class PromoteResult(SyncResult):
    """SyncResult plus failures of the follow-up cross-row merge."""
    merge_failures: list[RecordFailure] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Synchronizer:
    def __init__(
        self,
        store: PhoneStore,
        normalizer: PhoneNormalizer | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        page_size: int = 500,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.normalizer = normalizer or PhoneNormalizer()
        self.retry = retry or RetryPolicy()
        self.sleep = sleep
        self.page_size = max(1, page_size)
        self.clock = clock

    def _attempt(
        self, action: Callable[[], T], record_id: str, phone: str, stage: str
    ) -> tuple[T | None, RecordFailure | None]:
        attempt = 1
        while True:
            try:
                return action(), None
            except StoreError as e:
                if not e.retryable or attempt >= self.retry.max_attempts:
                    logger.error(
                        "%s store call failed for %s after %d attempt(s): %s", stage, record_id, attempt, e.message
                    )
                    return None, RecordFailure(
                        record_id=record_id,
                        phone=phone,
                        stage=stage,
                        message=e.message,
                        retryable=e.retryable,
                        attempts=attempt,
                        constraint=e.constraint,
                    )
                delay = self.retry.delay(attempt)
                logger.warning(
                    "%s store call for %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    stage, record_id, attempt, self.retry.max_attempts, delay, e.message,
                )
                self.sleep(delay)
                attempt += 1

    # raw store

    def _raw_row(self, record: PhoneRecord, source_file: str, extracted_at: str) -> RawRow:
        metadata: dict[str, Any] = record.metadata()
        metadata["extracted_at"] = extracted_at
        return RawRow(
            id=record.id,
            phone_number=record.phone_number,
            source_file=source_file,
            company_name=record.company_name,
            physical_address=record.physical_address,
            email=record.email,
            website=record.website,
            metadata=metadata,
        )

    def _pages(self, rows: list[RawRow]) -> list[list[RawRow]]:
        # a page never holds the same id twice so later rows overwrite earlier ones in order
        pages: list[list[RawRow]] = []
        current: list[RawRow] = []
        ids: set[str] = set()
        for row in rows:
            if len(current) >= self.page_size or row.id in ids:
                pages.append(current)
                current, ids = [], set()
            current.append(row)
            ids.add(row.id)
        if current:
            pages.append(current)
        return pages

    def sync_raw(self, records: Sequence[PhoneRecord], source_file: str) -> SyncResult:
        """Upsert every record into the raw store, whole row keyed by id."""
        result = SyncResult()
        extracted_at = self.clock().isoformat()
        rows = [self._raw_row(r, source_file, extracted_at) for r in records]
        for page in self._pages(rows):
            try:
                outcomes = self.store.upsert_raw_many(page)
            except StoreError as e:
                logger.warning(
                    "raw page of %d row(s) failed (%s); writing rows one by one", len(page), e.message
                )
                outcomes = []
                for row in page:
                    outcome, failure = self._attempt(
                        lambda row=row: self.store.upsert_raw(row), row.id, row.phone_number, "raw"
                    )
                    if failure is not None:
                        result.failures.append(failure)
                    else:
                        outcomes.append(outcome)
            for outcome in outcomes:
                if outcome is UpsertOutcome.INSERTED:
                    result.inserted += 1
                else:
                    result.updated += 1
        logger.debug(
            "raw sync %s: inserted=%d updated=%d failed=%d",
            source_file, result.inserted, result.updated, result.failed,
        )
        return result

    # validated store

    def _email_held_by_sibling(self, record: PhoneRecord) -> bool:
        if is_blank(record.email):
            return False
        for sibling_id in record.context.sibling_ids:
            sibling = self.store.find_validated_by_id(sibling_id)
            if sibling is not None and sibling.email == record.email:
                return True
        return False

    def _incoming_fields(
        self, record: PhoneRecord, result: SyncResult, stage: str
    ) -> dict[str, str | None] | None:
        """Company fields to write; a row-shared email stays with the sibling that holds it."""
        fields = record.company_fields()
        if not record.context.sibling_ids or is_blank(record.email):
            return fields
        held, failure = self._attempt(
            lambda: self._email_held_by_sibling(record), record.id, record.phone_number, stage
        )
        if failure is not None:
            result.failures.append(failure)
            return None
        if held:
            logger.debug("%s: email %s kept on its sibling record", record.id, record.email)
            fields["email"] = None
        return fields

    def _write_validated(
        self,
        record: PhoneRecord,
        existing: ValidatedRow | None,
        result: SyncResult,
        stage: str,
    ) -> bool:
        status = self.normalizer.is_valid(record.phone_number)
        incoming = self._incoming_fields(record, result, stage)
        if incoming is None:
            return False
        if existing is None:
            row = ValidatedRow(
                id=record.id,
                phone=record.phone_number,
                status=status,
                **incoming,
            )
            _, failure = self._attempt(
                lambda: self.store.insert_validated(row), record.id, record.phone_number, stage
            )
            if failure is not None:
                result.failures.append(failure)
                return False
            result.inserted += 1
            return True

        merged = field_union(existing.company_fields(), incoming)
        changes: dict[str, Any] = {
            name: value for name, value in merged.items() if value != getattr(existing, name)
        }
        if status != existing.status:
            changes["status"] = status
        if not changes and existing.phone == record.phone_number:
            result.unchanged += 1
            return True
        _, failure = self._attempt(
            lambda: self.store.update_validated_fields(record.id, record.phone_number, changes),
            record.id, record.phone_number, stage,
        )
        if failure is not None:
            result.failures.append(failure)
            return False
        result.updated += 1
        return True

    def _apply_fills(self, fills: Sequence[FieldFill], failures: list[RecordFailure]) -> tuple[int, int]:
        rows_updated = fields_filled = 0
        for fill in fills:
            _, failure = self._attempt(
                lambda fill=fill: self.store.update_validated_fields(fill.target_id, fill.phone, fill.fields),
                fill.target_id, fill.phone, "consolidate",
            )
            if failure is not None:
                failures.append(failure)
                continue
            rows_updated += 1
            fields_filled += len(fill.fields)
        return rows_updated, fields_filled

    def _merge_phone_group(self, phone: str, result: PromoteResult) -> None:
        rows, failure = self._attempt(
            lambda: self.store.find_validated_by_phone(phone), phone, phone, "consolidate"
        )
        if failure is not None:
            result.merge_failures.append(failure)
            return
        fills = plan_completeness_merge(rows or [], exclude=UNIQUE_FIELDS)
        _, filled = self._apply_fills(fills, result.merge_failures)
        result.merged_fields += filled

    def promote(self, records: Sequence[PhoneRecord]) -> PromoteResult:
        """Insert or field-union update each record by id, then merge its phone group."""
        result = PromoteResult()
        for record in records:
            existing, failure = self._attempt(
                lambda record=record: self.store.find_validated_by_id(record.id),
                record.id, record.phone_number, "validated",
            )
            if failure is not None:
                result.failures.append(failure)
                continue
            if self._write_validated(record, existing, result, "validated"):
                self._merge_phone_group(record.phone_number, result)
        logger.debug(
            "promote: inserted=%d updated=%d unchanged=%d failed=%d merged_fields=%d",
            result.inserted, result.updated, result.unchanged, result.failed, result.merged_fields,
        )
        return result

    def promote_direct(self, records: Sequence[PhoneRecord]) -> PromoteResult:
        """Simplified promotion keyed by (id, phone); no cross-row merge."""
        result = PromoteResult()
        for record in records:
            existing, failure = self._attempt(
                lambda record=record: self.store.find_validated_by_id_and_phone(record.id, record.phone_number),
                record.id, record.phone_number, "validated",
            )
            if failure is not None:
                result.failures.append(failure)
                continue
            self._write_validated(record, existing, result, "validated")
        return result

    def _read_validated(self, stage: str) -> tuple[list[ValidatedRow], RecordFailure | None]:
        rows, failure = self._attempt(
            lambda: list(self.store.iter_validated()), STORE_WIDE_ID, "", stage
        )
        return rows or [], failure

    def consolidate(self) -> ConsolidationResult:
        """Completeness merge over the whole validated store."""
        rows, failure = self._read_validated("consolidate")
        if failure is not None:
            return ConsolidationResult(groups_examined=0, rows_updated=0, fields_filled=0, failures=(failure,))
        by_phone: dict[str, int] = {}
        for row in rows:
            by_phone[row.phone] = by_phone.get(row.phone, 0) + 1
        fills = plan_completeness_merge(rows, exclude=UNIQUE_FIELDS)
        failures: list[RecordFailure] = []
        rows_updated, fields_filled = self._apply_fills(fills, failures)
        result = ConsolidationResult(
            groups_examined=sum(1 for n in by_phone.values() if n > 1),
            rows_updated=rows_updated,
            fields_filled=fields_filled,
            failures=tuple(failures),
        )
        logger.info(
            "consolidate: groups=%d rows_updated=%d fields_filled=%d failures=%d",
            result.groups_examined, result.rows_updated, result.fields_filled, len(result.failures),
        )
        return result

    def revalidate_all(self) -> RevalidationResult:
        """Recompute ``status`` for every validated row from its stored phone."""
        rows, failure = self._read_validated("revalidate")
        if failure is not None:
            return RevalidationResult(processed=0, valid=0, invalid=0, changed=0, failures=(failure,))
        processed = valid = changed = 0
        failures: list[RecordFailure] = []
        for row in rows:
            processed += 1
            status = self.normalizer.is_valid(self.normalizer.clean(row.phone))
            if status:
                valid += 1
            if status == row.status:
                continue
            _, failure = self._attempt(
                lambda row=row, status=status: self.store.update_validated_fields(
                    row.id, row.phone, {"status": status}
                ),
                row.id, row.phone, "revalidate",
            )
            if failure is not None:
                failures.append(failure)
            else:
                changed += 1
        result = RevalidationResult(
            processed=processed,
            valid=valid,
            invalid=processed - valid,
            changed=changed,
            failures=tuple(failures),
        )
        logger.info(
            "revalidate: processed=%d valid=%d invalid=%d changed=%d",
            result.processed, result.valid, result.invalid, result.changed,
        )
        return result
