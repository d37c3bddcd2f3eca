from __future__ import annotations

import pytest

from phone_importer.config.loader import SyncConfig
from phone_importer.db.store import InMemoryPhoneStore, StoreError
from phone_importer.models.phone_record import PhoneRecord, RowContext
from phone_importer.models.store_rows import ValidatedRow
from phone_importer.services.synchronizer import STORE_WIDE_ID, RetryPolicy, Synchronizer


def _record(record_id: str, phone: str, **fields) -> PhoneRecord:
    return PhoneRecord(
        id=record_id,
        phone_number=phone,
        source_sheet="Sheet1",
        is_valid_national_number=phone[:1] in "689" and len(phone) == 8,
        context=RowContext(row_position=1, phone_column=0),
        **fields,
    )


class FlakyStore(InMemoryPhoneStore):
    """Fails the first ``failures`` validated inserts."""

    def __init__(self, failures: int, retryable: bool = True) -> None:
        super().__init__()
        self.remaining = failures
        self.retryable = retryable
        self.insert_calls = 0

    def insert_validated(self, row):
        self.insert_calls += 1
        if self.remaining > 0:
            self.remaining -= 1
            raise StoreError("could not serialize access", retryable=self.retryable)
        return super().insert_validated(row)


class BrokenPageStore(InMemoryPhoneStore):
    def __init__(self, bad_id: str | None = None) -> None:
        super().__init__()
        self.bad_id = bad_id
        self.page_calls = 0

    def upsert_raw_many(self, rows):
        self.page_calls += 1
        raise StoreError("page rejected")

    def upsert_raw(self, row):
        if row.id == self.bad_id:
            raise StoreError("value too long")
        return super().upsert_raw(row)


class UnreadableStore(InMemoryPhoneStore):
    """Fails the first ``failures`` full reads of the validated store."""

    def __init__(self, failures: int, retryable: bool = True) -> None:
        super().__init__()
        self.remaining = failures
        self.retryable = retryable
        self.read_calls = 0

    def iter_validated(self):
        self.read_calls += 1
        if self.remaining > 0:
            self.remaining -= 1
            raise StoreError("connection reset", retryable=self.retryable)
        return super().iter_validated()


def test_retry_policy_linear_backoff():
    policy = RetryPolicy(max_attempts=4, backoff_seconds=0.5)
    assert [policy.delay(n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]
    assert RetryPolicy.from_config(SyncConfig(max_attempts=2, backoff_seconds=0)) == RetryPolicy(2, 0)


def test_retryable_failure_recovers(no_sleep):
    store = FlakyStore(failures=2)
    sync = Synchronizer(store, retry=RetryPolicy(3, 0.5), sleep=no_sleep)
    result = sync.promote([_record("88881111", "88881111")])
    assert result.inserted == 1
    assert result.failures == []
    assert store.insert_calls == 3
    assert no_sleep.delays == [0.5, 1.0]


def test_retries_exhausted_records_failure_and_continues(no_sleep):
    store = FlakyStore(failures=3)
    sync = Synchronizer(store, retry=RetryPolicy(3, 0.1), sleep=no_sleep)
    result = sync.promote([_record("a", "88881111"), _record("b", "91234567")])
    assert result.failed == 1
    failure = result.failures[0]
    assert failure.record_id == "a"
    assert failure.stage == "validated"
    assert failure.retryable is True
    assert failure.attempts == 3
    # the next record is still written
    assert result.inserted == 1
    assert store.find_validated_by_id("b") is not None


def test_non_retryable_failure_is_not_retried(no_sleep):
    store = FlakyStore(failures=1, retryable=False)
    result = Synchronizer(store, sleep=no_sleep).promote([_record("a", "88881111")])
    assert result.failures[0].attempts == 1
    assert no_sleep.delays == []


def test_duplicate_email_fails_only_that_record(memory_store, no_sleep):
    records = [
        _record("a", "88881111", email="shared@x.sg"),
        _record("b", "91234567", email="shared@x.sg"),
        _record("c", "61234567"),
    ]
    result = Synchronizer(memory_store, sleep=no_sleep).promote(records)
    assert result.inserted == 2
    assert result.succeeded == 2
    assert [f.record_id for f in result.failures] == ["b"]
    assert result.failures[0].constraint == "unique_email"
    assert memory_store.find_validated_by_id("a").email == "shared@x.sg"
    assert memory_store.find_validated_by_id("b") is None


def test_promote_sets_status_from_phone(memory_store):
    result = Synchronizer(memory_store).promote([_record("a", "88881111"), _record("b", "12345678")])
    assert result.inserted == 2
    assert memory_store.find_validated_by_id("a").status is True
    assert memory_store.find_validated_by_id("b").status is False


def test_promote_is_idempotent(memory_store):
    records = [_record("a", "88881111", company_name="Acme"), _record("b", "91234567")]
    sync = Synchronizer(memory_store)
    sync.promote(records)
    before = {r.id: r for r in memory_store.iter_validated()}

    again = sync.promote(records)
    assert again.inserted == 0
    assert again.updated == 0
    assert again.unchanged == 2
    assert {r.id: r for r in memory_store.iter_validated()} == before


def test_promote_fills_blanks_only(memory_store):
    memory_store.insert_validated(ValidatedRow(id="a", phone="88881111", status=None, company_name="Old"))
    result = Synchronizer(memory_store).promote(
        [_record("a", "88881111", company_name="New", email="a@x.sg")]
    )
    assert result.updated == 1
    row = memory_store.find_validated_by_id("a")
    assert row.company_name == "Old"
    assert row.email == "a@x.sg"
    assert row.status is True


def test_promote_updates_phone_of_existing_id(memory_store):
    memory_store.insert_validated(ValidatedRow(id="a", phone="88881111", status=True))
    result = Synchronizer(memory_store).promote([_record("a", "91234567")])
    assert result.updated == 1
    assert memory_store.find_validated_by_id("a").phone == "91234567"


def test_promote_merges_rows_sharing_a_phone(memory_store):
    records = [
        _record("ID1", "88881111", company_name="Acme"),
        _record("ID2", "88881111", company_name="Acme Pte", physical_address="1 Rd",
                website="acme.sg", email="info@acme.sg"),
    ]
    result = Synchronizer(memory_store).promote(records)
    assert result.inserted == 2
    assert result.merged_fields == 2
    first = memory_store.find_validated_by_id("ID1")
    assert first.company_name == "Acme"
    assert first.physical_address == "1 Rd"
    assert first.website == "acme.sg"
    # emails stay unique
    assert first.email is None


def test_sync_raw_writes_every_record(memory_store):
    records = [_record("a", "88881111"), _record("b", "91234567"), _record("a", "88881111")]
    sync = Synchronizer(memory_store, page_size=10)
    result = sync.sync_raw(records, "book.xlsx")
    assert (result.inserted, result.updated) == (2, 1)
    raw = memory_store.find_raw_by_id("a")
    assert raw.source_file == "book.xlsx"
    assert raw.metadata["source_sheet"] == "Sheet1"
    assert raw.metadata["row_number"] == 2
    assert "extracted_at" in raw.metadata

    again = sync.sync_raw(records, "book.xlsx")
    assert (again.inserted, again.updated) == (0, 3)


def test_sync_raw_pages_never_repeat_an_id():
    sync = Synchronizer(InMemoryPhoneStore(), page_size=3)
    rows = [sync._raw_row(_record(i, "88881111"), "f", "t") for i in ("a", "b", "a", "c", "d", "e")]
    pages = sync._pages(rows)
    assert [[r.id for r in p] for p in pages] == [["a", "b"], ["a", "c", "d"], ["e"]]


def test_sync_raw_falls_back_to_single_rows(no_sleep):
    store = BrokenPageStore(bad_id="b")
    sync = Synchronizer(store, page_size=10, sleep=no_sleep)
    result = sync.sync_raw([_record("a", "88881111"), _record("b", "91234567")], "f.xlsx")
    assert store.page_calls == 1
    assert result.inserted == 1
    assert [(f.record_id, f.stage) for f in result.failures] == [("b", "raw")]
    assert store.find_raw_by_id("a") is not None


def test_promote_direct_keys_on_id_and_phone(memory_store):
    sync = Synchronizer(memory_store)
    first = sync.promote_direct([_record("Row_2", "88881111", company_name="A")])
    assert first.inserted == 1
    second = sync.promote_direct([_record("Row_2", "88881111", email="a@x.sg")])
    assert second.updated == 1
    row = memory_store.find_validated_by_id("Row_2")
    assert (row.company_name, row.email) == ("A", "a@x.sg")


def test_consolidate_fills_from_best_row(memory_store):
    memory_store.insert_validated(ValidatedRow(id="a", phone="88881111", status=True, company_name="A"))
    memory_store.insert_validated(ValidatedRow(
        id="b", phone="88881111", status=True, company_name="B",
        physical_address="1 Rd", website="b.sg", email="b@x.sg",
    ))
    memory_store.insert_validated(ValidatedRow(id="c", phone="91234567", status=True))
    result = Synchronizer(memory_store).consolidate()
    assert result.groups_examined == 1
    assert result.rows_updated == 1
    assert result.fields_filled == 2
    a = memory_store.find_validated_by_id("a")
    assert (a.company_name, a.physical_address, a.website, a.email) == ("A", "1 Rd", "b.sg", None)

    assert Synchronizer(memory_store).consolidate().rows_updated == 0


@pytest.mark.parametrize("phone,stored,expected", [
    ("88881111", False, True),
    ("12345678", True, False),
    ("+65 9123 4567", None, True),
])
def test_revalidate_recomputes_status(memory_store, phone, stored, expected):
    memory_store.insert_validated(ValidatedRow(id="a", phone=phone, status=stored))
    result = Synchronizer(memory_store).revalidate_all()
    assert result.processed == 1
    assert result.changed == 1
    assert memory_store.find_validated_by_id("a").status is expected
    assert result.valid + result.invalid == 1


def test_revalidate_counts(memory_store):
    memory_store.insert_validated(ValidatedRow(id="a", phone="88881111", status=True))
    memory_store.insert_validated(ValidatedRow(id="b", phone="12345678", status=False))
    result = Synchronizer(memory_store).revalidate_all()
    assert (result.processed, result.valid, result.invalid, result.changed) == (2, 1, 1, 0)


def test_row_shared_email_is_stored_once(memory_store):
    def sibling(record_id: str, phone: str, other: str) -> PhoneRecord:
        return PhoneRecord(
            id=record_id,
            phone_number=phone,
            source_sheet="Sheet1",
            is_valid_national_number=True,
            context=RowContext(
                row_position=1, phone_column=1, phone_sequence=int(record_id[-1]),
                total_phones_in_row=2, base_row_id="ID1", sibling_ids=(other,),
            ),
            company_name="Tom",
            email="t@x.sg",
        )

    records = [sibling("ID1_1", "91234567", "ID1_2"), sibling("ID1_2", "61234567", "ID1_1")]
    sync = Synchronizer(memory_store)
    result = sync.promote(records)
    assert result.inserted == 2
    assert result.failures == []
    assert memory_store.find_validated_by_id("ID1_1").email == "t@x.sg"
    second = memory_store.find_validated_by_id("ID1_2")
    assert second.email is None
    assert second.company_name == "Tom"

    assert sync.promote(records).unchanged == 2


def test_consolidate_retries_store_read(no_sleep):
    store = UnreadableStore(failures=1)
    store.insert_validated(ValidatedRow(id="a", phone="88881111", status=True))
    store.insert_validated(ValidatedRow(id="b", phone="88881111", status=True, company_name="B"))
    result = Synchronizer(store, sleep=no_sleep).consolidate()
    assert store.read_calls == 2
    assert no_sleep.delays == [0.5]
    assert result.failures == ()
    assert result.rows_updated == 1
    assert store.find_validated_by_id("a").company_name == "B"


def test_consolidate_reports_unreadable_store(no_sleep):
    store = UnreadableStore(failures=5)
    result = Synchronizer(store, retry=RetryPolicy(max_attempts=2), sleep=no_sleep).consolidate()
    assert store.read_calls == 2
    assert (result.groups_examined, result.rows_updated) == (0, 0)
    [failure] = result.failures
    assert failure.record_id == STORE_WIDE_ID
    assert failure.stage == "consolidate"
    assert failure.attempts == 2
    assert failure.message == "connection reset"


def test_revalidate_retries_store_read(no_sleep):
    store = UnreadableStore(failures=1)
    store.insert_validated(ValidatedRow(id="a", phone="12345678", status=True))
    result = Synchronizer(store, sleep=no_sleep).revalidate_all()
    assert (result.processed, result.changed, result.failures) == (1, 1, ())
    assert store.find_validated_by_id("a").status is False


def test_revalidate_reports_non_retryable_read_failure(no_sleep):
    store = UnreadableStore(failures=1, retryable=False)
    result = Synchronizer(store, sleep=no_sleep).revalidate_all()
    assert store.read_calls == 1
    assert result.processed == 0
    assert [f.record_id for f in result.failures] == [STORE_WIDE_ID]
    assert no_sleep.delays == []
