from __future__ import annotations

import pytest

from focus_tracker.errors import StorageError, ValidationError
from focus_tracker.ledger import TimeLedger
from focus_tracker.store import TIME_LEDGER, MemoryKeyValueStore


class FlakyStore(MemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def set_many(self, values):
        if self.fail:
            raise StorageError("disk full")
        await super().set_many(values)


class TestRecord:
    def setup_method(self):
        self.store = MemoryKeyValueStore()
        self.ledger = TimeLedger(self.store)

    @pytest.mark.asyncio
    async def test_records_are_additive(self):
        await self.ledger.record("2024-03-05", "github.com", 10)
        await self.ledger.record("2024-03-05", "github.com", 25)

        assert self.ledger.snapshot("2024-03-05") == {"github.com": 35}

    @pytest.mark.asyncio
    async def test_write_through_on_every_record(self):
        await self.ledger.record("2024-03-05", "github.com", 10)

        assert await self.store.get(TIME_LEDGER) == {"2024-03-05": {"github.com": 10}}

    @pytest.mark.asyncio
    async def test_rejects_negative_delta_and_empty_domain(self):
        with pytest.raises(ValidationError):
            await self.ledger.record("2024-03-05", "github.com", -1)
        with pytest.raises(ValidationError):
            await self.ledger.record("2024-03-05", "", 10)

        assert self.ledger.snapshot("2024-03-05") == {}

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self):
        await self.ledger.record("2024-03-05", "github.com", 10)
        snapshot = self.ledger.snapshot("2024-03-05")
        snapshot["github.com"] = 0

        assert self.ledger.total("2024-03-05") == 10

    @pytest.mark.asyncio
    async def test_load_restores_persisted_days(self):
        await self.ledger.record("2024-03-04", "reddit.com", 40)
        fresh = TimeLedger(self.store)
        await fresh.load()

        assert fresh.dates() == ["2024-03-04"]
        assert fresh.snapshot("2024-03-04") == {"reddit.com": 40}


class TestMergeMax:
    def setup_method(self):
        self.ledger = TimeLedger(MemoryKeyValueStore())

    @pytest.mark.asyncio
    async def test_takes_the_larger_value_not_the_sum(self):
        await self.ledger.record("2024-03-05", "github.com", 120)

        changed = await self.ledger.merge_max({"2024-03-05": {"github.com": 200}})

        assert changed == ["2024-03-05"]
        assert self.ledger.snapshot("2024-03-05")["github.com"] == 200

    @pytest.mark.asyncio
    async def test_never_lowers_a_cell(self):
        await self.ledger.record("2024-03-05", "github.com", 200)

        changed = await self.ledger.merge_max({"2024-03-05": {"github.com": 120}})

        assert changed == []
        assert self.ledger.snapshot("2024-03-05")["github.com"] == 200


class TestPersistenceFailure:
    @pytest.mark.asyncio
    async def test_failed_write_keeps_memory_and_retries(self):
        store = FlakyStore()
        ledger = TimeLedger(store)
        store.fail = True

        await ledger.record("2024-03-05", "github.com", 10)

        assert ledger.dirty
        assert ledger.snapshot("2024-03-05") == {"github.com": 10}

        store.fail = False
        assert await ledger.flush()
        assert not ledger.dirty
        assert await store.get(TIME_LEDGER) == {"2024-03-05": {"github.com": 10}}
