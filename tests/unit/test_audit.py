"""Tests for AuditEmitter and InMemoryAuditSink."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from src.core.exceptions import AuditSinkError
from src.licensing.audit import AuditEmitter
from src.licensing.models import AuditEventType, AuditRecord, AuditSeverity, utcnow
from src.licensing.store import InMemoryAuditSink


class TestAuditEmitter:
    @pytest.mark.asyncio
    async def test_record_writes_in_background(self) -> None:
        sink = InMemoryAuditSink()
        emitter = AuditEmitter(sink)
        emitter.record("t1", "payroll", AuditEventType.VALIDATION_FAILURE, {"reason": "nope", "ip": None})
        assert emitter.stats()["scheduled"] == 1

        await emitter.drain()
        records = await sink.query()
        assert len(records) == 1
        assert records[0].severity == AuditSeverity.WARNING
        assert records[0].context == {"reason": "nope"}
        assert emitter.stats()["written"] == 1
        assert emitter.stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_explicit_severity(self) -> None:
        sink = InMemoryAuditSink()
        emitter = AuditEmitter(sink)
        emitter.record("t1", "payroll", AuditEventType.LICENSE_UPDATED, severity=AuditSeverity.ERROR)
        await emitter.drain()
        assert (await sink.query())[0].severity == AuditSeverity.ERROR

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(self) -> None:
        sink = AsyncMock()
        sink.write.side_effect = AuditSinkError("disk full")
        emitter = AuditEmitter(sink)

        emitter.record("t1", "payroll", AuditEventType.RATE_LIMITED)
        await emitter.drain()

        stats = emitter.stats()
        assert stats["failed"] == 1
        assert stats["written"] == 0

    @pytest.mark.asyncio
    async def test_record_does_not_wait_for_slow_sink(self) -> None:
        gate = asyncio.Event()

        async def _slow_write(record: AuditRecord) -> None:
            await gate.wait()

        sink = AsyncMock()
        sink.write.side_effect = _slow_write
        emitter = AuditEmitter(sink)

        emitter.record("t1", "payroll", AuditEventType.VALIDATION_FAILURE)
        await asyncio.sleep(0)
        assert emitter.stats()["pending"] == 1

        gate.set()
        await emitter.drain()
        assert emitter.stats()["written"] == 1

    def test_no_event_loop_drops_record(self) -> None:
        emitter = AuditEmitter(InMemoryAuditSink())
        emitter.record("t1", "payroll", AuditEventType.VALIDATION_FAILURE)
        assert emitter.stats()["dropped"] == 1
        assert emitter.stats()["scheduled"] == 0


class TestInMemoryAuditSink:
    @pytest.mark.asyncio
    async def test_query_filters_and_orders(self) -> None:
        sink = InMemoryAuditSink()
        base = utcnow()
        await sink.write(AuditRecord("t1", "payroll", AuditEventType.VALIDATION_FAILURE, timestamp=base))
        await sink.write(
            AuditRecord("t1", "leave", AuditEventType.RATE_LIMITED, timestamp=base + timedelta(seconds=1))
        )
        await sink.write(
            AuditRecord("t2", "payroll", AuditEventType.VALIDATION_FAILURE, timestamp=base + timedelta(seconds=2))
        )

        t1 = await sink.query(tenant_id="t1")
        assert [r.module_key for r in t1] == ["leave", "payroll"]
        assert len(await sink.query(module_key="payroll")) == 2
        assert len(await sink.query(event_type=AuditEventType.RATE_LIMITED)) == 1
        assert len(await sink.query(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_statistics(self) -> None:
        sink = InMemoryAuditSink()
        await sink.write(AuditRecord("t1", "payroll", AuditEventType.LIMIT_EXCEEDED, AuditSeverity.CRITICAL))
        await sink.write(AuditRecord("t1", "payroll", AuditEventType.LIMIT_WARNING, AuditSeverity.WARNING))
        stats = sink.statistics()
        assert stats["total"] == 2
        assert stats["by_severity"] == {"critical": 1, "warning": 1}
        assert sink.total_entries == 2

    @pytest.mark.asyncio
    async def test_bounded(self) -> None:
        sink = InMemoryAuditSink()
        sink._MAX_RECORDS = 3
        for i in range(5):
            await sink.write(AuditRecord(f"t{i}", "payroll", AuditEventType.VALIDATION_FAILURE))
        assert sink.total_entries == 3
        assert {r.tenant_id for r in await sink.query()} == {"t2", "t3", "t4"}

    def test_audit_ids_are_unique(self) -> None:
        ids = {AuditRecord("t1", "payroll", AuditEventType.VALIDATION_FAILURE).audit_id for _ in range(100)}
        assert len(ids) == 100
