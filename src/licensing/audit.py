"""Fire-and-forget audit emitter for licensing decisions.

``record`` never raises and never awaits: it schedules the sink write on the
running event loop and returns immediately. Sink failures are logged and
counted, never retried.
"""

from __future__ import annotations

import asyncio
from typing import Any

from src.core.interfaces import AuditSink
from src.core.logging import get_logger
from src.licensing.models import DEFAULT_SEVERITY, AuditEventType, AuditRecord, AuditSeverity

log = get_logger(__name__)


class AuditEmitter:
    """Schedules ``AuditRecord`` writes without blocking the caller."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink
        self._pending: set[asyncio.Task[None]] = set()
        self._scheduled = 0
        self._written = 0
        self._failed = 0
        self._dropped = 0

    @property
    def sink(self) -> AuditSink:
        return self._sink

    def record(
        self,
        tenant_id: str | None,
        module_key: str,
        event_type: AuditEventType,
        context: dict[str, Any] | None = None,
        severity: AuditSeverity | None = None,
    ) -> None:
        try:
            entry = AuditRecord(
                tenant_id=tenant_id,
                module_key=module_key,
                event_type=event_type,
                severity=severity or DEFAULT_SEVERITY[event_type],
                context={k: v for k, v in (context or {}).items() if v is not None},
            )
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dropped += 1
            log.warning(
                "audit_dropped_no_event_loop",
                tenant_id=tenant_id,
                module_key=module_key,
                event_type=str(event_type),
            )
            return
        except Exception as exc:
            self._failed += 1
            log.error("audit_record_build_failed", tenant_id=tenant_id, module_key=module_key, error=str(exc))
            return

        task = loop.create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self._scheduled += 1

    async def _write(self, entry: AuditRecord) -> None:
        try:
            await self._sink.write(entry)
        except Exception as exc:
            self._failed += 1
            log.error(
                "audit_write_failed",
                tenant_id=entry.tenant_id,
                module_key=entry.module_key,
                event_type=entry.event_type.value,
                error=str(exc),
            )
            return
        self._written += 1

    async def drain(self) -> None:
        """Wait for every scheduled write to finish (tests and shutdown)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def stats(self) -> dict[str, int]:
        return {
            "scheduled": self._scheduled,
            "written": self._written,
            "failed": self._failed,
            "dropped": self._dropped,
            "pending": len(self._pending),
        }
