"""
Client-side replay of the offline queue.

A single flush at a time walks the queue oldest first and submits each
operation with its correlation id, so the server can answer a resend with the
response it stored the first time. An operation that ends up ``failed`` or in
``conflict`` holds back the later operations of the same chat only; other
chats keep flowing. Nothing is dropped without an explicit ``discard``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from app.client.api_client import SyncTransport
from app.client.offline_queue import (
    STATUS_CONFLICT,
    STATUS_FAILED,
    STATUS_PENDING,
    OfflineQueue,
    PendingOperationRecord,
    new_local_chat_ref,
)
from app.core.config import settings
from app.core.logging import get_logger
from app.models.enums import OperationKind

logger = get_logger("offline")

Sleep = Callable[[float], Awaitable[Any]]


class TransientSyncError(Exception):
    """The server could not be reached or answered with a retryable status."""


@dataclass
class FlushReport:
    applied: List[str] = field(default_factory=list)
    duplicates: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    held: List[str] = field(default_factory=list)

    @property
    def acknowledged(self) -> int:
        return len(self.applied) + len(self.duplicates)


def is_transient(error: Exception) -> bool:
    """Transport failures, timeouts, 5xx and 429 are worth another attempt"""
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TransientSyncError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        return code >= 500 or code == 429
    return False


def _error_detail(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        try:
            body = error.response.json()
        except ValueError:
            return f"HTTP {error.response.status_code}"
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("code") or body)
        return str(body)
    return str(error) or type(error).__name__


class ReconciliationEngine:
    def __init__(
        self,
        queue: OfflineQueue,
        transport: SyncTransport,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
        online: bool = True,
    ):
        config = settings.get_offline_config()
        self.queue = queue
        self.transport = transport
        self.max_attempts = max_attempts or config["max_attempts"]
        self.backoff_base = config["backoff_base"] if backoff_base is None else backoff_base
        self.backoff_max = config["backoff_max"] if backoff_max is None else backoff_max
        self.online = online
        self._sleep = sleep
        self._flush_lock = asyncio.Lock()

    async def submit(
        self,
        kind: OperationKind,
        payload: Dict[str, Any],
        chat_ref: Optional[str] = None,
    ) -> PendingOperationRecord:
        """Queue a mutation and replay right away when online.

        ``create_chat`` gets a fresh local chat ref when none is given; later
        operations on that chat can use the ref before the server id is known.
        """
        kind = OperationKind(kind)
        if kind == OperationKind.create_chat and chat_ref is None:
            chat_ref = new_local_chat_ref()
        elif kind != OperationKind.create_chat:
            if not chat_ref:
                raise ValueError(f"{kind.value} needs a chat_ref")
            chat_ref = self.queue.resolve_chat_ref(chat_ref)

        record = self.queue.enqueue(kind, payload, chat_ref=chat_ref)
        if self.online:
            await self.flush()
        return record

    async def set_online(self, online: bool) -> Optional[FlushReport]:
        self.online = online
        if online:
            logger.info("Connectivity restored, replaying offline queue", queued=len(self.queue))
            return await self.flush()
        return None

    async def flush(self) -> FlushReport:
        """Replay queued operations in their original order"""
        async with self._flush_lock:
            report = FlushReport()
            blocked: Set[str] = set()

            for record in self.queue.operations():
                chat_ref = self.queue.resolve_chat_ref(record.chat_ref)
                if record.is_blocked:
                    if chat_ref:
                        blocked.add(chat_ref)
                    continue
                if chat_ref and chat_ref in blocked:
                    report.held.append(record.correlation_id)
                    continue
                if not self.online:
                    report.held.append(record.correlation_id)
                    continue

                outcome = await self._replay(record, chat_ref)
                getattr(report, outcome).append(record.correlation_id)
                if outcome in ("failed", "conflicts") and chat_ref:
                    blocked.add(chat_ref)

            if report.failed or report.conflicts:
                logger.warning(
                    "Offline operations need attention",
                    failed=len(report.failed),
                    conflicts=len(report.conflicts),
                    held=len(report.held),
                )
            return report

    async def _replay(self, record: PendingOperationRecord, chat_ref: Optional[str]) -> str:
        chat_id = None if record.kind == OperationKind.create_chat.value else chat_ref
        attempts = record.retry_count

        while True:
            try:
                result = await self.transport.send(record.to_wire(chat_id))
            except (httpx.HTTPError, asyncio.TimeoutError, TransientSyncError) as e:
                detail = _error_detail(e)
                if not is_transient(e):
                    self.queue.update(record.correlation_id, status=STATUS_FAILED, last_error=detail)
                    logger.warning("Offline operation refused", correlation_id=record.correlation_id, error=detail)
                    return "failed"

                attempts += 1
                if attempts >= self.max_attempts:
                    self.queue.update(
                        record.correlation_id,
                        status=STATUS_FAILED,
                        retry_count=attempts,
                        last_error=detail,
                    )
                    logger.warning(
                        "Offline operation failed after retries",
                        correlation_id=record.correlation_id,
                        attempts=attempts,
                        error=detail,
                    )
                    return "failed"

                self.queue.update(record.correlation_id, retry_count=attempts, last_error=detail)
                delay = self._backoff(attempts - 1)
                logger.info(
                    "Retrying offline operation",
                    correlation_id=record.correlation_id,
                    attempt=attempts + 1,
                    delay=delay,
                )
                await self._sleep(delay)
                continue

            return self._settle(record, result)

    def _settle(self, record: PendingOperationRecord, result: Dict[str, Any]) -> str:
        outcome = result.get("outcome")
        error = result.get("error") or {}

        if outcome in ("applied", "duplicate"):
            if record.kind == OperationKind.create_chat.value and record.chat_ref:
                chat = (result.get("result") or {}).get("chat") or {}
                if chat.get("id"):
                    self.queue.map_chat_ref(record.chat_ref, chat["id"])
            self.queue.remove(record.correlation_id)
            return "applied" if outcome == "applied" else "duplicates"

        if outcome == "conflict":
            self.queue.update(
                record.correlation_id,
                status=STATUS_CONFLICT,
                server_state=(result.get("result") or {}).get("current"),
                last_error=error.get("detail"),
            )
            return "conflicts"

        self.queue.update(
            record.correlation_id,
            status=STATUS_FAILED,
            last_error=error.get("detail") or f"Operation {outcome}",
        )
        return "failed"

    def _backoff(self, retry_index: int) -> float:
        return min(self.backoff_base * 2 ** retry_index, self.backoff_max)

    # User actions

    def failed_operations(self) -> List[PendingOperationRecord]:
        return self.queue.with_status(STATUS_FAILED)

    def conflicts(self) -> List[PendingOperationRecord]:
        return self.queue.with_status(STATUS_CONFLICT)

    async def retry(self, correlation_id: str) -> Optional[FlushReport]:
        """Give a failed operation a fresh set of attempts"""
        self._require(correlation_id)
        self.queue.update(correlation_id, status=STATUS_PENDING, retry_count=0, last_error=None)
        if self.online:
            return await self.flush()
        return None

    def discard(self, correlation_id: str) -> None:
        self._require(correlation_id)
        self.queue.remove(correlation_id)
        logger.info("Offline operation discarded", correlation_id=correlation_id)

    async def resolve_conflict(
        self,
        correlation_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[FlushReport]:
        """Resubmit a conflicting update on top of the server's current version"""
        record = self._require(correlation_id)
        if record.status != STATUS_CONFLICT:
            raise ValueError(f"Operation {correlation_id} is not in conflict")

        current = record.server_state or {}
        merged = dict(record.payload or {})
        if payload is not None:
            merged.update(payload)
        if current.get("version") is not None:
            merged["version"] = current["version"]

        self.queue.update(
            correlation_id,
            payload=merged,
            status=STATUS_PENDING,
            retry_count=0,
            last_error=None,
            server_state=None,
        )
        if self.online:
            return await self.flush()
        return None

    def _require(self, correlation_id: str) -> PendingOperationRecord:
        record = self.queue.get(correlation_id)
        if record is None:
            raise KeyError(correlation_id)
        return record
