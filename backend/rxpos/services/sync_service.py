# Overview: Pushes pending offline transactions upstream with a bounded worker pool.

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import httpx
from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import OfflineTransaction
from ..models.offline import SYNC_STATUS_PENDING, SYNC_STATUS_SYNCED, SYNC_STATUS_SYNCING
from rxpos.time_utils import utcnow
from .concurrency import commit_with_retry
from .errors import SyncFailure
from .offline_service import get_offline_transaction, get_pending_transactions, record_missing_offline_transactions
from .sync_client import PushResult, SyncClient
"""
Sync Engine Invariants (authoritative)

State machine:
    pending -> syncing -> synced   (terminal)
                       -> pending  (failure: sync_attempt_count += 1, sync_error set)

Threads:
- Only the calling thread touches the database. Worker threads only perform
  the HTTP push and hand a PushResult (or exception) back through a Future.
- A row is claimed with a conditional UPDATE (status pending -> syncing);
  a row claimed by someone else is skipped, never pushed twice in one run.

Resolution:
- Every claimed row ends the run as synced or pending. Timeouts count as
  failures. Rows still claimed when the run aborts are released to pending
  without an attempt increment.

Cancellation:
- Pushes not yet started when cancel_event is set are skipped (released,
  no attempt counted). Pushes already on the wire are awaited and recorded.

Ordering:
- Claimed oldest first and submitted in that order; completion order is not
  guaranteed.
"""

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05


class SyncCancelled(Exception):
    """Raised inside a worker when the batch was cancelled before the push was sent."""


@dataclass
class SyncSummary:
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class _Claimed:
    transaction_id: int
    invoice_number: str
    payload: dict


def compute_backoff(attempts: int, *, base_seconds: float, max_seconds: float) -> timedelta:
    """Delay before the next automatic attempt after `attempts` failures."""
    if attempts <= 0:
        return timedelta(0)
    seconds = min(base_seconds * (2 ** (attempts - 1)), max_seconds)
    return timedelta(seconds=seconds)


def build_client(transport: Optional[httpx.BaseTransport] = None) -> Optional[SyncClient]:
    """SyncClient from app config, or None when no endpoint is configured."""
    cfg = current_app.config
    base_url = cfg.get("SYNC_ENDPOINT_URL")
    if not base_url:
        return None
    return SyncClient(
        base_url,
        api_key=cfg.get("SYNC_API_KEY"),
        timeout=float(cfg.get("SYNC_TIMEOUT_SECONDS", 10)),
        transport=transport,
    )


def build_push_payload(tx: OfflineTransaction) -> dict:
    return {
        "invoice_number": tx.invoice_number,
        "terminal_code": tx.terminal_code,
        "warehouse_id": tx.warehouse_id,
        "invoice": tx.payload,
        "totals": {
            "subtotal_usd_cents": tx.subtotal_usd_cents,
            "subtotal_local_cents": tx.subtotal_local_cents,
            "tax_usd_cents": tx.tax_usd_cents,
            "tax_local_cents": tx.tax_local_cents,
            "total_usd_cents": tx.total_usd_cents,
            "total_local_cents": tx.total_local_cents,
        },
        "payment_method": tx.payment_method,
        "payment_details": tx.payment_details,
    }


# ---------------------------------------------------------------------------
# State transitions (calling thread only)
# ---------------------------------------------------------------------------

def _claim(tx: OfflineTransaction) -> Optional[_Claimed]:
    """Compare-and-set pending -> syncing; None if another run got there first."""
    result = db.session.execute(
        update(OfflineTransaction)
        .where(
            OfflineTransaction.id == tx.id,
            OfflineTransaction.status == SYNC_STATUS_PENDING,
        )
        .values(status=SYNC_STATUS_SYNCING, last_sync_attempt=utcnow())
        .execution_options(synchronize_session=False)
    )
    commit_with_retry()
    if result.rowcount != 1:
        return None
    db.session.refresh(tx)
    return _Claimed(tx.id, tx.invoice_number, build_push_payload(tx))


def _mark_synced(transaction_id: int, result: PushResult) -> None:
    tx = db.session.get(OfflineTransaction, transaction_id)
    now = utcnow()
    tx.status = SYNC_STATUS_SYNCED
    tx.synced = True
    tx.synced_at = now
    tx.sync_error = None
    tx.next_attempt_at = None
    commit_with_retry()
    logger.info(
        "synced %s (http %s%s)",
        tx.invoice_number,
        result.status_code,
        ", duplicate" if result.duplicate else "",
    )


def _mark_failed(transaction_id: int, error: str) -> OfflineTransaction:
    cfg = current_app.config
    tx = db.session.get(OfflineTransaction, transaction_id)
    now = utcnow()
    tx.status = SYNC_STATUS_PENDING
    tx.sync_attempt_count = (tx.sync_attempt_count or 0) + 1
    tx.sync_error = error[:1000]
    tx.next_attempt_at = now + compute_backoff(
        tx.sync_attempt_count,
        base_seconds=float(cfg.get("SYNC_BACKOFF_BASE_SECONDS", 30)),
        max_seconds=float(cfg.get("SYNC_BACKOFF_MAX_SECONDS", 3600)),
    )
    commit_with_retry()

    threshold = int(cfg.get("SYNC_MANUAL_REVIEW_THRESHOLD", 10))
    if tx.sync_attempt_count >= threshold:
        logger.warning(
            "sync of %s failed %d times, needs manual review: %s",
            tx.invoice_number, tx.sync_attempt_count, error,
        )
    else:
        logger.info("sync of %s failed (attempt %d): %s", tx.invoice_number, tx.sync_attempt_count, error)
    return tx


def _release(transaction_id: int) -> None:
    """syncing -> pending without counting an attempt (push never sent)."""
    db.session.execute(
        update(OfflineTransaction)
        .where(
            OfflineTransaction.id == transaction_id,
            OfflineTransaction.status == SYNC_STATUS_SYNCING,
        )
        .values(status=SYNC_STATUS_PENDING)
        .execution_options(synchronize_session=False)
    )
    commit_with_retry()
    db.session.expire_all()


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, SyncFailure):
        detail = exc.details.get("error") or exc.details.get("status_code")
        return f"{exc}: {detail}" if detail else str(exc)
    return f"{exc.__class__.__name__}: {exc}"


def _record_outcome(item: _Claimed, future: Future, summary: SyncSummary) -> None:
    if future.cancelled():
        _release(item.transaction_id)
        summary.skipped += 1
        return

    exc = future.exception()
    if exc is None:
        _mark_synced(item.transaction_id, future.result())
        summary.synced += 1
    elif isinstance(exc, SyncCancelled):
        _release(item.transaction_id)
        summary.skipped += 1
        logger.info("sync of %s skipped: cancelled before send", item.invoice_number)
    else:
        if not isinstance(exc, SyncFailure):
            logger.error("unexpected error pushing %s", item.invoice_number, exc_info=exc)
        message = _failure_message(exc)
        _mark_failed(item.transaction_id, message)
        summary.failed += 1
        summary.errors.append({
            "transaction_id": item.transaction_id,
            "invoice_number": item.invoice_number,
            "error": message,
        })


# ---------------------------------------------------------------------------
# Worker side (no database access)
# ---------------------------------------------------------------------------

def _push(client: SyncClient, item: _Claimed, cancel_event: threading.Event) -> PushResult:
    if cancel_event.is_set():
        raise SyncCancelled(item.invoice_number)
    return client.push_transaction(item.invoice_number, item.payload)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------

def sync_transaction(
    transaction_id: int,
    *,
    client: Optional[SyncClient] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> OfflineTransaction:
    """
    Push one transaction now (manual retry): ignores backoff and the review ceiling.

    Network failures are recorded on the row, never raised. Already-synced
    rows are returned untouched.
    """
    tx = get_offline_transaction(transaction_id)
    if tx.status == SYNC_STATUS_SYNCED:
        return tx

    owns_client = client is None
    if client is None:
        client = build_client(transport)
    if client is None:
        raise SyncFailure("sync endpoint is not configured", details={"transaction_id": transaction_id})

    try:
        item = _claim(tx)
        if item is None:
            raise SyncFailure("transaction is already being synced", details={"transaction_id": transaction_id})
        try:
            result = client.push_transaction(item.invoice_number, item.payload)
        except SyncFailure as exc:
            return _mark_failed(item.transaction_id, _failure_message(exc))
        except Exception as exc:
            logger.error("unexpected error pushing %s", item.invoice_number, exc_info=exc)
            return _mark_failed(item.transaction_id, _failure_message(exc))
        _mark_synced(item.transaction_id, result)
        return db.session.get(OfflineTransaction, item.transaction_id)
    finally:
        if owns_client:
            client.close()


def sync_all_pending(
    *,
    client: Optional[SyncClient] = None,
    transport: Optional[httpx.BaseTransport] = None,
    max_workers: Optional[int] = None,
    limit: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> SyncSummary:
    """
    Push every automatically-eligible pending transaction, oldest first.

    Each transaction succeeds or fails on its own; one failure never stops
    the rest. Returns SyncSummary(synced, failed, skipped, errors).
    """
    cfg = current_app.config
    summary = SyncSummary()
    cancel_event = cancel_event or threading.Event()

    pending = get_pending_transactions(limit=limit or int(cfg.get("SYNC_BATCH_SIZE", 100)))
    if not pending:
        return summary

    owns_client = client is None
    if client is None:
        client = build_client(transport)
    if client is None:
        logger.info("sync endpoint not configured; %d transactions left pending", len(pending))
        summary.skipped = len(pending)
        return summary

    workers = max(1, int(max_workers or cfg.get("SYNC_MAX_WORKERS", 4)))
    in_flight: dict[Future, _Claimed] = {}
    try:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rxpos-sync") as pool:
            for tx in pending:
                if cancel_event.is_set():
                    summary.skipped += 1
                    continue
                item = _claim(tx)
                if item is None:
                    summary.skipped += 1
                    continue
                in_flight[pool.submit(_push, client, item, cancel_event)] = item

            not_done = set(in_flight)
            while not_done:
                done, not_done = wait(not_done, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    _record_outcome(in_flight.pop(future), future, summary)
                if cancel_event.is_set():
                    for future in list(not_done):
                        if future.cancel():
                            not_done.discard(future)
                            _record_outcome(in_flight.pop(future), future, summary)
    finally:
        # Anything still claimed here never reported back; release it
        for item in in_flight.values():
            _release(item.transaction_id)
        if owns_client:
            client.close()

    logger.info(
        "sync run finished: synced=%d failed=%d skipped=%d",
        summary.synced, summary.failed, summary.skipped,
    )
    return summary


sync_pending = sync_all_pending


def recover_stale_syncing(*, older_than_seconds: Optional[float] = None) -> int:
    """
    Return rows stuck in 'syncing' (process died mid-push) to 'pending'.

    The interrupted attempt may have reached the remote side, so it is
    counted; the idempotency key makes the later retry safe.
    """
    if older_than_seconds is None:
        older_than_seconds = float(current_app.config.get("SYNC_TIMEOUT_SECONDS", 10)) * 3
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)

    stale = (
        db.session.query(OfflineTransaction)
        .filter(
            OfflineTransaction.status == SYNC_STATUS_SYNCING,
            (OfflineTransaction.last_sync_attempt.is_(None)) | (OfflineTransaction.last_sync_attempt <= cutoff),
        )
        .all()
    )
    for tx in stale:
        tx.status = SYNC_STATUS_PENDING
        tx.sync_attempt_count = (tx.sync_attempt_count or 0) + 1
        tx.sync_error = "sync attempt interrupted"
        tx.next_attempt_at = None
    if stale:
        commit_with_retry()
        logger.warning("recovered %d stale syncing transactions", len(stale))
    return len(stale)


class SyncWorker:
    """
    Background loop: backfill missing offline rows, recover stale ones, push
    pending ones, sleep, repeat.

    stop() sets the shared event, which also cancels not-yet-sent pushes of
    the run in progress.
    """

    def __init__(self, app, *, interval: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.app = app
        self.interval = float(interval if interval is not None else app.config.get("SYNC_INTERVAL_SECONDS", 60))
        self.transport = transport
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs: list[SyncSummary] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> SyncSummary:
        with self.app.app_context():
            try:
                backfilled = record_missing_offline_transactions()
                if backfilled:
                    logger.warning("backfilled %d missing offline transactions", len(backfilled))
                recover_stale_syncing()
                summary = sync_all_pending(transport=self.transport, cancel_event=self._stop)
            finally:
                db.session.remove()
        self.runs.append(summary)
        return summary

    def run(self, *, iterations: Optional[int] = None) -> None:
        count = 0
        while not self._stop.is_set():
            self.run_once()
            count += 1
            if iterations is not None and count >= iterations:
                break
            self._stop.wait(self.interval)

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="rxpos-sync-worker", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, *, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


