from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor, as_completed
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import threading
import time
from typing import Callable, Iterator, Mapping

from sqlmodel import Session

from storefleet.config import Settings
from storefleet.models import StoreORM, StoreRead
from storefleet.provisioner import ProvisionOutcome, StoreProvisioner, build_provisioners
from storefleet.services import audit, stores
from storefleet.services.error_messages import (
    PROVISION_TIMEOUT_MESSAGE,
    failure_cause,
    log_and_sanitize_error,
)
from storefleet.services.errors import UnknownStoreTypeError
from storefleet.services.store_constants import (
    AUDIT_DELETION_FAILED,
    AUDIT_PROVISION_COMPLETED,
    AUDIT_PROVISION_FAILED,
    AUDIT_PROVISION_TIMED_OUT,
    AUDIT_STORE_DELETED,
    AUDIT_UPGRADE_COMPLETED,
    AUDIT_UPGRADE_FAILED,
    EVENT_SEVERITY_ERROR,
    EVENT_SEVERITY_WARNING,
    OPERATION_DEPROVISION,
    OPERATION_PROVISION,
    OPERATION_UPGRADE,
    STORE_STATUS_DELETING,
    STORE_STATUS_FAILED,
    STORE_STATUS_PROVISIONING,
    STORE_STATUS_READY,
    STORE_STATUS_UPGRADING,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass
class TickResult:
    timed_out: int = 0
    provisioned: int = 0
    provision_failed: int = 0
    upgraded: int = 0
    upgrade_failed: int = 0
    deferred: int = 0
    deleted: int = 0
    delete_failed: int = 0
    discarded: int = 0
    error: str | None = None


class StoreReconciler:
    """Drive store records toward their requested status, one tick at a time.

    A tick fences stale provisioning work, runs the provision and upgrade
    passes with at most ``max_concurrent`` provisioner calls outstanding, then
    runs deletions one by one. Only one tick runs at a time per reconciler; a
    tick started while another is running is skipped. Provisioner calls run on
    worker threads; all ledger writes happen on the tick's own thread.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        provisioners: Mapping[str, StoreProvisioner],
        provision_timeout: timedelta,
        max_concurrent: int,
        executor: Executor | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._session_factory = session_factory
        self._provisioners = dict(provisioners)
        self._provision_timeout = provision_timeout
        self._max_concurrent = max_concurrent
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="provision"
        )
        self._tick_guard = threading.Lock()
        self._in_flight_lock = threading.Lock()
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        with self._in_flight_lock:
            return frozenset(self._in_flight)

    def tick(self) -> TickResult | None:
        """Run one reconcile pass. Returns ``None`` if a pass was already running."""
        if not self._tick_guard.acquire(blocking=False):
            logger.info("Skipping reconcile tick (already running)")
            return None
        result = TickResult()
        started = time.monotonic()
        try:
            logger.debug("Starting reconcile tick")
            with self._session_factory() as session:
                self._fence_stale_provisions(session, result)
                self._provision_pass(session, result)
                self._upgrade_pass(session, result)
                self._delete_pass(session, result)
        except Exception as exc:
            logger.exception("Reconcile tick failed")
            result.error = str(exc)
        finally:
            self._tick_guard.release()
        logger.info(
            "Reconcile tick finished in %.1fs: provisioned=%s failed=%s upgraded=%s deleted=%s "
            "timed_out=%s deferred=%s",
            time.monotonic() - started,
            result.provisioned,
            result.provision_failed + result.upgrade_failed,
            result.upgraded,
            result.deleted,
            result.timed_out,
            result.deferred,
        )
        return result

    def run_forever(self, *, interval: float, stop_event: threading.Event | None = None) -> None:
        """Fire a tick immediately and then every ``interval`` seconds until ``stop_event`` is set.

        Each tick runs on its own thread so a slow pass does not delay the
        timer; overlapping ticks are dropped by the tick guard.
        """
        stop_event = stop_event or threading.Event()
        logger.info(
            "Reconciler starting: interval=%ss max_concurrent=%s provision_timeout=%s",
            interval,
            self._max_concurrent,
            self._provision_timeout,
        )
        next_fire = time.monotonic()
        tick_threads: list[threading.Thread] = []
        while not stop_event.is_set():
            thread = threading.Thread(target=self.tick, name="reconcile-tick", daemon=True)
            thread.start()
            tick_threads = [t for t in tick_threads if t.is_alive()] + [thread]
            next_fire += interval
            stop_event.wait(max(0.0, next_fire - time.monotonic()))
        logger.info("Reconciler stopping; waiting for the running tick to finish")
        for thread in tick_threads:
            thread.join()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _fence_stale_provisions(self, session: Session, result: TickResult) -> None:
        cutoff = datetime.utcnow() - self._provision_timeout
        fenced = stores.bulk_timeout_fail(
            session,
            status=STORE_STATUS_PROVISIONING,
            older_than=cutoff,
            message=PROVISION_TIMEOUT_MESSAGE,
        )
        result.timed_out = len(fenced)
        for store_id in fenced:
            audit.record_audit(
                session,
                store_id=store_id,
                action=AUDIT_PROVISION_TIMED_OUT,
                details={"timeout_seconds": int(self._provision_timeout.total_seconds())},
            )
            audit.record_event(
                session,
                store_id=store_id,
                event_type="provision_timed_out",
                message=PROVISION_TIMEOUT_MESSAGE,
                severity=EVENT_SEVERITY_ERROR,
            )

    def _provision_pass(self, session: Session, result: TickResult) -> None:
        cutoff = datetime.utcnow() - self._provision_timeout
        pending = stores.fetch_by_status(session, status=STORE_STATUS_PROVISIONING, created_after=cutoff)
        if pending:
            logger.info("Found %s store(s) to provision", len(pending))
        for store, outcome in self._dispatch_bounded(pending, OPERATION_PROVISION, result):
            self._persist_provision(session, store, outcome, result)

    def _upgrade_pass(self, session: Session, result: TickResult) -> None:
        pending = stores.fetch_by_status(session, status=STORE_STATUS_UPGRADING)
        if pending:
            logger.info("Found %s store(s) to upgrade", len(pending))
        for store, outcome in self._dispatch_bounded(pending, OPERATION_UPGRADE, result):
            self._persist_upgrade(session, store, outcome, result)

    def _delete_pass(self, session: Session, result: TickResult) -> None:
        pending = stores.fetch_by_status(session, status=STORE_STATUS_DELETING)
        if pending:
            logger.info("Found %s store(s) to delete", len(pending))
        for record in pending:
            store = StoreRead.model_validate(record)
            outcome = self._invoke(OPERATION_DEPROVISION, store)
            self._persist_deprovision(session, store, outcome, result)

    def _dispatch_bounded(
        self,
        records: list[StoreORM],
        operation: str,
        result: TickResult,
    ) -> Iterator[tuple[StoreRead, ProvisionOutcome]]:
        """Launch up to the concurrency bound, then yield ``(store, outcome)`` as each completes.

        Records beyond the bound, or already in flight, are left for a later tick.
        """
        futures: dict[Future[ProvisionOutcome], StoreRead] = {}
        for record in records:
            with self._in_flight_lock:
                if len(self._in_flight) >= self._max_concurrent or record.id in self._in_flight:
                    logger.debug("Deferring %s of store %s to a later tick", operation, record.name)
                    result.deferred += 1
                    continue
                self._in_flight.add(record.id)
            store = StoreRead.model_validate(record)
            try:
                future = self._executor.submit(self._invoke, operation, store)
            except Exception:
                self._release(store.id)
                raise
            # Clears the slot even if this tick dies before collecting the outcome.
            future.add_done_callback(lambda _, store_id=store.id: self._release(store_id))
            futures[future] = store
            logger.info("Started %s of %s store %s", operation, store.type, store.name)

        for future in as_completed(futures):
            store = futures[future]
            self._release(store.id)
            try:
                outcome = future.result()
            except Exception as exc:
                outcome = ProvisionOutcome.failure(str(exc), cause=failure_cause(exc))
            yield store, outcome

    def _release(self, store_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(store_id)

    def _invoke(self, operation: str, store: StoreRead) -> ProvisionOutcome:
        try:
            provisioner = self._provisioners.get(store.type)
            if provisioner is None:
                raise UnknownStoreTypeError(store.type)
            if operation == OPERATION_PROVISION:
                return provisioner.provision(store)
            if operation == OPERATION_UPGRADE:
                return provisioner.upgrade(store)
            return provisioner.deprovision(store)
        except Exception as exc:
            logger.exception("%s raised for store %s", operation, store.name)
            return ProvisionOutcome.failure(str(exc), cause=failure_cause(exc))

    def _persist_provision(
        self,
        session: Session,
        store: StoreRead,
        outcome: ProvisionOutcome,
        result: TickResult,
    ) -> None:
        if outcome.ok:
            updated = stores.update_status(
                session,
                store_id=store.id,
                status=STORE_STATUS_READY,
                url=outcome.url,
                release_revision=outcome.release_revision,
                expected_status=STORE_STATUS_PROVISIONING,
            )
            if updated is None:
                result.discarded += 1
                return
            result.provisioned += 1
            logger.info("Store %s is now READY at %s", store.name, outcome.url)
            audit.record_audit(session, store_id=store.id, action=AUDIT_PROVISION_COMPLETED, details={"url": outcome.url})
            audit.record_event(
                session,
                store_id=store.id,
                event_type="provisioned",
                message=f"Store {store.name} is ready at {outcome.url}",
                details={"duration_seconds": _seconds_since(store.created_at)},
            )
            return

        sanitized = log_and_sanitize_error(store.name, OPERATION_PROVISION, outcome.error, cause=outcome.cause)
        updated = stores.update_status(
            session,
            store_id=store.id,
            status=STORE_STATUS_FAILED,
            error_message=sanitized,
            expected_status=STORE_STATUS_PROVISIONING,
        )
        if updated is None:
            result.discarded += 1
            return
        result.provision_failed += 1
        audit.record_audit(session, store_id=store.id, action=AUDIT_PROVISION_FAILED, details={"error": sanitized})
        audit.record_event(
            session,
            store_id=store.id,
            event_type="provision_failed",
            message=sanitized,
            severity=EVENT_SEVERITY_ERROR,
        )

    def _persist_upgrade(
        self,
        session: Session,
        store: StoreRead,
        outcome: ProvisionOutcome,
        result: TickResult,
    ) -> None:
        duration = _seconds_since(store.updated_at)
        if outcome.ok:
            updated = stores.update_status(
                session,
                store_id=store.id,
                status=STORE_STATUS_READY,
                version=outcome.version,
                release_revision=outcome.release_revision,
                expected_status=STORE_STATUS_UPGRADING,
            )
            if updated is None:
                result.discarded += 1
                return
            result.upgraded += 1
            logger.info(
                "Store %s upgraded to %s (revision %s) in %ss",
                store.name,
                outcome.version,
                outcome.release_revision,
                duration,
            )
            details = {
                "from_version": store.version,
                "to_version": outcome.version,
                "revision": outcome.release_revision,
                "duration_seconds": duration,
            }
            audit.record_audit(session, store_id=store.id, action=AUDIT_UPGRADE_COMPLETED, details=details)
            audit.record_event(
                session,
                store_id=store.id,
                event_type="upgrade_completed",
                message=f"Store {store.name} is now at v{outcome.version}",
                details=details,
            )
            return

        sanitized = log_and_sanitize_error(store.name, OPERATION_UPGRADE, outcome.error, cause=outcome.cause)
        updated = stores.update_status(
            session,
            store_id=store.id,
            status=STORE_STATUS_FAILED,
            error_message=sanitized,
            expected_status=STORE_STATUS_UPGRADING,
        )
        if updated is None:
            result.discarded += 1
            return
        result.upgrade_failed += 1
        audit.record_audit(
            session,
            store_id=store.id,
            action=AUDIT_UPGRADE_FAILED,
            details={"error": sanitized, "duration_seconds": duration},
        )
        audit.record_event(
            session,
            store_id=store.id,
            event_type="upgrade_failed",
            message=sanitized,
            severity=EVENT_SEVERITY_ERROR,
        )

    def _persist_deprovision(
        self,
        session: Session,
        store: StoreRead,
        outcome: ProvisionOutcome,
        result: TickResult,
    ) -> None:
        if outcome.ok:
            stores.delete_store(session, store_id=store.id)
            result.deleted += 1
            logger.info("Store %s deleted successfully", store.name)
            audit.record_audit(session, store_id=store.id, action=AUDIT_STORE_DELETED, details={"name": store.name})
            audit.record_event(
                session,
                store_id=store.id,
                event_type="deleted",
                message=f"Store {store.name} deleted",
            )
            return

        sanitized = log_and_sanitize_error(store.name, OPERATION_DEPROVISION, outcome.error, cause=outcome.cause)
        stores.update_status(
            session,
            store_id=store.id,
            status=STORE_STATUS_DELETING,
            error_message=sanitized,
            expected_status=STORE_STATUS_DELETING,
        )
        result.delete_failed += 1
        audit.record_audit(session, store_id=store.id, action=AUDIT_DELETION_FAILED, details={"error": sanitized})
        audit.record_event(
            session,
            store_id=store.id,
            event_type="deletion_failed",
            message=f"{sanitized} Deletion will be retried.",
            severity=EVENT_SEVERITY_WARNING,
        )


def _seconds_since(moment: datetime) -> int:
    return max(0, int((datetime.utcnow() - moment).total_seconds()))


def build_reconciler(settings: Settings, *, session_factory: SessionFactory) -> StoreReconciler:
    return StoreReconciler(
        session_factory=session_factory,
        provisioners=build_provisioners(settings),
        provision_timeout=timedelta(seconds=settings.provision_timeout),
        max_concurrent=settings.max_concurrent_provisions,
    )
