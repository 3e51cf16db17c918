"""
Sync Orchestrator

Runs the fetch -> translate -> upsert pipeline for each source and entity,
decides when a source is due, and records every run.

Customers and orders of one source sync concurrently, and so do the two
sources. This is the first layer that catches failures: each
source/entity pair succeeds or fails on its own, and the combined report
tells "nothing synced" apart from "one side degraded".
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.connectors import build_clients
from app.connectors.base import ENTITIES, PaginatedSourceClient
from app.models.base import SessionLocal
from app.models.sync import SourceSyncState, SyncRun
from app.models.erp import ErpCustomer
from app.services.bulk_fetcher import fetch_all, fetch_in_batches
from app.services.record_mapping import TARGETS, attach_sale_details, extract_guest_customers, to_cached_rows
from app.services.upsert_writer import upsert_rows
from app.utils.logger import log


class Frequency(str, Enum):
    FIFTEEN_MINUTES = "15min"
    HOURLY = "1hour"
    SIX_HOURS = "6hours"
    DAILY = "daily"
    MANUAL = "manual"


FREQUENCY_INTERVALS = {
    Frequency.FIFTEEN_MINUTES: timedelta(minutes=15),
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.SIX_HOURS: timedelta(hours=6),
    Frequency.DAILY: timedelta(days=1),
}


class SyncMode(str, Enum):
    FULL = "full"  # Manual / administrative runs, no date filter
    INCREMENTAL = "incremental"  # Scheduled runs, trailing window on orders


class SyncVerdict(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"

    @property
    def http_status(self) -> int:
        return {"success": 200, "partial": 207, "all_failed": 500}[self.value]


@dataclass
class SourceState:
    """Schedule state for one source, loaded before a run and passed through it"""
    source: str
    frequency: Frequency = Frequency.HOURLY
    is_enabled: bool = True
    last_sync_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    orders_cached: int = 0
    customers_cached: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "sync_frequency": self.frequency.value,
            "is_enabled": self.is_enabled,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "orders_cached": self.orders_cached,
            "customers_cached": self.customers_cached,
        }


def parse_frequency(value: str) -> Frequency:
    try:
        return Frequency(value)
    except ValueError:
        allowed = ", ".join(f.value for f in Frequency)
        raise ValueError(f"Unknown sync frequency '{value}' (expected one of: {allowed})")


def is_sync_due(state: SourceState, now: Optional[datetime] = None) -> bool:
    """
    Whether a scheduled run should sync this source now

    Manual and disabled sources are never due; a source that has never
    synced is always due.
    """
    if not state.is_enabled or state.frequency == Frequency.MANUAL:
        return False
    if state.last_sync_at is None:
        return True
    now = now or datetime.utcnow()
    return now - state.last_sync_at >= FREQUENCY_INTERVALS[state.frequency]


@dataclass
class EntitySyncResult:
    source: str
    entity: str
    mode: str
    success: bool = False
    records_synced: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "source": self.source,
            "entity": self.entity,
            "mode": self.mode,
            "success": self.success,
            "records_synced": self.records_synced,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.truncated:
            data["truncated"] = True
        return data


def classify_results(results: Sequence[EntitySyncResult]) -> SyncVerdict:
    succeeded = sum(1 for r in results if r.success)
    if succeeded == len(results):
        return SyncVerdict.SUCCESS
    if succeeded == 0:
        return SyncVerdict.ALL_FAILED
    return SyncVerdict.PARTIAL


@dataclass
class SourceSyncResult:
    source: str
    mode: str
    results: List[EntitySyncResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def verdict(self) -> SyncVerdict:
        return classify_results(self.results)

    @property
    def status(self) -> str:
        # Stored on SourceSyncState.last_status
        return {"success": "success", "partial": "partial", "all_failed": "failed"}[self.verdict.value]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "mode": self.mode,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class SyncReport:
    """Combined outcome of one orchestrator invocation"""
    mode: str
    sources: List[SourceSyncResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def results(self) -> List[EntitySyncResult]:
        return [r for s in self.sources for r in s.results]

    @property
    def verdict(self) -> SyncVerdict:
        return classify_results(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def errors(self) -> Dict[str, str]:
        return {f"{r.source}/{r.entity}": r.error for r in self.results if not r.success}

    def to_dict(self) -> Dict[str, Any]:
        verdict = self.verdict
        return {
            "verdict": verdict.value,
            "success": verdict == SyncVerdict.SUCCESS,
            "partial": verdict == SyncVerdict.PARTIAL,
            "mode": self.mode,
            "succeeded": self.succeeded,
            "total": self.total,
            "records_synced": sum(r.records_synced for r in self.results),
            "duration_ms": self.duration_ms,
            "results": [r.to_dict() for r in self.results],
            "sources": {s.source: s.to_dict() for s in self.sources},
            "errors": self.errors,
        }


@dataclass
class DueSyncOutcome:
    """What a scheduled check ran, what it skipped and why"""
    ran: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    report: Optional[SyncReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ran": self.ran,
            "skipped": self.skipped,
            "report": self.report.to_dict() if self.report else None,
        }


class SyncOrchestrator:
    """
    Coordinates source syncs

    Usage:
        orchestrator = SyncOrchestrator()
        report = await orchestrator.sync_all(SyncMode.FULL)
        if report.verdict != SyncVerdict.SUCCESS:
            log.warning(report.errors)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clients: Optional[Dict[str, PaginatedSourceClient]] = None,
        settings: Optional[Settings] = None,
        now_fn: Callable[[], datetime] = datetime.utcnow
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.clients = clients if clients is not None else build_clients(self.settings)
        self._now = now_fn

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _check_source(self, source: str) -> None:
        if source not in self.clients:
            raise ValueError(f"Unknown source '{source}' (expected one of: {', '.join(self.clients)})")

    def _default_frequency(self) -> Frequency:
        return parse_frequency(self.settings.sync_default_frequency)

    def _state_from_row(self, source: str, row: Optional[SourceSyncState]) -> SourceState:
        if row is None:
            return SourceState(source=source, frequency=self._default_frequency())
        try:
            frequency = Frequency(row.sync_frequency)
        except ValueError:
            log.warning(f"{source}: stored frequency '{row.sync_frequency}' is invalid, using default")
            frequency = self._default_frequency()
        return SourceState(
            source=source,
            frequency=frequency,
            is_enabled=bool(row.is_enabled),
            last_sync_at=row.last_sync_at,
            last_attempt_at=row.last_attempt_at,
            last_status=row.last_status,
            last_error=row.last_error,
            orders_cached=row.orders_cached or 0,
            customers_cached=row.customers_cached or 0,
        )

    def load_state(self, source: str) -> SourceState:
        self._check_source(source)
        db = self.session_factory()
        try:
            row = db.query(SourceSyncState).filter(SourceSyncState.source == source).first()
            return self._state_from_row(source, row)
        finally:
            db.close()

    def update_source_settings(
        self,
        source: str,
        frequency: Optional[str] = None,
        is_enabled: Optional[bool] = None
    ) -> SourceState:
        """Change how often a source syncs, or switch it off"""
        self._check_source(source)
        parsed = parse_frequency(frequency) if frequency is not None else None

        db = self.session_factory()
        try:
            row = self._get_or_create_state_row(db, source)
            if parsed is not None:
                row.sync_frequency = parsed.value
            if is_enabled is not None:
                row.is_enabled = is_enabled
            db.commit()
            db.refresh(row)
            log.info(f"{source} sync settings updated: frequency={row.sync_frequency}, enabled={row.is_enabled}")
            return self._state_from_row(source, row)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _get_or_create_state_row(self, db: Session, source: str) -> SourceSyncState:
        row = db.query(SourceSyncState).filter(SourceSyncState.source == source).first()
        if row is None:
            row = SourceSyncState(
                source=source,
                sync_frequency=self._default_frequency().value,
                is_enabled=True,
                orders_cached=0,
                customers_cached=0,
            )
            db.add(row)
        return row

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    def _start_run(self, source: str, entity: str, mode: SyncMode) -> int:
        db = self.session_factory()
        try:
            run = SyncRun(
                source=source,
                entity=entity,
                mode=mode.value,
                status="started",
                records_synced=0,
                started_at=self._now(),
            )
            db.add(run)
            db.commit()
            return run.id
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _complete_source(
        self,
        state: SourceState,
        outcomes: List[Tuple[EntitySyncResult, Optional[int]]],
        completed_at: datetime,
        verdict_status: str
    ) -> SourceState:
        """
        Finalize the entity runs and the source state in one transaction

        last_sync_at only advances when at least one entity succeeded; cached
        counts are refreshed only for entities that succeeded.
        """
        db = self.session_factory()
        try:
            for result, run_id in outcomes:
                if run_id is None:
                    continue
                run = db.get(SyncRun, run_id)
                if run is None:
                    continue
                run.status = "completed" if result.success else "failed"
                run.records_synced = result.records_synced
                run.duration_ms = result.duration_ms
                run.error_message = result.error
                run.completed_at = completed_at

            row = self._get_or_create_state_row(db, state.source)
            row.last_attempt_at = completed_at
            row.last_status = verdict_status
            errors = [f"{r.entity}: {r.error}" for r, _ in outcomes if not r.success]
            row.last_error = "; ".join(errors) if errors else None

            if any(r.success for r, _ in outcomes):
                row.last_sync_at = completed_at
            for result, _ in outcomes:
                if not result.success:
                    continue
                model, _ = TARGETS[(state.source, result.entity)]
                cached = db.query(model).count()
                if result.entity == "orders":
                    row.orders_cached = cached
                else:
                    row.customers_cached = cached

            db.commit()
            db.refresh(row)
            return self._state_from_row(state.source, row)
        except SQLAlchemyError as e:
            db.rollback()
            # Bookkeeping must not turn a finished sync into a failed one
            log.error(f"Failed to record sync completion for {state.source}: {e}")
            return state
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _fetch(self, client: PaginatedSourceClient, entity: str, modified_since: Optional[datetime]):
        return await fetch_all(
            client,
            entity,
            modified_since=modified_since,
            max_pages=self.settings.sync_max_pages,
            concurrency=self.settings.sync_concurrency,
            batch_delay=self.settings.sync_batch_delay_seconds,
        )

    async def _collect_rows(
        self,
        source: str,
        entity: str,
        mode: SyncMode,
        now: datetime
    ) -> Tuple[List[Dict[str, Any]], bool]:
        client = self.clients[source]

        # Customers have no reliable modified-since signal, so they always sync in full
        modified_since = None
        if mode == SyncMode.INCREMENTAL and entity == "orders":
            modified_since = now - timedelta(days=self.settings.sync_incremental_window_days)
            log.info(f"{source} orders: incremental sync since {modified_since.date().isoformat()}")

        fetched = await self._fetch(client, entity, modified_since)
        rows = to_cached_rows(fetched.records)

        if source == "storefront" and entity == "customers":
            orders = await self._fetch(client, "orders", None)
            registered = [r["email"] for r in rows if r.get("email")]
            guests = extract_guest_customers(orders.records, registered)
            log.info(f"storefront customers: {len(rows)} registered + {len(guests)} guests")
            rows.extend(guests)
            return rows, fetched.truncated or orders.truncated

        if source == "erp" and entity == "orders" and rows:
            await self._complete_erp_sales(client, rows)

        return rows, fetched.truncated

    async def _complete_erp_sales(self, client, rows: List[Dict[str, Any]]) -> None:
        """Fill ERP order rows with sale details and their customers' payment terms"""
        details = {}
        if self.settings.erp_fetch_sale_details:
            sale_ids = list(dict.fromkeys(r["erp_id"] for r in rows))
            log.info(f"erp orders: fetching details for {len(sale_ids)} sales")
            details = await fetch_in_batches(
                sale_ids,
                client.fetch_sale,
                concurrency=self.settings.erp_detail_concurrency,
                batch_delay=self.settings.erp_detail_batch_delay_seconds,
                label="erp sale details",
            )

        # Terms come from the customers already cached, not from this run
        customer_ids = {r["erp_customer_id"] for r in rows if r.get("erp_customer_id")}
        db = self.session_factory()
        try:
            payment_terms = dict(
                db.query(ErpCustomer.erp_id, ErpCustomer.payment_term)
                .filter(ErpCustomer.erp_id.in_(customer_ids), ErpCustomer.payment_term.isnot(None))
                .all()
            )
        finally:
            db.close()

        attach_sale_details(rows, details, payment_terms)

    async def _sync_entity(
        self,
        source: str,
        entity: str,
        mode: SyncMode,
        now: datetime
    ) -> Tuple[EntitySyncResult, Optional[int]]:
        """Sync one entity; never raises, failures land in the result"""
        result = EntitySyncResult(source=source, entity=entity, mode=mode.value)
        start = time.time()
        run_id = None
        try:
            run_id = self._start_run(source, entity, mode)
            log.info(f"Starting {source} {entity} sync ({mode.value})")

            rows, truncated = await self._collect_rows(source, entity, mode, now)
            model, conflict_key = TARGETS[(source, entity)]
            written = await upsert_rows(
                self.session_factory,
                model,
                rows,
                conflict_key,
                batch_size=self.settings.upsert_batch_size,
            )

            result.success = True
            result.records_synced = written
            result.truncated = truncated
        except Exception as e:
            result.success = False
            result.error = str(e) or type(e).__name__
            log.error(f"{source} {entity} sync failed: {result.error}")
        finally:
            result.duration_ms = int((time.time() - start) * 1000)

        if result.success:
            log.info(f"{source} {entity} sync complete: {result.records_synced} records in {result.duration_ms / 1000:.1f}s")
        return result, run_id

    async def sync_source(
        self,
        source: str,
        mode: SyncMode = SyncMode.FULL,
        entities: Optional[Sequence[str]] = None,
        state: Optional[SourceState] = None
    ) -> SourceSyncResult:
        """
        Sync customers and orders of one source concurrently

        Both entities finish (either way) before the source state is written.
        """
        self._check_source(source)
        entities = list(entities or ENTITIES)
        for entity in entities:
            if entity not in ENTITIES:
                raise ValueError(f"Unknown entity '{entity}' (expected one of: {', '.join(ENTITIES)})")

        state = state or self.load_state(source)
        started_at = self._now()

        outcomes = await asyncio.gather(*[
            self._sync_entity(source, entity, mode, started_at)
            for entity in entities
        ])

        result = SourceSyncResult(
            source=source,
            mode=mode.value,
            results=[r for r, _ in outcomes],
            started_at=started_at,
            completed_at=self._now(),
        )
        self._complete_source(state, list(outcomes), result.completed_at, result.status)

        if result.verdict == SyncVerdict.SUCCESS:
            log.info(f"{source} sync completed")
        elif result.verdict == SyncVerdict.PARTIAL:
            log.warning(f"{source} sync partially failed: {[r.entity for r in result.results if not r.success]}")
        else:
            log.error(f"{source} sync failed for every entity")
        return result

    async def sync_all(
        self,
        mode: SyncMode = SyncMode.FULL,
        sources: Optional[Sequence[str]] = None,
        entities: Optional[Sequence[str]] = None
    ) -> SyncReport:
        """Sync every source concurrently and combine the outcomes"""
        sources = list(sources or self.clients)
        for source in sources:
            self._check_source(source)

        start = time.time()
        source_results = await asyncio.gather(*[
            self.sync_source(source, mode, entities)
            for source in sources
        ])
        report = SyncReport(
            mode=mode.value,
            sources=list(source_results),
            duration_ms=int((time.time() - start) * 1000),
        )
        self._log_report(report)
        return report

    async def run_due_syncs(self, now: Optional[datetime] = None) -> DueSyncOutcome:
        """Incremental sync of every source whose frequency says it is due"""
        now = now or self._now()
        outcome = DueSyncOutcome()
        due: List[SourceState] = []

        for source, client in self.clients.items():
            state = self.load_state(source)
            if not client.is_configured():
                outcome.skipped[source] = "not configured"
            elif not state.is_enabled:
                outcome.skipped[source] = "disabled"
            elif state.frequency == Frequency.MANUAL:
                outcome.skipped[source] = "manual"
            elif not is_sync_due(state, now):
                next_at = state.last_sync_at + FREQUENCY_INTERVALS[state.frequency]
                outcome.skipped[source] = f"not due until {next_at.isoformat()}"
            else:
                due.append(state)

        if not due:
            log.info(f"No sources due for sync ({outcome.skipped})")
            return outcome

        start = time.time()
        source_results = await asyncio.gather(*[
            self.sync_source(state.source, SyncMode.INCREMENTAL, state=state)
            for state in due
        ])
        outcome.ran = [state.source for state in due]
        outcome.report = SyncReport(
            mode=SyncMode.INCREMENTAL.value,
            sources=list(source_results),
            duration_ms=int((time.time() - start) * 1000),
        )
        self._log_report(outcome.report)
        return outcome

    def _log_report(self, report: SyncReport) -> None:
        verdict = report.verdict
        if verdict == SyncVerdict.SUCCESS:
            log.info(f"Sync finished: {report.succeeded}/{report.total} succeeded in {report.duration_ms / 1000:.1f}s")
        elif verdict == SyncVerdict.PARTIAL:
            log.warning(f"Sync partially failed: {report.succeeded}/{report.total} succeeded, errors={report.errors}")
        else:
            log.error(f"Sync failed: nothing synced, errors={report.errors}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Freshness per source and entity, for display"""
        status: Dict[str, Any] = {}
        db = self.session_factory()
        try:
            for source, client in self.clients.items():
                row = db.query(SourceSyncState).filter(SourceSyncState.source == source).first()
                state = self._state_from_row(source, row)
                entities = {}
                for entity in ENTITIES:
                    last_run = (
                        db.query(SyncRun)
                        .filter(SyncRun.source == source, SyncRun.entity == entity)
                        .order_by(desc(SyncRun.started_at), desc(SyncRun.id))
                        .first()
                    )
                    model, _ = TARGETS[(source, entity)]
                    entities[entity] = {
                        "last_run_at": last_run.started_at.isoformat() if last_run else None,
                        "last_run_status": last_run.status if last_run else None,
                        "last_records_synced": last_run.records_synced if last_run else None,
                        "last_error": last_run.error_message if last_run else None,
                        "cached_rows": db.query(model).count(),
                    }
                status[source] = {
                    **state.to_dict(),
                    "configured": client.is_configured(),
                    "due": is_sync_due(state, self._now()),
                    "entities": entities,
                }
            return status
        finally:
            db.close()

    def list_runs(
        self,
        source: Optional[str] = None,
        entity: Optional[str] = None,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Most recent sync runs first"""
        db = self.session_factory()
        try:
            query = db.query(SyncRun)
            if source:
                query = query.filter(SyncRun.source == source)
            if entity:
                query = query.filter(SyncRun.entity == entity)
            runs = query.order_by(desc(SyncRun.started_at), desc(SyncRun.id)).limit(limit).all()
            return [
                {
                    "id": run.id,
                    "source": run.source,
                    "entity": run.entity,
                    "mode": run.mode,
                    "status": run.status,
                    "records_synced": run.records_synced,
                    "duration_ms": run.duration_ms,
                    "error_message": run.error_message,
                    "started_at": run.started_at.isoformat() if run.started_at else None,
                    "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                }
                for run in runs
            ]
        finally:
            db.close()
