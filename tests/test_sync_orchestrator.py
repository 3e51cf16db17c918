"""
Tests for the sync orchestrator.

Guards:
  - A source failing on its own yields a partial verdict, not a total failure
  - Error text from the failing source is preserved in the report
  - Repeat syncs never duplicate cached rows
  - Incremental mode filters orders only
  - ERP orders are completed from their sale details; a failed detail fails the orders entity
  - last_sync_at only advances when something succeeded
  - Scheduled checks skip sources that are unconfigured, disabled, manual or not due
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from app.connectors.erp import ErpClient
from app.models.erp import ErpCustomer, ErpOrder
from app.models.storefront import StorefrontCustomer, StorefrontOrder
from app.models.sync import SyncRun
from app.services.sync_orchestrator import (
    Frequency,
    SourceState,
    SyncMode,
    SyncOrchestrator,
    SyncVerdict,
    is_sync_due,
    parse_frequency,
)

NOW = datetime(2024, 6, 1, 12, 0)


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def erp_api(fakes):
    return fakes.ErpApi(
        sales=[fakes.sale(i, customer_id="C1" if i % 2 else "C2") for i in range(1, 8)],
        customers=[
            fakes.erp_customer("C1", name="Acme", email="buyer@acme.test"),
            fakes.erp_customer("C2", name="Globex", phone="02 9000 0000"),
        ],
    )


@pytest.fixture
def storefront_api(fakes):
    return fakes.StorefrontApi(
        orders=[
            fakes.order(1, customer_id=10, email="sam@example.com"),
            fakes.order(2, email="guest@example.com"),
            fakes.order(3, email="guest@example.com"),
        ],
        customers=[fakes.customer(10, "sam@example.com", orders_count=1, total_spent="59.95")],
    )


def _orchestrator(session_factory, sync_settings, erp, storefront, now=NOW):
    return SyncOrchestrator(
        session_factory=session_factory,
        clients={"erp": erp, "storefront": storefront},
        settings=sync_settings,
        now_fn=lambda: now,
    )


def _counts(db):
    return {
        "erp_customers": db.query(ErpCustomer).count(),
        "erp_orders": db.query(ErpOrder).count(),
        "storefront_customers": db.query(StorefrontCustomer).count(),
        "storefront_orders": db.query(StorefrontOrder).count(),
    }


# ────────────────────────────────────────────
# SCHEDULING
# ────────────────────────────────────────────


class TestIsSyncDue:

    def test_never_synced_is_due(self):
        assert is_sync_due(SourceState("erp", Frequency.DAILY), NOW)

    def test_manual_and_disabled_never_due(self):
        assert not is_sync_due(SourceState("erp", Frequency.MANUAL), NOW)
        assert not is_sync_due(SourceState("erp", Frequency.HOURLY, is_enabled=False), NOW)

    @pytest.mark.parametrize("frequency,elapsed,expected", [
        (Frequency.FIFTEEN_MINUTES, timedelta(minutes=14), False),
        (Frequency.FIFTEEN_MINUTES, timedelta(minutes=15), True),
        (Frequency.HOURLY, timedelta(minutes=59), False),
        (Frequency.SIX_HOURS, timedelta(hours=6, seconds=1), True),
        (Frequency.DAILY, timedelta(hours=23), False),
        (Frequency.DAILY, timedelta(days=2), True),
    ])
    def test_interval_elapsed(self, frequency, elapsed, expected):
        state = SourceState("erp", frequency, last_sync_at=NOW - elapsed)
        assert is_sync_due(state, NOW) is expected

    def test_parse_frequency_rejects_unknown(self):
        assert parse_frequency("6hours") == Frequency.SIX_HOURS
        with pytest.raises(ValueError):
            parse_frequency("weekly")


# ────────────────────────────────────────────
# SYNC RUNS
# ────────────────────────────────────────────


def test_full_sync_caches_both_sources(session_factory, db, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())

    report = _run(orchestrator.sync_all(SyncMode.FULL))

    assert report.verdict == SyncVerdict.SUCCESS
    assert (report.succeeded, report.total) == (4, 4)
    assert _counts(db) == {
        "erp_customers": 2,
        "erp_orders": 7,
        "storefront_customers": 2,  # one registered + one guest
        "storefront_orders": 3,
    }
    guest = db.query(StorefrontCustomer).filter_by(is_guest=True).one()
    assert guest.email == "guest@example.com"
    assert guest.orders_count == 2


def test_storefront_outage_is_a_partial_failure(session_factory, db, sync_settings, erp_api, fakes):
    broken = fakes.StorefrontApi(raise_timeout=True)
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), broken.client())

    report = _run(orchestrator.sync_all(SyncMode.FULL))

    assert report.verdict == SyncVerdict.PARTIAL
    assert report.verdict.http_status == 207
    assert (report.succeeded, report.total) == (2, 4)
    assert set(report.errors) == {"storefront/customers", "storefront/orders"}
    assert "timed out" in report.errors["storefront/orders"]
    assert _counts(db)["erp_orders"] == 7

    data = report.to_dict()
    assert data["partial"] is True
    assert data["sources"]["storefront"]["status"] == "failed"
    assert data["sources"]["erp"]["status"] == "success"


def test_everything_failing_is_all_failed(session_factory, sync_settings, fakes):
    orchestrator = _orchestrator(
        session_factory, sync_settings,
        fakes.ErpApi(status_code=503).client(),
        fakes.StorefrontApi(raise_timeout=True).client(),
    )

    report = _run(orchestrator.sync_all(SyncMode.FULL))

    assert report.verdict == SyncVerdict.ALL_FAILED
    assert report.verdict.http_status == 500
    assert report.succeeded == 0


def test_later_page_failure_fails_only_that_entity(session_factory, db, sync_settings, fakes):
    erp = fakes.ErpApi(
        sales=[fakes.sale(i) for i in range(1, 601)],
        customers=[fakes.erp_customer("C1")],
        fail_on_page=3,
    )
    orchestrator = _orchestrator(session_factory, sync_settings, erp.client(), fakes.StorefrontApi().client())

    result = _run(orchestrator.sync_source("erp", SyncMode.FULL, entities=["orders"]))

    assert result.status == "failed"
    assert "API error 500: page 3 exploded" in result.results[0].error
    assert db.query(ErpOrder).count() == 0


def test_repeat_sync_is_idempotent(session_factory, db, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())

    _run(orchestrator.sync_all(SyncMode.FULL))
    first = _counts(db)
    _run(orchestrator.sync_all(SyncMode.FULL))

    assert _counts(db) == first


def test_all_pages_requested(session_factory, db, sync_settings, fakes):
    erp = fakes.ErpApi(sales=[fakes.sale(i) for i in range(1, 601)])
    orchestrator = _orchestrator(session_factory, sync_settings, erp.client(page_size=250), fakes.StorefrontApi().client())

    _run(orchestrator.sync_source("erp", SyncMode.FULL, entities=["orders"]))

    assert erp.pages_requested("/saleList") == [1, 2, 3]
    assert db.query(ErpOrder).count() == 600


def test_erp_orders_carry_sale_details(session_factory, db, sync_settings, erp_api, fakes):
    erp_api.customers[0]["PaymentTerm"] = "30 days"
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), fakes.StorefrontApi().client())

    _run(orchestrator.sync_source("erp", SyncMode.FULL, entities=["customers"]))
    _run(orchestrator.sync_source("erp", SyncMode.FULL, entities=["orders"]))

    detail_requests = [r for r in erp_api.requests if r.url.path.endswith("/sale")]
    assert sorted(r.url.params["ID"] for r in detail_requests) == sorted(f"sale-{i}" for i in range(1, 8))

    acme_sale = db.query(ErpOrder).filter_by(erp_id="sale-1").one()
    assert acme_sale.customer_email == "buyer@acme.test"
    assert acme_sale.payment_term == "30 days"
    assert acme_sale.line_items[0]["name"] == "Widget Pallet"
    assert acme_sale.invoice_status == "PAID"

    globex_sale = db.query(ErpOrder).filter_by(erp_id="sale-2").one()
    assert globex_sale.customer_email is None
    assert globex_sale.payment_term is None


def test_sale_detail_failure_fails_erp_orders(session_factory, db, sync_settings, erp_api, fakes):
    erp_api.fail_sale = "sale-4"
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), fakes.StorefrontApi().client())

    result = _run(orchestrator.sync_source("erp", SyncMode.FULL))

    by_entity = {r.entity: r for r in result.results}
    assert by_entity["customers"].success
    assert not by_entity["orders"].success
    assert "sale sale-4 exploded" in by_entity["orders"].error
    assert db.query(ErpOrder).count() == 0


def test_sale_details_can_be_turned_off(session_factory, db, sync_settings, erp_api, fakes):
    settings = sync_settings.model_copy(update={"erp_fetch_sale_details": False})
    orchestrator = _orchestrator(session_factory, settings, erp_api.client(), fakes.StorefrontApi().client())

    _run(orchestrator.sync_source("erp", SyncMode.FULL, entities=["orders"]))

    assert not [r for r in erp_api.requests if r.url.path.endswith("/sale")]
    assert db.query(ErpOrder).count() == 7
    assert db.query(ErpOrder).first().line_items == []


def test_incremental_filters_orders_only(session_factory, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())

    _run(orchestrator.sync_all(SyncMode.INCREMENTAL))

    since = (NOW - timedelta(days=sync_settings.sync_incremental_window_days)).date().isoformat()
    sale_requests = [r for r in erp_api.requests if r.url.path.endswith("/saleList")]
    customer_requests = [r for r in erp_api.requests if r.url.path.endswith("/customer")]
    assert all(r.url.params["ModifiedSince"] == since for r in sale_requests)
    assert all("ModifiedSince" not in r.url.params for r in customer_requests)

    sf_customer_requests = [r for r in storefront_api.requests if r.url.path.endswith("/customers")]
    assert all("modified_after" not in r.url.params for r in sf_customer_requests)


# ────────────────────────────────────────────
# STATE AND RUN RECORDS
# ────────────────────────────────────────────


def test_state_advances_on_success(session_factory, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())

    _run(orchestrator.sync_all(SyncMode.FULL))
    state = orchestrator.load_state("erp")

    assert state.last_sync_at == NOW
    assert state.last_status == "success"
    assert state.last_error is None
    assert state.orders_cached == 7
    assert state.customers_cached == 2


def test_failed_source_keeps_last_sync_at(session_factory, sync_settings, erp_api, storefront_api, fakes):
    good = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())
    _run(good.sync_all(SyncMode.FULL))

    later = NOW + timedelta(hours=2)
    broken = _orchestrator(
        session_factory, sync_settings, erp_api.client(),
        fakes.StorefrontApi(raise_timeout=True).client(), now=later,
    )
    _run(broken.sync_all(SyncMode.FULL))

    storefront = broken.load_state("storefront")
    assert storefront.last_sync_at == NOW
    assert storefront.last_attempt_at == later
    assert storefront.last_status == "failed"
    assert "timed out" in storefront.last_error
    assert storefront.orders_cached == 3

    assert broken.load_state("erp").last_sync_at == later


def test_runs_are_recorded(session_factory, db, sync_settings, erp_api, fakes):
    orchestrator = _orchestrator(
        session_factory, sync_settings, erp_api.client(), fakes.StorefrontApi(raise_timeout=True).client()
    )

    _run(orchestrator.sync_all(SyncMode.FULL))

    runs = orchestrator.list_runs()
    assert len(runs) == 4
    by_pair = {(r["source"], r["entity"]): r for r in runs}
    assert by_pair[("erp", "orders")]["status"] == "completed"
    assert by_pair[("erp", "orders")]["records_synced"] == 7
    assert by_pair[("storefront", "orders")]["status"] == "failed"
    assert "timed out" in by_pair[("storefront", "orders")]["error_message"]
    assert db.query(SyncRun).filter_by(status="started").count() == 0

    assert len(orchestrator.list_runs(source="erp", entity="customers")) == 1


def test_status_reports_freshness(session_factory, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())
    _run(orchestrator.sync_all(SyncMode.FULL))

    status = orchestrator.get_status()

    assert status["erp"]["configured"] is True
    assert status["erp"]["due"] is False
    assert status["erp"]["entities"]["orders"]["cached_rows"] == 7
    assert status["storefront"]["entities"]["customers"]["last_run_status"] == "completed"


def test_update_source_settings(session_factory, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())

    state = orchestrator.update_source_settings("erp", frequency="daily", is_enabled=False)

    assert state.frequency == Frequency.DAILY
    assert state.is_enabled is False
    assert orchestrator.load_state("erp").frequency == Frequency.DAILY
    with pytest.raises(ValueError):
        orchestrator.update_source_settings("erp", frequency="hourly-ish")
    with pytest.raises(ValueError):
        orchestrator.update_source_settings("crm", frequency="daily")


# ────────────────────────────────────────────
# DUE CHECKS
# ────────────────────────────────────────────


def test_run_due_syncs_skips_unconfigured(session_factory, sync_settings, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, ErpClient("", ""), storefront_api.client())

    outcome = _run(orchestrator.run_due_syncs(NOW))

    assert outcome.ran == ["storefront"]
    assert outcome.skipped == {"erp": "not configured"}
    assert outcome.report.verdict == SyncVerdict.SUCCESS


def test_run_due_syncs_respects_frequency(session_factory, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())
    orchestrator.update_source_settings("storefront", frequency="manual")
    _run(orchestrator.sync_source("erp", SyncMode.FULL))

    outcome = _run(orchestrator.run_due_syncs(NOW + timedelta(minutes=30)))

    assert outcome.ran == []
    assert outcome.skipped["storefront"] == "manual"
    assert outcome.skipped["erp"].startswith("not due until")
    assert outcome.report is None

    outcome = _run(orchestrator.run_due_syncs(NOW + timedelta(hours=1)))
    assert outcome.ran == ["erp"]


def test_run_due_syncs_skips_disabled(session_factory, sync_settings, erp_api, storefront_api):
    orchestrator = _orchestrator(session_factory, sync_settings, erp_api.client(), storefront_api.client())
    orchestrator.update_source_settings("erp", is_enabled=False)

    outcome = _run(orchestrator.run_due_syncs(NOW))

    assert outcome.skipped["erp"] == "disabled"
    assert outcome.ran == ["storefront"]
