"""Tests for application wiring."""

import pytest

from hvinventory.core.models import HypervisorKind
from hvinventory.main import InventoryApplication
from hvinventory.services.worker_service import WorkerLane, worker_lane


@pytest.fixture
def app(orchestrator, notifications):
    application = InventoryApplication(
        orchestrator=orchestrator,
        notifications=notifications,
        lane=WorkerLane(name="test-app"),
    )
    yield application
    application.shutdown()


@pytest.mark.unit
def test_connect_runs_on_the_lane(app):
    outcome = app.connect("hv01", HypervisorKind.HYPER_V, use_current_user=True).result(timeout=10)

    assert outcome.success is True
    assert app.orchestrator.summary() == {"hosts": 1, "vms": 2}


@pytest.mark.unit
def test_subscribers_see_progress(app):
    updates = []
    app.subscribe(updates.append)

    app.connect("hv01", "HyperV", use_current_user=True).result(timeout=10)

    assert updates[-1].busy is False
    assert updates[-1].address == "hv01"


@pytest.mark.unit
def test_bulk_then_export(app, tmp_path):
    result = app.connect_many(["hv01", "", "10.0.0.9"], HypervisorKind.HYPER_V, True).result(timeout=10)

    assert result.succeeded == 1
    assert result.failed_addresses == ["10.0.0.9"]

    path = app.export(tmp_path).result(timeout=10)
    assert len(path.read_text(encoding="utf-8-sig").splitlines()) == 3


@pytest.mark.unit
def test_shutdown_clears_registry(app):
    app.connect("hv01", HypervisorKind.HYPER_V, use_current_user=True).result(timeout=10)

    app.shutdown()

    assert app.orchestrator.connected_hosts() == []
    assert app.orchestrator.vm_records() == []


@pytest.mark.unit
def test_default_lane_is_the_shared_worker(orchestrator, notifications):
    application = InventoryApplication(orchestrator=orchestrator, notifications=notifications)
    try:
        assert application.lane is worker_lane
    finally:
        application.shutdown()
