"""Tests for collection cycles."""
import threading
import time

import pytest
from prometheus_client.parser import text_string_to_metric_families

from octoprint_exporter.client import FetchResult, ResourceKind, UpstreamUnavailable
from octoprint_exporter.collector import (
    Collector, JOB_ELAPSED, JOB_LEFT, JOB_PERCENT, METRIC_SPECS,
    TEMP_ACTUAL, TEMP_OFFSET, TEMP_TARGET,
)
from octoprint_exporter.registry import MetricRegistry
from octoprint_exporter.responses import JobStatus, PrinterStatus

HOST = "octopi.local:80"


class FakeClient:
    """Returns canned results per kind; a dict value is validated into a payload."""

    base_url = "http://octopi.local:80/api/"
    host_label = HOST

    def __init__(self, job=None, printer=None):
        self.responses = {ResourceKind.JOB: job, ResourceKind.PRINTER: printer}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, kind):
        with self._lock:
            self.calls.append(kind)
        body = self.responses[kind]
        if body is None:
            return FetchResult(kind=kind, error=UpstreamUnavailable(kind, "connection refused"))
        model = JobStatus if kind is ResourceKind.JOB else PrinterStatus
        return FetchResult(kind=kind, payload=model.model_validate(body))


JOB = {"progress": {"completion": 37.5, "printTime": 1200, "printTimeLeft": 2000}}
PRINTER = {
    "temperature": {
        "tool0": {"actual": 210.5, "offset": 0, "target": 210},
        "bed": {"actual": 60.1, "offset": 0, "target": 60},
    }
}


def make_collector(client):
    registry = MetricRegistry()
    return Collector(client, registry, interval_s=2), registry


def values(registry):
    result = {}
    for family in text_string_to_metric_families(registry.render().decode()):
        for sample in family.samples:
            result[(sample.name, sample.labels.get("name"))] = sample.value
    return result


def test_collector_declares_all_gauges():
    _, registry = make_collector(FakeClient())

    text = registry.render().decode()

    for spec in METRIC_SPECS:
        assert f"# TYPE {spec.name} gauge" in text


def test_tick_maps_job_and_temperatures():
    collector, registry = make_collector(FakeClient(job=JOB, printer=PRINTER))

    assert collector.tick()
    got = values(registry)

    assert got[(JOB_PERCENT.name, None)] == 37.5
    assert got[(JOB_ELAPSED.name, None)] == 1200
    assert got[(JOB_LEFT.name, None)] == 2000
    assert got[(TEMP_ACTUAL.name, "tool0")] == 210.5
    assert got[(TEMP_TARGET.name, "bed")] == 60
    assert registry.get(JOB_PERCENT.name, {"host": HOST}) == 37.5


def test_tick_fetches_each_kind_once():
    client = FakeClient(job=JOB, printer=PRINTER)
    collector, _ = make_collector(client)

    collector.tick()

    assert sorted(client.calls) == sorted(ResourceKind)


def test_tool0_yields_three_lines_with_zero_offset():
    printer = {"temperature": {"tool0": {"actual": 210.5, "offset": 0, "target": 210}}}
    collector, registry = make_collector(FakeClient(printer=printer))

    collector.tick()
    lines = [l for l in registry.render().decode().splitlines() if 'name="tool0"' in l]
    got = values(registry)

    assert len(lines) == 3
    assert got[(TEMP_ACTUAL.name, "tool0")] == 210.5
    assert got[(TEMP_OFFSET.name, "tool0")] == 0
    assert got[(TEMP_TARGET.name, "tool0")] == 210


def test_job_failure_still_exports_temperatures():
    collector, registry = make_collector(FakeClient(job=None, printer=PRINTER))

    assert collector.tick()
    got = values(registry)

    assert (TEMP_ACTUAL.name, "tool0") in got
    assert not any(name.startswith("octoprint_job_") for name, _ in got)


def test_missing_progress_fields_are_left_unset():
    job = {"progress": {"completion": None, "printTime": 30, "printTimeLeft": None}}
    collector, registry = make_collector(FakeClient(job=job))

    collector.tick()
    got = values(registry)

    assert got == {(JOB_ELAPSED.name, None): 30}


def test_vanished_sensor_is_dropped_next_cycle():
    client = FakeClient(printer=PRINTER)
    collector, registry = make_collector(client)
    collector.tick()

    client.responses[ResourceKind.PRINTER] = {"temperature": {"bed": {"actual": 61, "offset": 0, "target": 60}}}
    collector.tick()

    assert {sensor for _, sensor in values(registry)} == {"bed"}


def test_outage_empties_metrics():
    client = FakeClient(job=JOB, printer=PRINTER)
    collector, registry = make_collector(client)
    collector.tick()

    client.responses = {ResourceKind.JOB: None, ResourceKind.PRINTER: None}
    collector.tick()

    assert values(registry) == {}
    assert collector.cycle_count == 2


def test_mapping_error_is_contained(caplog):
    collector, registry = make_collector(FakeClient(job=JOB, printer=PRINTER))

    def broken(printer):
        raise RuntimeError("boom")

    collector._apply_printer = broken

    assert collector.tick() is False
    assert "aborted" in caplog.text

    # the next cycle runs normally
    del collector._apply_printer
    assert collector.tick() is True
    assert (TEMP_ACTUAL.name, "bed") in values(registry)


def test_run_collects_eagerly_and_stops():
    collector, registry = make_collector(FakeClient(job=JOB))
    thread = threading.Thread(target=collector.run, daemon=True)
    thread.start()

    for _ in range(200):
        if collector.cycle_count:
            break
        time.sleep(0.01)
    collector.stop()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert collector.cycle_count >= 1
    assert registry.get(JOB_PERCENT.name, {"host": HOST}) == 37.5


def test_collector_rejects_second_registration_on_same_registry():
    collector, registry = make_collector(FakeClient())

    with pytest.raises(ValueError):
        Collector(FakeClient(), registry, interval_s=2)


class ExplodingClient(FakeClient):
    """fetch raises for the job kind, as a client bug would."""

    def fetch(self, kind):
        if kind is ResourceKind.JOB:
            raise RecursionError("maximum recursion depth exceeded")
        return super().fetch(kind)


def test_fetch_exception_is_contained_and_other_kind_still_applied():
    collector, registry = make_collector(ExplodingClient(job=JOB, printer=PRINTER))

    assert collector.tick() is True
    got = values(registry)

    assert (TEMP_ACTUAL.name, "tool0") in got
    assert not any(name.startswith("octoprint_job_") for name, _ in got)


def test_run_survives_failing_cycles():
    collector, registry = make_collector(FakeClient(job=JOB))
    collector.interval_s = 0.01
    calls = []

    def flaky_tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return Collector.tick(collector)

    collector.tick = flaky_tick
    thread = threading.Thread(target=collector.run, daemon=True)
    thread.start()

    for _ in range(500):
        if collector.cycle_count:
            break
        time.sleep(0.01)
    collector.stop()
    thread.join(timeout=5)

    assert len(calls) >= 2
    assert registry.get(JOB_PERCENT.name, {"host": HOST}) == 37.5


def test_stop_before_run_is_not_lost():
    collector, _ = make_collector(FakeClient(job=JOB))
    collector.stop()

    thread = threading.Thread(target=collector.run, daemon=True)
    thread.start()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert collector.running is False


def test_tick_works_after_run_has_stopped():
    collector, registry = make_collector(FakeClient(job=JOB))
    thread = threading.Thread(target=collector.run, daemon=True)
    thread.start()
    collector.stop()
    thread.join(timeout=5)

    collector.registry.reset_all()
    assert collector.tick() is True
    assert registry.get(JOB_PERCENT.name, {"host": HOST}) == 37.5
    collector.close()


def test_scrape_during_cycle_sees_old_or_new_state_only():
    client = FakeClient(job=JOB, printer=PRINTER)
    collector, registry = make_collector(client)
    collector.tick()
    old = registry.render()

    client.responses[ResourceKind.PRINTER] = {"temperature": {"bed": {"actual": 61, "offset": 0, "target": 60}}}
    between_reset_and_set = threading.Event()
    release = threading.Event()
    original_apply = collector._apply_printer

    def slow_apply(printer):
        between_reset_and_set.set()
        release.wait(5)
        original_apply(printer)

    collector._apply_printer = slow_apply
    writer = threading.Thread(target=collector.tick, daemon=True)
    writer.start()
    assert between_reset_and_set.wait(5)

    scraped = []
    reader = threading.Thread(target=lambda: scraped.append(registry.render()), daemon=True)
    reader.start()
    reader.join(timeout=0.2)
    # the reader is held off while the cycle owns the registry
    assert scraped == []

    release.set()
    writer.join(timeout=5)
    reader.join(timeout=5)
    new = registry.render()

    assert scraped[0] == new
    assert b'name="tool0"' not in new
