"""Collection loop: poll OctoPrint and refresh the gauge registry."""
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional
import logging
import threading
import time

from octoprint_exporter.client import FetchResult, OctoPrintClient, ResourceKind, UpstreamUnavailable
from octoprint_exporter.registry import MetricRegistry
from octoprint_exporter.responses import JobStatus, PrinterStatus
from octoprint_exporter.series import MetricSpec

logger = logging.getLogger(__name__)

APP_NAME = "octoprint"
JOB_LABELS = ("host",)
# alphabetical, which is also the order prometheus_client renders them in
TEMP_LABELS = ("host", "name")

JOB_PERCENT = MetricSpec(
    f"{APP_NAME}_job_progress_percent",
    "Progress of current job in percentage",
    JOB_LABELS,
)
JOB_ELAPSED = MetricSpec(
    f"{APP_NAME}_job_progress_elapsed_seconds",
    "Current job elapsed time in seconds",
    JOB_LABELS,
)
JOB_LEFT = MetricSpec(
    f"{APP_NAME}_job_progress_left_seconds",
    "Current job time left in seconds",
    JOB_LABELS,
)
TEMP_ACTUAL = MetricSpec(
    f"{APP_NAME}_actual_temperature",
    "Device actual temperature",
    TEMP_LABELS,
)
TEMP_OFFSET = MetricSpec(
    f"{APP_NAME}_offset_temperature",
    "Device offset temperature",
    TEMP_LABELS,
)
TEMP_TARGET = MetricSpec(
    f"{APP_NAME}_target_temperature",
    "Device target temperature",
    TEMP_LABELS,
)

METRIC_SPECS = [JOB_PERCENT, JOB_ELAPSED, JOB_LEFT, TEMP_ACTUAL, TEMP_OFFSET, TEMP_TARGET]


class CollectionCycleError(Exception):
    """Unexpected failure while mapping a response onto the registry."""


class Collector:
    """Runs collection cycles against one OctoPrint instance."""

    def __init__(self, client: OctoPrintClient, registry: MetricRegistry, interval_s: float):
        self.client = client
        self.registry = registry
        self.interval_s = interval_s
        self.host = client.host_label
        self.running = False
        self.cycle_count = 0
        self.last_cycle_duration: Optional[float] = None
        self._stop_event = threading.Event()
        self._pool = ThreadPoolExecutor(max_workers=len(ResourceKind), thread_name_prefix="octoprint-fetch")

        for spec in METRIC_SPECS:
            registry.declare(spec)

    def fetch_all(self) -> Dict[ResourceKind, FetchResult]:
        """Fetch every resource kind concurrently and wait for all of them."""
        futures = {kind: self._pool.submit(self.client.fetch, kind) for kind in ResourceKind}
        results = {}
        for kind, future in futures.items():
            try:
                results[kind] = future.result()
            except Exception as e:
                logger.error(f"Fetch of {kind.value} status failed: {e}", exc_info=True)
                results[kind] = FetchResult(
                    kind=kind, error=UpstreamUnavailable(kind, f"{type(e).__name__}: {e}")
                )
        return results

    def tick(self) -> bool:
        """
        Run one collection cycle.

        Both fetches finish before the registry is touched. The registry is
        then reset once and repopulated while its lock is held, so a scrape
        sees either the previous cycle or this one. Returns False if the
        cycle was aborted by a mapping error; never raises.
        """
        cycle_start = time.time()
        results: Dict[ResourceKind, FetchResult] = {}

        ok = True
        try:
            results = self.fetch_all()
            with self.registry.batch():
                self.registry.reset_all()
                self._apply_job(results[ResourceKind.JOB].payload)
                self._apply_printer(results[ResourceKind.PRINTER].payload)
        except Exception as e:
            ok = False
            error = CollectionCycleError(f"Collection cycle {self.cycle_count + 1} aborted: {e}")
            logger.error(str(error), exc_info=True)

        self.cycle_count += 1
        self.last_cycle_duration = time.time() - cycle_start
        logger.debug(
            f"Cycle {self.cycle_count}: "
            f"{sum(1 for r in results.values() if r.ok)}/{len(results)} resources "
            f"in {self.last_cycle_duration:.3f}s"
        )
        return ok

    def _apply_job(self, job: Optional[JobStatus]):
        if job is None or job.progress is None:
            return
        labels = {"host": self.host}
        self.registry.set(JOB_PERCENT.name, labels, job.progress.completion)
        self.registry.set(JOB_ELAPSED.name, labels, job.progress.print_time)
        self.registry.set(JOB_LEFT.name, labels, job.progress.print_time_left)

    def _apply_printer(self, printer: Optional[PrinterStatus]):
        if printer is None or printer.temperature is None:
            return
        for sensor, reading in printer.temperature.items():
            labels = {"host": self.host, "name": sensor}
            self.registry.set(TEMP_ACTUAL.name, labels, reading.actual)
            self.registry.set(TEMP_OFFSET.name, labels, reading.offset)
            self.registry.set(TEMP_TARGET.name, labels, reading.target)

    def run(self):
        """Collect once immediately, then every interval until stopped."""
        self.running = True

        logger.info(f"Starting collector, polling {self.client.base_url} every {self.interval_s}s")

        # a stop() issued before this point still ends the loop
        while not self._stop_event.is_set():
            tick_start = time.time()

            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in collection cycle: {e}", exc_info=True)

            tick_duration = time.time() - tick_start
            sleep_time = max(0, self.interval_s - tick_duration)

            if sleep_time > 0:
                self._stop_event.wait(sleep_time)
            else:
                logger.warning(
                    f"Cycle took {tick_duration:.3f}s, longer than interval {self.interval_s}s"
                )

        self.running = False

    def stop(self):
        """Stop after the current cycle; an in-flight cycle is not interrupted."""
        logger.info("Stopping collector")
        self._stop_event.set()

    def close(self):
        """Stop the loop and release the fetch threads."""
        self.stop()
        self._pool.shutdown(wait=False)


def run_collector_thread(collector: Collector):
    """Run the collector in a separate thread."""
    try:
        collector.run()
    except Exception as e:
        logger.error(f"Collector thread error: {e}", exc_info=True)
        collector.stop()
