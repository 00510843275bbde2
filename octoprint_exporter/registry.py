"""Gauge registry exposed in the Prometheus text format via prometheus_client."""
from collections import OrderedDict
from contextlib import contextmanager
from numbers import Real
from typing import Dict, Iterator, Optional, Tuple
import logging
import math
import threading

from prometheus_client import (
    CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest,
    GCCollector, PlatformCollector, ProcessCollector,
)
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.registry import Collector

from octoprint_exporter.series import MetricSample, MetricSpec

logger = logging.getLogger(__name__)


class DuplicateMetric(ValueError):
    """Raised when a metric name is declared twice."""


def is_valid_sample(value) -> bool:
    """Only finite real numbers are stored; anything else leaves the gauge unset."""
    if value is None or isinstance(value, bool) or not isinstance(value, Real):
        return False
    return math.isfinite(value)


class MetricRegistry(Collector):
    """
    Holds the latest value of every declared gauge.

    The collector thread is the only writer. Scrapes read through ``render()``,
    which takes the same lock as ``batch()`` so a reset-and-repopulate pass is
    never observed half done.
    """

    def __init__(self, namespace: str = "octoprint"):
        self.namespace = namespace
        # Custom registry keeps the default Python/process metrics out unless asked for
        self.registry = CollectorRegistry(auto_describe=True)
        self._specs: "OrderedDict[str, MetricSpec]" = OrderedDict()
        self._samples: Dict[str, Dict[Tuple[str, ...], float]] = {}
        self._lock = threading.RLock()
        self._runtime_metrics = False
        self.registry.register(self)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def declare(self, spec: MetricSpec) -> None:
        """Register a gauge under a unique name."""
        with self._lock:
            if spec.name in self._specs:
                raise DuplicateMetric(f"Metric '{spec.name}' is already declared")
            self._specs[spec.name] = spec
            self._samples[spec.name] = {}
        logger.info(f"Declared gauge {spec.name} with labels {list(spec.label_names)}")

    @contextmanager
    def batch(self):
        """Hold the registry lock for a multi-step update."""
        with self._lock:
            yield self

    def reset_all(self) -> None:
        """Drop every sample, keep the declarations."""
        with self._lock:
            for name in self._samples:
                self._samples[name] = {}

    def set(self, name: str, labels: Dict[str, str], value) -> bool:
        """
        Upsert a sample.

        Returns False without touching the gauge when ``value`` is absent,
        not a number, or not finite.
        """
        if name not in self._specs:
            raise KeyError(f"Metric '{name}' is not declared")
        if not is_valid_sample(value):
            return False

        spec = self._specs[name]
        key = MetricSample(labels, float(value)).label_key(spec.label_names)
        with self._lock:
            self._samples[name][key] = float(value)
        return True

    def get(self, name: str, labels: Dict[str, str]) -> Optional[float]:
        """Current value of a sample, or None when unset."""
        spec = self._specs[name]
        key = MetricSample(labels, 0.0).label_key(spec.label_names)
        with self._lock:
            return self._samples[name].get(key)

    def samples(self, name: str) -> Iterator[MetricSample]:
        spec = self._specs[name]
        with self._lock:
            items = sorted(self._samples[name].items())
        for key, value in items:
            yield MetricSample(dict(zip(spec.label_names, key)), value)

    def enable_runtime_metrics(self) -> None:
        """Add the prometheus_client process, platform and GC collectors."""
        if self._runtime_metrics:
            return
        ProcessCollector(namespace=self.namespace, registry=self.registry)
        PlatformCollector(registry=self.registry)
        GCCollector(registry=self.registry)
        self._runtime_metrics = True
        logger.info("Runtime metrics enabled")

    def describe(self):
        for spec in self._specs.values():
            yield GaugeMetricFamily(spec.name, spec.help, labels=list(spec.label_names))

    def collect(self):
        with self._lock:
            snapshot = [
                (spec, sorted(self._samples[spec.name].items()))
                for spec in self._specs.values()
            ]
        for spec, items in snapshot:
            family = GaugeMetricFamily(spec.name, spec.help, labels=list(spec.label_names))
            for key, value in items:
                family.add_metric(list(key), value)
            yield family

    def render(self) -> bytes:
        """Exposition text for every declared gauge, in declaration order."""
        with self._lock:
            return generate_latest(self.registry)
