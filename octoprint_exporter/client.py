"""HTTP client for the OctoPrint status API."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
import logging

import httpx
from pydantic import ValidationError

from octoprint_exporter.config import UpstreamConfig
from octoprint_exporter.responses import JobStatus, PrinterStatus

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Api-Key"


class ResourceKind(str, Enum):
    """Status resources polled each cycle, valued by their API path."""
    JOB = "job"
    PRINTER = "printer"


RESPONSE_MODELS = {
    ResourceKind.JOB: JobStatus,
    ResourceKind.PRINTER: PrinterStatus,
}


class UpstreamUnavailable(Exception):
    """A fetch failed: transport error, timeout, bad status or unparseable body."""

    def __init__(self, kind: ResourceKind, reason: str):
        super().__init__(f"OctoPrint {kind.value} status unavailable: {reason}")
        self.kind = kind
        self.reason = reason


@dataclass
class FetchResult:
    """Outcome of one fetch: exactly one of payload or error is set."""
    kind: ResourceKind
    payload: Optional[Union[JobStatus, PrinterStatus]] = None
    error: Optional[UpstreamUnavailable] = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


def build_base_url(config: UpstreamConfig) -> str:
    scheme = "https" if config.ssl else "http"
    return f"{scheme}://{config.host}:{config.effective_port}/api/"


class OctoPrintClient:
    """Issues authenticated GETs against one OctoPrint instance."""

    def __init__(self, config: UpstreamConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.base_url = build_base_url(config)
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={API_KEY_HEADER: config.api_key},
            timeout=config.timeout_s,
            transport=transport,
        )

    @property
    def host_label(self) -> str:
        """Host identity attached to every sample."""
        return f"{self.config.host}:{self.config.effective_port}"

    def fetch(self, kind: ResourceKind) -> FetchResult:
        """Fetch and parse one status resource. Never raises."""
        logger.debug(f"API call of type {kind.value} requested")
        try:
            response = self._client.get(kind.value)
            response.raise_for_status()
            payload = RESPONSE_MODELS[kind].model_validate(response.json())
        except httpx.TimeoutException as e:
            return self._unavailable(kind, f"timed out after {self.config.timeout_s}s ({e})")
        except httpx.HTTPStatusError as e:
            return self._unavailable(kind, f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            return self._unavailable(kind, f"{type(e).__name__}: {e}")
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            return self._unavailable(kind, f"unparseable response body ({e})")
        except Exception as e:
            # e.g. RecursionError from pathologically nested JSON
            return self._unavailable(kind, f"unexpected {type(e).__name__}: {e}")

        logger.debug(f"API call of type {kind.value} received")
        return FetchResult(kind=kind, payload=payload)

    def _unavailable(self, kind: ResourceKind, reason: str) -> FetchResult:
        error = UpstreamUnavailable(kind, reason)
        logger.error(f"Unable to connect to OctoPrint at {self.base_url}. Check host and port.")
        logger.error(str(error))
        return FetchResult(kind=kind, error=error)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
