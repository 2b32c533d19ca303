"""
Observability Infrastructure

Structured logging, tracing and metrics for validation, repair and
refinement runs. Logging goes through loguru; spans and metrics through
OpenTelemetry.
"""

import contextlib
import json
import os
import sys
import time
import traceback
from enum import Enum
from typing import Any, Dict, Optional, Union

from loguru import logger
from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor


class LogLevel(str, Enum):
    """Log level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ObservabilityConfig:
    """Configuration for observability."""

    def __init__(
        self,
        service_name: str = "flow-agent",
        log_level: Union[str, LogLevel] = LogLevel.INFO,
        json_logs: bool = False,
        enable_tracing: bool = True,
        console_spans: bool = False,
        enable_metrics: bool = True,
    ):
        self.service_name = service_name
        self.log_level = log_level if isinstance(log_level, str) else log_level.value
        self.json_logs = json_logs
        self.enable_tracing = enable_tracing
        self.console_spans = console_spans
        self.enable_metrics = enable_metrics

    @classmethod
    def from_env(cls) -> "ObservabilityConfig":
        return cls(
            log_level=os.getenv("FLOW_LOG_LEVEL", "INFO").upper(),
            json_logs=os.getenv("FLOW_JSON_LOGS", "false").lower() == "true",
            console_spans=os.getenv("FLOW_CONSOLE_SPANS", "false").lower() == "true",
        )


class JSONFormatter:
    """JSON line formatter for loguru."""

    def __call__(self, record: Dict[str, Any]) -> str:
        log_data = {
            "timestamp": record["time"].isoformat(),
            "level": record["level"].name,
            "logger": record["name"],
            "function": record["function"],
            "line": record["line"],
            "message": record["message"],
        }
        if record["extra"]:
            log_data["extra"] = record["extra"]
        if record["exception"]:
            log_data["exception"] = {
                "type": record["exception"].type.__name__,
                "value": str(record["exception"].value),
                "traceback": "".join(
                    traceback.format_exception(
                        record["exception"].type,
                        record["exception"].value,
                        record["exception"].tb,
                    )
                ),
            }
        # loguru treats the returned string as a format template
        return json.dumps(log_data, default=str).replace("{", "{{").replace("}", "}}") + "\n"


class ObservabilityManager:
    """Centralized observability management."""

    _instance: Optional["ObservabilityManager"] = None

    def __init__(self, config: ObservabilityConfig):
        self.config = config
        self._setup_logging()

        if config.enable_tracing:
            self._setup_tracing()

        if config.enable_metrics:
            self._setup_metrics()

        logger.info(
            f"Observability initialized: service={config.service_name}, "
            f"log_level={config.log_level}"
        )

    def _setup_logging(self) -> None:
        logger.remove()
        if self.config.json_logs:
            logger.add(sys.stderr, format=JSONFormatter(), level=self.config.log_level, colorize=False)
        else:
            logger.add(
                sys.stderr,
                format=(
                    "<level>{level: <8}</level> | "
                    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
                    "<level>{message}</level>"
                ),
                level=self.config.log_level,
                colorize=True,
            )

    def _setup_tracing(self) -> None:
        resource = Resource(attributes={SERVICE_NAME: self.config.service_name})
        tracer_provider = TracerProvider(resource=resource)
        if self.config.console_spans:
            tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(tracer_provider)
        self.tracer = trace.get_tracer(__name__)

    def _setup_metrics(self) -> None:
        self.metric_reader = InMemoryMetricReader()
        resource = Resource(attributes={SERVICE_NAME: self.config.service_name})
        meter_provider = MeterProvider(resource=resource, metric_readers=[self.metric_reader])
        metrics.set_meter_provider(meter_provider)
        self.meter = metrics.get_meter(__name__)

        self.counter = self.meter.create_counter(
            "flow_events_total",
            description="Validation, repair and refinement events",
            unit="1",
        )
        self.histogram = self.meter.create_histogram(
            "flow_duration_ms",
            description="Operation duration in milliseconds",
            unit="ms",
        )

    @classmethod
    def initialize(cls, config: Optional[ObservabilityConfig] = None) -> "ObservabilityManager":
        """Initialize or get singleton instance."""
        if cls._instance is None:
            cls._instance = cls(config or ObservabilityConfig())
        return cls._instance

    @classmethod
    def get_instance(cls) -> "ObservabilityManager":
        if cls._instance is None:
            cls._instance = cls(ObservabilityConfig())
        return cls._instance


@contextlib.contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Context manager for creating spans."""
    manager = ObservabilityManager.get_instance()

    if hasattr(manager, "tracer"):
        with manager.tracer.start_as_current_span(name) as span_obj:
            for key, value in (attributes or {}).items():
                span_obj.set_attribute(key, value)
            yield span_obj
    else:
        yield None


def record_metric(
    metric_name: str,
    value: Union[int, float],
    attributes: Optional[Dict[str, str]] = None,
) -> None:
    """
    Record a metric value with OpenTelemetry.

    Integer values are counted, float values go to the duration histogram.
    The metric name travels as the ``metric`` attribute.
    """
    manager = ObservabilityManager.get_instance()
    attrs = {"metric": metric_name, **(attributes or {})}

    if hasattr(manager, "counter"):
        if isinstance(value, int):
            manager.counter.add(value, attributes=attrs)
        else:
            manager.histogram.record(value, attributes=attrs)
    logger.debug(f"Metric recorded: {metric_name}={value}")


class Timer:
    """Context manager for timing operations."""

    def __init__(self, name: str, log: bool = True):
        self.name = name
        self.log = log
        self.start_time: float = 0
        self.elapsed: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.time()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed = time.time() - self.start_time
        if self.log:
            logger.debug(f"Timer '{self.name}': {self.elapsed:.3f}s")
            record_metric(f"{self.name}_duration", self.elapsed * 1000)

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000


__all__ = [
    "LogLevel",
    "ObservabilityConfig",
    "ObservabilityManager",
    "JSONFormatter",
    "span",
    "record_metric",
    "Timer",
]
