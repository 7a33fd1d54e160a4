from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class RouteMetrics:
    request_count: int = 0
    error_count: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0


@dataclass
class Metrics:
    total_requests: int = 0
    total_errors: int = 0
    availability_queries: int = 0
    bookings_confirmed: int = 0
    bookings_failed: int = 0
    booking_conflicts: int = 0
    reschedules_confirmed: int = 0
    cancellations_confirmed: int = 0
    busy_source_failures: int = 0
    busy_time_unavailable: int = 0
    identity_not_found: int = 0
    compensation_attempts: int = 0
    compensation_failures: int = 0
    external_vendor_signals: int = 0
    busy_source_failures_by_source: Dict[str, int] = field(default_factory=dict)
    route_metrics: Dict[str, RouteMetrics] = field(default_factory=dict)

    def observe_request(self, path: str, latency_ms: float, failed: bool) -> None:
        route = self.route_metrics.setdefault(path, RouteMetrics())
        self.total_requests += 1
        route.request_count += 1
        route.total_latency_ms += latency_ms
        route.max_latency_ms = max(route.max_latency_ms, latency_ms)
        if failed:
            self.total_errors += 1
            route.error_count += 1

    def record_source_failure(self, source: str) -> None:
        self.busy_source_failures += 1
        self.busy_source_failures_by_source[source] = (
            self.busy_source_failures_by_source.get(source, 0) + 1
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "availability_queries": self.availability_queries,
            "bookings_confirmed": self.bookings_confirmed,
            "bookings_failed": self.bookings_failed,
            "booking_conflicts": self.booking_conflicts,
            "reschedules_confirmed": self.reschedules_confirmed,
            "cancellations_confirmed": self.cancellations_confirmed,
            "busy_source_failures": self.busy_source_failures,
            "busy_source_failures_by_source": dict(
                self.busy_source_failures_by_source
            ),
            "busy_time_unavailable": self.busy_time_unavailable,
            "identity_not_found": self.identity_not_found,
            "compensation_attempts": self.compensation_attempts,
            "compensation_failures": self.compensation_failures,
            "external_vendor_signals": self.external_vendor_signals,
            "route_metrics": {
                path: {
                    "request_count": rm.request_count,
                    "error_count": rm.error_count,
                    "total_latency_ms": rm.total_latency_ms,
                    "max_latency_ms": rm.max_latency_ms,
                }
                for path, rm in self.route_metrics.items()
            },
        }

    def reset(self) -> None:
        fresh = Metrics()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))


metrics = Metrics()
