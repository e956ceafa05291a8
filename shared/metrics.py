"""
Shared metrics configuration for Tracker Studio services.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""
    
    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()
    
    def _setup_metrics(self):
        """Set up common metrics for the service."""
        
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })
        
        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )
        
        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )
        
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )
        
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )
        
        self._setup_tracker_metrics()
    
    def _setup_tracker_metrics(self):
        """Set up permission and tracker engine metrics."""
        self._metrics["permission_decisions_total"] = Counter(
            "permission_decisions_total",
            "Total permission resolutions",
            ["source", "decision"],
            registry=self.registry
        )
        
        self._metrics["permission_resolution_seconds"] = Histogram(
            "permission_resolution_seconds",
            "Permission resolution duration in seconds",
            registry=self.registry
        )
        
        self._metrics["validation_failures_total"] = Counter(
            "validation_failures_total",
            "Total rejected schemas and entries",
            ["kind"],
            registry=self.registry
        )
        
        self._metrics["conflicts_total"] = Counter(
            "conflicts_total",
            "Total duplicate or optimistic-lock conflicts",
            ["kind"],
            registry=self.registry
        )
        
        self._metrics["insights_cache_events_total"] = Counter(
            "insights_cache_events_total",
            "Insights cache hits, misses and invalidations",
            ["event"],
            registry=self.registry
        )
    
    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)
    
    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()
        
        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)
    
    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()
    
    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()
    
    def record_permission_decision(self, source: str, allowed: bool):
        """Record the outcome of a permission resolution."""
        decision = "allow" if allowed else "deny"
        self._metrics["permission_decisions_total"].labels(source=source, decision=decision).inc()
    
    def observe_resolution(self, duration: float):
        self._metrics["permission_resolution_seconds"].observe(duration)
    
    def record_validation_failure(self, kind: str):
        self._metrics["validation_failures_total"].labels(kind=kind).inc()
    
    def record_conflict(self, kind: str):
        self._metrics["conflicts_total"].labels(kind=kind).inc()
    
    def record_cache_event(self, event: str):
        self._metrics["insights_cache_events_total"].labels(event=event).inc()
    

def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
