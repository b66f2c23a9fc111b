"""
Navigation monitoring and metrics
"""
from prometheus_client import Counter, Histogram, generate_latest


# Define metrics
route_requests = Counter(
    'navigation_route_requests_total',
    'Routes handed out by the routing client',
    ['source']
)

routing_provider_duration = Histogram(
    'navigation_routing_provider_duration_seconds',
    'Routing provider call duration'
)

recalculations = Counter(
    'navigation_recalculations_total',
    'Route recalculations',
    ['outcome']
)

off_route_events = Counter(
    'navigation_off_route_events_total',
    'Off-route detections'
)

gps_signal_changes = Counter(
    'navigation_gps_signal_changes_total',
    'GPS signal strength transitions',
    ['strength']
)


def get_metrics() -> bytes:
    """Metrics in Prometheus exposition format"""
    return generate_latest()
