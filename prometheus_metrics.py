"""
Home Bridge - Prometheus Metrics
Counters, histograms and gauges for the bridge pipeline and gateways.
"""

from prometheus_client import Counter, Histogram, Gauge, start_http_server
import logger as log


# --- Message Metrics ---

messages_processed = Counter(
    'home_bridge_messages_processed_total',
    'Total number of inbound messages ingested',
    ['platform', 'origin']  # origin: self, other
)

responses_generated = Counter(
    'home_bridge_responses_generated_total',
    'Total number of replies sent',
    ['platform', 'reason', 'success']  # reason: mention, reply, dialogue, proactive
)

response_time = Histogram(
    'home_bridge_response_duration_seconds',
    'Reply generation time in seconds',
    ['platform'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)

# --- Language Model Metrics ---

api_requests = Counter(
    'home_bridge_api_requests_total',
    'Total number of language-model API requests',
    ['provider_tier', 'status']  # status: success, error, timeout
)

api_request_duration = Histogram(
    'home_bridge_api_request_duration_seconds',
    'Language-model API request duration in seconds',
    ['provider_tier'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

tool_calls = Counter(
    'home_bridge_tool_calls_total',
    'Tool invocations requested by the model',
    ['tool', 'status']  # status: ok, failed, unknown
)

rate_limit_hits = Counter(
    'home_bridge_rate_limit_hits_total',
    'Requests refused by the leaky bucket',
)

tool_depth_aborts = Counter(
    'home_bridge_tool_depth_aborts_total',
    'Turns aborted at the tool recursion ceiling',
)

# --- Error Metrics ---

errors_total = Counter(
    'home_bridge_errors_total',
    'Total number of handled errors',
    ['platform', 'error_type']
)

# --- Gateway Metrics ---

reconnects = Counter(
    'home_bridge_reconnects_total',
    'Gateway reconnect attempts',
    ['platform']
)

gateway_state = Gauge(
    'home_bridge_gateway_state',
    'Current gateway state (1 for the active state)',
    ['platform', 'state']
)

# --- State Metrics ---

cached_channels = Gauge(
    'home_bridge_cached_channels',
    'Channels in the channel/user cache',
    ['platform']
)

cached_users = Gauge(
    'home_bridge_cached_users',
    'Users in the channel/user cache',
    ['platform']
)

queue_depth = Gauge(
    'home_bridge_queue_depth',
    'Pending replies in the response queue',
    ['platform']
)

dialogue_remaining = Gauge(
    'home_bridge_dialogue_remaining',
    'Messages left in the current proactive dialogue',
    ['platform']
)

reactions = Counter(
    'home_bridge_reactions_total',
    'Ambient reactions added to messages',
    ['platform']
)


# --- Metrics Manager ---

class MetricsManager:
    """Centralized metrics management for Home Bridge."""

    def __init__(self, metrics_port: int = 8000):
        self.metrics_port = metrics_port
        self._started = False

    def start_metrics_server(self, port: int = None):
        """Start the Prometheus metrics HTTP server."""
        if self._started:
            return
        if port:
            self.metrics_port = port

        try:
            start_http_server(self.metrics_port)
            self._started = True
            log.info(f"Prometheus metrics server started on port {self.metrics_port}")
        except OSError as e:
            log.error(f"Failed to start metrics server: {e}")

    def record_message(self, platform: str, from_self: bool):
        messages_processed.labels(platform=platform, origin='self' if from_self else 'other').inc()

    def record_response(self, platform: str, reason: str, success: bool, duration_seconds: float):
        responses_generated.labels(platform=platform, reason=reason or 'none', success=str(success)).inc()
        response_time.labels(platform=platform).observe(duration_seconds)

    def record_api_request(self, provider_tier: str, status: str, duration_seconds: float):
        api_requests.labels(provider_tier=provider_tier, status=status).inc()
        api_request_duration.labels(provider_tier=provider_tier).observe(duration_seconds)

    def record_tool_call(self, tool: str, status: str):
        tool_calls.labels(tool=tool, status=status).inc()

    def record_rate_limit_hit(self):
        rate_limit_hits.inc()

    def record_tool_depth_abort(self):
        tool_depth_aborts.inc()

    def record_error(self, platform: str, error_type: str):
        errors_total.labels(platform=platform, error_type=error_type).inc()

    def record_reconnect(self, platform: str):
        reconnects.labels(platform=platform).inc()

    def update_gateway_state(self, platform: str, state: str, all_states):
        """Set the gauge of `state` to 1 and every other state to 0."""
        for name in all_states:
            gateway_state.labels(platform=platform, state=name).set(1 if name == state else 0)

    def update_cache_size(self, platform: str, channels: int, users: int):
        cached_channels.labels(platform=platform).set(channels)
        cached_users.labels(platform=platform).set(users)

    def update_queue_depth(self, platform: str, depth: int):
        queue_depth.labels(platform=platform).set(depth)

    def update_dialogue_remaining(self, platform: str, remaining: int):
        dialogue_remaining.labels(platform=platform).set(remaining)

    def record_reaction(self, platform: str):
        reactions.labels(platform=platform).inc()


# Global metrics manager instance
metrics_manager = MetricsManager()
