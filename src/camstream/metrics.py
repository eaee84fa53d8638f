"""
Pipeline Metrics
================

Counters exposed on /metrics and by the smoke test script.
"""


class PipelineMetrics:
    """Metrics for preview pipeline observability."""

    __slots__ = (
        "frames_broadcast",
        "client_writes",
        "throttled_skips",
        "write_errors",
        "clients_connected",
        "clients_removed",
        "sessions_started",
        "spawn_failures",
        "process_exits",
        "watchdog_restarts",
        "swaps_completed",
        "swaps_abandoned",
    )

    def __init__(self) -> None:
        self.frames_broadcast: int = 0
        self.client_writes: int = 0
        self.throttled_skips: int = 0
        self.write_errors: int = 0
        self.clients_connected: int = 0
        self.clients_removed: int = 0
        self.sessions_started: int = 0
        self.spawn_failures: int = 0
        self.process_exits: int = 0
        self.watchdog_restarts: int = 0
        self.swaps_completed: int = 0
        self.swaps_abandoned: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {name: getattr(self, name) for name in self.__slots__}
