"""
Prometheus-compatible metrics for observability.

Tracks key booking engine indicators:
- Applied booking transitions (by command, from_status, to_status)
- Rejected booking commands (by command, error code)
- Payment gateway calls (by operation, outcome)
- Notification deliveries (by audience, event, outcome)

Usage:
    from src.lib.metrics import get_metrics_collector

    metrics = get_metrics_collector()
    metrics.increment_transitions(command="accept_job", from_status="pending", to_status="accepted")
    metrics.increment_gateway_calls(operation="capture", outcome="ok")

    # Export for Prometheus
    prometheus_output = metrics.export_prometheus()
"""

from typing import Dict, Optional, Tuple
from threading import Lock


class MetricsCollector:
    """
    Prometheus-style metrics collector for the booking engine.

    Counters:
    - booking_transitions_total: Commands applied (labels: command, from_status, to_status)
    - booking_commands_rejected_total: Commands rejected (labels: command, error)
    - payment_gateway_calls_total: Gateway calls (labels: operation, outcome)
    - notifications_sent_total: Notification deliveries (labels: audience, event, outcome)

    Thread-safe for concurrent increments.
    """

    def __init__(self):
        self._lock = Lock()

        # Counters: key = (metric_name, labels_tuple), value = count
        self._counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = {}

    def _get_counter_key(self, metric_name: str, labels: Dict[str, str]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        """Generate unique key for counter with sorted labels."""
        sorted_labels = tuple(sorted(labels.items()))
        return (metric_name, sorted_labels)

    def _increment(self, metric_name: str, labels: Dict[str, str], amount: int = 1):
        """Thread-safe increment of counter."""
        key = self._get_counter_key(metric_name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def _get_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        """Get current value of counter."""
        key = self._get_counter_key(metric_name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    # ===== Booking Metrics =====

    def increment_transitions(self, command: str, from_status: str, to_status: str, amount: int = 1):
        """
        Increment applied booking commands.

        Args:
            command: Command name (accept_job, pay, ...)
            from_status: Status before the command
            to_status: Status after the command (may equal from_status)
            amount: Increment amount (default 1)
        """
        labels = {
            "command": command.lower(),
            "from_status": from_status.lower(),
            "to_status": to_status.lower(),
        }
        self._increment("booking_transitions_total", labels, amount)

    def increment_rejected(self, command: str, error: str, amount: int = 1):
        """Increment rejected booking commands."""
        labels = {
            "command": command.lower(),
            "error": error.lower(),
        }
        self._increment("booking_commands_rejected_total", labels, amount)

    # ===== Settlement Metrics =====

    def increment_gateway_calls(self, operation: str, outcome: str, amount: int = 1):
        """
        Increment payment gateway calls.

        Args:
            operation: capture, release or refund
            outcome: ok or failed
            amount: Increment amount
        """
        labels = {
            "operation": operation.lower(),
            "outcome": outcome.lower(),
        }
        self._increment("payment_gateway_calls_total", labels, amount)

    def increment_notifications(self, audience: str, event: str, outcome: str = "sent", amount: int = 1):
        """Increment notification deliveries."""
        labels = {
            "audience": audience.lower(),
            "event": event.lower(),
            "outcome": outcome.lower(),
        }
        self._increment("notifications_sent_total", labels, amount)

    # ===== Export =====

    def export_prometheus(self) -> str:
        """
        Export all metrics in Prometheus text format.

        Returns:
            Prometheus-compatible text output
        """
        output_lines = []

        # Group counters by metric name
        metrics_by_name: Dict[str, list] = {}
        with self._lock:
            for (metric_name, labels_tuple), value in self._counters.items():
                metrics_by_name.setdefault(metric_name, []).append((dict(labels_tuple), value))

        for metric_name in sorted(metrics_by_name.keys()):
            help_text = self._get_help_text(metric_name)
            output_lines.append(f"# HELP {metric_name} {help_text}")
            output_lines.append(f"# TYPE {metric_name} counter")

            for labels_dict, value in sorted(metrics_by_name[metric_name], key=lambda x: str(x[0])):
                labels_str = ",".join([f'{k}="{v}"' for k, v in sorted(labels_dict.items())])
                output_lines.append(f"{metric_name}{{{labels_str}}} {value}")

            output_lines.append("")  # Blank line between metrics

        return "\n".join(output_lines)

    def _get_help_text(self, metric_name: str) -> str:
        """Get help text for metric."""
        help_texts = {
            "booking_transitions_total": "Total number of booking commands applied",
            "booking_commands_rejected_total": "Total number of booking commands rejected",
            "payment_gateway_calls_total": "Total number of payment gateway calls",
            "notifications_sent_total": "Total number of booking notifications dispatched",
        }
        return help_texts.get(metric_name, "Counter metric")

    def get_counter_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        """
        Get current value of a specific counter.

        Args:
            metric_name: Name of the metric
            labels: Label filters

        Returns:
            Current counter value
        """
        return self._get_value(metric_name, labels)

    def reset_all(self):
        """Reset all counters (for testing)."""
        with self._lock:
            self._counters.clear()


# Global singleton instance
_metrics_collector: Optional[MetricsCollector] = None
_metrics_lock = Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton."""
    global _metrics_collector
    if _metrics_collector is None:
        with _metrics_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics():
    """Reset global metrics collector (for testing)."""
    with _metrics_lock:
        if _metrics_collector is not None:
            _metrics_collector.reset_all()
