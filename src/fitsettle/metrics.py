"""
fitsettle/metrics.py

Prometheus metrics collection for fitsettle.

Tracks event fetch health, parse quality, cache effectiveness and payout
outcomes. Components take an optional SettlementMetrics and record into it.
"""

import time
import logging
from typing import Any, Dict

logger = logging.getLogger("fitsettle.metrics")


class SettlementMetrics:
    """
    Prometheus metrics collector for the settlement engine.

    Usage:
        from fitsettle.metrics import SettlementMetrics

        metrics = SettlementMetrics()
        engine = SettlementEngine(..., metrics=metrics)

        # Get metrics in Prometheus format
        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "fitsettle_fetches_total": {
            "type": "counter",
            "help": "Event fetches by outcome (complete, partial)",
        },
        "fitsettle_relay_errors_total": {
            "type": "counter",
            "help": "Relay queries that failed",
        },
        "fitsettle_records_parsed_total": {
            "type": "counter",
            "help": "Activity records parsed from events",
        },
        "fitsettle_records_discarded_total": {
            "type": "counter",
            "help": "Events discarded as malformed",
        },
        "fitsettle_cache_requests_total": {
            "type": "counter",
            "help": "Leaderboard cache lookups by result (hit, miss, stale)",
        },
        "fitsettle_distributions_total": {
            "type": "counter",
            "help": "Distributions reaching a terminal status",
        },
        "fitsettle_payments_total": {
            "type": "counter",
            "help": "Recipient payments by outcome (sent, failed)",
        },
        "fitsettle_sats_paid_total": {
            "type": "counter",
            "help": "Total sats paid to recipients",
        },
        "fitsettle_fetch_duration_seconds": {
            "type": "histogram",
            "help": "Event fetch duration in seconds",
        },
        "fitsettle_uptime_seconds": {
            "type": "counter",
            "help": "Collector uptime in seconds",
        },
    }

    FETCH_BUCKETS = [0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0]

    def __init__(self):
        self._start_time = time.time()
        self.reset_counters()

    # ------------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------------

    def record_fetch(self, complete: bool, duration_seconds: float = 0.0, relay_errors: int = 0) -> None:
        """Record one event fetch."""
        self._fetches["complete" if complete else "partial"] += 1
        self._relay_errors += relay_errors

        self._fetch_sum += duration_seconds
        self._fetch_count += 1
        for bucket in self.FETCH_BUCKETS:
            if duration_seconds <= bucket:
                self._fetch_buckets[bucket] += 1
        self._fetch_buckets[float('inf')] += 1

    def record_parse(self, parsed: int, discarded: int) -> None:
        self._records_parsed += parsed
        self._records_discarded += discarded

    def record_cache(self, result: str) -> None:
        """result: hit, miss or stale."""
        self._cache[result] = self._cache.get(result, 0) + 1

    def record_distribution(self, status: str) -> None:
        self._distributions[status] = self._distributions.get(status, 0) + 1

    def record_payment(self, success: bool, amount_sats: int = 0) -> None:
        if success:
            self._payments["sent"] += 1
            self._sats_paid += amount_sats
        else:
            self._payments["failed"] += 1

    # ------------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------------

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines = []

        def header(name: str):
            metric_def = self.METRICS.get(name, {})
            lines.append(f"# HELP {name} {metric_def.get('help', '')}")
            lines.append(f"# TYPE {name} {metric_def.get('type', 'gauge')}")

        def labelled(name: str, label: str, values: Dict[str, int]):
            header(name)
            for key, value in sorted(values.items()):
                lines.append(f'{name}{{{label}="{key}"}} {value}')

        labelled("fitsettle_fetches_total", "outcome", self._fetches)

        header("fitsettle_relay_errors_total")
        lines.append(f"fitsettle_relay_errors_total {self._relay_errors}")

        header("fitsettle_records_parsed_total")
        lines.append(f"fitsettle_records_parsed_total {self._records_parsed}")
        header("fitsettle_records_discarded_total")
        lines.append(f"fitsettle_records_discarded_total {self._records_discarded}")

        labelled("fitsettle_cache_requests_total", "result", self._cache)
        labelled("fitsettle_distributions_total", "status", self._distributions)
        labelled("fitsettle_payments_total", "outcome", self._payments)

        header("fitsettle_sats_paid_total")
        lines.append(f"fitsettle_sats_paid_total {self._sats_paid}")

        if self._fetch_count > 0:
            header("fitsettle_fetch_duration_seconds")
            # bucket counts are already cumulative
            for bucket in self.FETCH_BUCKETS:
                count = self._fetch_buckets[bucket]
                lines.append(f'fitsettle_fetch_duration_seconds_bucket{{le="{bucket}"}} {count}')
            lines.append(
                f'fitsettle_fetch_duration_seconds_bucket{{le="+Inf"}} {self._fetch_buckets[float("inf")]}'
            )
            lines.append(f"fitsettle_fetch_duration_seconds_sum {self._fetch_sum}")
            lines.append(f"fitsettle_fetch_duration_seconds_count {self._fetch_count}")

        header("fitsettle_uptime_seconds")
        lines.append(f"fitsettle_uptime_seconds {time.time() - self._start_time}")

        return "\n".join(lines) + "\n"

    def get_stats(self) -> Dict[str, Any]:
        """
        Get metrics as a dictionary (for JSON APIs).

        Returns:
            Dictionary of metric values
        """
        return {
            "fetches": dict(self._fetches),
            "relay_errors": self._relay_errors,
            "records_parsed": self._records_parsed,
            "records_discarded": self._records_discarded,
            "cache": dict(self._cache),
            "distributions": dict(self._distributions),
            "payments": dict(self._payments),
            "sats_paid": self._sats_paid,
            "uptime_seconds": time.time() - self._start_time,
        }

    def reset_counters(self) -> None:
        """Reset all counters (useful for testing)."""
        self._fetches = {"complete": 0, "partial": 0}
        self._relay_errors = 0
        self._records_parsed = 0
        self._records_discarded = 0
        self._cache: Dict[str, int] = {"hit": 0, "miss": 0, "stale": 0}
        self._distributions: Dict[str, int] = {}
        self._payments = {"sent": 0, "failed": 0}
        self._sats_paid = 0
        self._fetch_buckets = {b: 0 for b in self.FETCH_BUCKETS}
        self._fetch_buckets[float('inf')] = 0
        self._fetch_sum = 0.0
        self._fetch_count = 0
