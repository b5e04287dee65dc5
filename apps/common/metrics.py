"""Lightweight in-memory Prometheus-compatible counters.

No external dependencies (no prometheus_client). Thread-safe.
"""
from __future__ import annotations

import threading
from typing import Dict


class Counter:
    def __init__(self, name: str, help_text: str = ""):
        self.name = name
        self.help = help_text
        self._value = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1):
        with self._lock:
            self._value += amount

    def get(self) -> int:
        with self._lock:
            return self._value


class Registry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str = "") -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name, help_text)
            return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {name: c.get() for name, c in self._counters.items()}

    def render_text(self) -> str:
        """Render all counters in Prometheus text exposition format."""
        lines = []
        with self._lock:
            for c in self._counters.values():
                if c.help:
                    lines.append(f"# HELP {c.name} {c.help}")
                lines.append(f"# TYPE {c.name} counter")
                lines.append(f"{c.name} {c.get()}")
        return "\n".join(lines) + "\n"


# Global singleton registry
REG = Registry()

READS_APPENDED = REG.counter("campmeter_reads_appended_total", "Meter reads accepted by the ledger")
BILLS_CREATED = REG.counter("campmeter_bills_created_total", "Billing events persisted")
BILLS_DEDUPED = REG.counter("campmeter_bills_deduped_total", "bill_meter calls answered from an existing event")
CONFLICTS_RETRIED = REG.counter("campmeter_conflicts_retried_total", "Per-meter lock conflicts retried")


__all__ = ["Counter", "Registry", "REG", "READS_APPENDED", "BILLS_CREATED", "BILLS_DEDUPED", "CONFLICTS_RETRIED"]
