"""Ports: interfaces the host harness implements.

The resilience core depends only on these abstractions: it never reads
provider configuration from disk and never talks to a metrics backend
directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from harness_resilience.observability.events import ResilienceEvent


# ═══════════════════════════════════════════════════════════════
#  Provider catalog
# ═══════════════════════════════════════════════════════════════
class ProviderCatalog(ABC):
    """Configured providers and their models, in preference order."""

    @abstractmethod
    def providers(self) -> list[str]: ...

    @abstractmethod
    def models(self, provider: str) -> list[str]: ...

    def tier_of(self, provider: str, model: str | None) -> str | None:
        """Model tier name (``mini`` / ``standard`` / ``advanced``), if known."""
        return None


# ═══════════════════════════════════════════════════════════════
#  Metrics sink
# ═══════════════════════════════════════════════════════════════
class MetricsSink(ABC):
    """Receives observations: transitions, outcomes, retries, fallbacks."""

    @abstractmethod
    def record_event(self, event: ResilienceEvent) -> None: ...


class NullMetricsSink(MetricsSink):
    def record_event(self, event: ResilienceEvent) -> None:
        return None
