from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.observability.log import configure_logging

__all__ = ["ResilienceEvent", "configure_logging"]
