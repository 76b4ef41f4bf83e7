"""
Explicit request context threaded through every service call.

Services never read the actor or event scope from thread-locals or Flask
globals; blueprints build a RequestContext once per request and pass it
down.  Tests build one directly.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RequestContext:
    actor_id: str | None
    event_id: str
    is_staff: bool = False
    timeout_ms: int | None = None

    def log_extra(self, **extra) -> dict:
        return {"event_id": self.event_id, "actor_id": self.actor_id, **extra}
