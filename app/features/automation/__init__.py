"""
Lifecycle automation feature package.

Everything the automation engine needs lives in this vertical slice:
domain models, repositories, services (dispatcher, reminders, hire flow,
sweeps, engine) and the ops API router.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as automation_router  # noqa: F401
from .services.engine import AutomationEngine  # noqa: F401
from .domain.models import QueuedAction, ActionKind, ActionStatus, StageTransition  # noqa: F401
