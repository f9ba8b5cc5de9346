"""
Service layer for the lifecycle automation engine.
"""

from .engine import AutomationEngine, StageChangeResult
from .hire_flow import HireFlowMaterializer
from .policy import StagePolicy, StagePolicyProvider, StagePolicyRegistry
from .reminders import ReminderScheduler
from .stage_email import StageEmailDispatcher
from .sweeps import AutoActivationSweep, IdentityReconciliationSweep

__all__ = [
    "AutomationEngine",
    "StageChangeResult",
    "HireFlowMaterializer",
    "StagePolicy",
    "StagePolicyProvider",
    "StagePolicyRegistry",
    "ReminderScheduler",
    "StageEmailDispatcher",
    "AutoActivationSweep",
    "IdentityReconciliationSweep",
]
