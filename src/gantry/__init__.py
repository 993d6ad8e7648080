from .config import Settings
from .definition import load_definition, load_definition_from_dict
from .errors import GantryError
from .model import Job, JobInstance, Run, Status, Step, Trigger, WorkflowDefinition
from .runner import Scheduler, static_approver
from .store import StateStore

__all__ = [
    "Settings",
    "load_definition",
    "load_definition_from_dict",
    "GantryError",
    "Job",
    "JobInstance",
    "Run",
    "Status",
    "Step",
    "Trigger",
    "WorkflowDefinition",
    "Scheduler",
    "static_approver",
    "StateStore",
]
