from .models import (
    Credential,
    Dataclip,
    Edge,
    Job,
    LogLine,
    Project,
    ProjectCredential,
    ProjectUser,
    Run,
    RunStep,
    Step,
    Trigger,
    User,
    WorkOrder,
    Workflow,
    new_id,
    utcnow,
)
from .store import RunStore

__all__ = [
    "Credential",
    "Dataclip",
    "Edge",
    "Job",
    "LogLine",
    "Project",
    "ProjectCredential",
    "ProjectUser",
    "Run",
    "RunStep",
    "Step",
    "Trigger",
    "User",
    "WorkOrder",
    "Workflow",
    "RunStore",
    "new_id",
    "utcnow",
]
