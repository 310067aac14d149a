from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class Project(SQLModel, table=True):
    """Project boundary: only the flags the orchestrator consumes."""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    retention_policy: str = Field(default="retain_all")
    allow_support_access: bool = False
    inserted_at: datetime = Field(default_factory=utcnow)


class User(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    email: str
    support_user: bool = False


class ProjectUser(SQLModel, table=True):
    """Membership of a user in a project; role is viewer, editor, admin or owner."""

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    role: str = Field(default="viewer")


class Credential(SQLModel, table=True):
    """A named secret owned by a user and shared into projects."""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    schema_name: str = Field(default="raw")
    body: Optional[Any] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    user_id: Optional[str] = Field(default=None, foreign_key="user.id")
    updated_at: datetime = Field(default_factory=utcnow)


class ProjectCredential(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    credential_id: str = Field(foreign_key="credential.id", index=True)


class Workflow(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    project_id: str = Field(foreign_key="project.id", index=True)


class Trigger(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(foreign_key="workflow.id", index=True)
    type: str = Field(default="webhook")
    enabled: bool = True


class Job(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(foreign_key="workflow.id", index=True)
    name: str
    body: str = ""
    adaptor: str = "@openfn/language-common@latest"
    credential_id: Optional[str] = Field(default=None, foreign_key="credential.id")


class Edge(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(foreign_key="workflow.id", index=True)
    source_trigger_id: Optional[str] = Field(default=None, foreign_key="trigger.id")
    source_job_id: Optional[str] = Field(default=None, foreign_key="job.id")
    target_job_id: str = Field(foreign_key="job.id")
    condition_type: str = Field(default="always")
    condition_expression: Optional[str] = None
    enabled: bool = True


class Dataclip(SQLModel, table=True):
    """Immutable JSON payload; ``body`` and ``request`` hold raw JSON text."""

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    type: str = Field(default="http_request")
    body: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    request: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    wiped_at: Optional[datetime] = None
    inserted_at: datetime = Field(default_factory=utcnow)


class WorkOrder(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    workflow_id: str = Field(foreign_key="workflow.id", index=True)
    trigger_id: Optional[str] = Field(default=None, foreign_key="trigger.id")
    dataclip_id: Optional[str] = Field(default=None, foreign_key="dataclip.id")
    state: str = Field(default="pending")
    last_activity: datetime = Field(default_factory=utcnow)
    inserted_at: datetime = Field(default_factory=utcnow)


class Run(SQLModel, table=True):
    """One execution attempt of a work order."""

    id: str = Field(default_factory=new_id, primary_key=True)
    work_order_id: str = Field(foreign_key="workorder.id", index=True)
    starting_trigger_id: Optional[str] = Field(default=None, foreign_key="trigger.id")
    starting_job_id: Optional[str] = Field(default=None, foreign_key="job.id")
    dataclip_id: Optional[str] = Field(default=None, foreign_key="dataclip.id")
    created_by_id: Optional[str] = Field(default=None, foreign_key="user.id")
    state: str = Field(default="available", index=True)
    # 0 = immediate (manual runs and retries), 1 = normal
    priority: int = 1
    options: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    worker_name: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    claimed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    inserted_at: datetime = Field(default_factory=utcnow)


class Step(SQLModel, table=True):
    """One job's execution; shared by every run that reuses it."""

    id: str = Field(default_factory=new_id, primary_key=True)
    job_id: str = Field(foreign_key="job.id")
    credential_id: Optional[str] = Field(default=None, foreign_key="credential.id")
    input_dataclip_id: Optional[str] = Field(default=None, foreign_key="dataclip.id")
    output_dataclip_id: Optional[str] = Field(default=None, foreign_key="dataclip.id")
    exit_reason: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    inserted_at: datetime = Field(default_factory=utcnow)


class RunStep(SQLModel, table=True):
    run_id: str = Field(foreign_key="run.id", primary_key=True)
    step_id: str = Field(foreign_key="step.id", primary_key=True)
    inserted_at: datetime = Field(default_factory=utcnow)


class LogLine(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(foreign_key="run.id", index=True)
    step_id: Optional[str] = Field(default=None, foreign_key="step.id")
    source: Optional[str] = None
    level: Optional[str] = None
    message: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime
