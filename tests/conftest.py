"""Shared fixtures: a runtime on a throwaway sqlite database and seed data."""

from types import SimpleNamespace
from uuid import uuid4

import pytest

from runwire.config import OAuthClientConfig, OAuthConfig, RunwireConfig, TokenConfig
from runwire.db import (
    Credential,
    Edge,
    Job,
    Project,
    ProjectCredential,
    ProjectUser,
    Trigger,
    User,
    Workflow,
)
from runwire.runtime import build_runtime
from runwire.transports import InMemoryTransport

SECRET = "test-secret-0123456789abcdef0123456789abcdef"
TOKEN_URL = "https://oauth.example.com/token"


@pytest.fixture
def config(tmp_path):
    return RunwireConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'runwire.db'}",
        tokens=TokenConfig(secret=SECRET),
        oauth=OAuthConfig(
            clients={
                "oauth": OAuthClientConfig(
                    token_url=TOKEN_URL, client_id="client-id", client_secret="client-secret"
                )
            }
        ),
    )


@pytest.fixture
def runtime(config):
    return build_runtime(config, transport=InMemoryTransport())


class Harness:
    """Builds a small project/workflow graph and drives runs through it."""

    def __init__(self, runtime):
        self.runtime = runtime

    async def seed(
        self,
        retention_policy="retain_all",
        credential_schema="raw",
        credential_body=None,
        share_credential=True,
        support_owner=False,
        allow_support_access=False,
    ):
        await self.runtime.store.init_db()
        project = Project(
            name="project",
            retention_policy=retention_policy,
            allow_support_access=allow_support_access,
        )
        owner = User(email="owner@example.com", support_user=support_owner)
        editor = User(email="editor@example.com")
        workflow = Workflow(name="workflow", project_id=project.id)
        trigger = Trigger(workflow_id=workflow.id)
        credential = Credential(
            name="credential",
            schema_name=credential_schema,
            body=credential_body if credential_body is not None else {"username": "u", "password": "p4ss"},
            user_id=owner.id,
        )
        first = Job(
            workflow_id=workflow.id,
            name="first",
            body="fn(state => state)",
            credential_id=credential.id,
        )
        second = Job(workflow_id=workflow.id, name="second", body="fn(state => state)")
        third = Job(workflow_id=workflow.id, name="third", body="fn(state => state)")
        edges = [
            Edge(workflow_id=workflow.id, source_trigger_id=trigger.id, target_job_id=first.id),
            Edge(
                workflow_id=workflow.id,
                source_job_id=first.id,
                target_job_id=second.id,
                condition_type="on_job_success",
            ),
            Edge(
                workflow_id=workflow.id,
                source_job_id=second.id,
                target_job_id=third.id,
                condition_type="js_expression",
                condition_expression="state.data.ok",
            ),
        ]
        rows = [project, owner, editor, workflow, trigger, credential, first, second, third, *edges]
        rows.append(ProjectUser(project_id=project.id, user_id=editor.id, role="editor"))
        if share_credential:
            rows.append(ProjectCredential(project_id=project.id, credential_id=credential.id))
        await self.runtime.store.add(*rows)
        return SimpleNamespace(
            project=project,
            owner=owner,
            editor=editor,
            workflow=workflow,
            trigger=trigger,
            credential=credential,
            first=first,
            second=second,
            third=third,
            edges=edges,
        )

    async def work_order(self, seeded, body='{"x": 1}', request='{"method": "POST"}'):
        return await self.runtime.work_orders.create_for_trigger(
            seeded.trigger.id, body, request=request
        )

    async def claimed(self, seeded, **kwargs):
        """Create a work order and claim its run; returns ``(run_id, token)``."""
        _, run = await self.work_order(seeded, **kwargs)
        claimed = await self.runtime.queue.claim(1, "worker-1")
        assert [c.id for c in claimed] == [run.id]
        return run.id, claimed[0].token

    async def started(self, seeded, **kwargs):
        """A started run's context and run token."""
        run_id, token = await self.claimed(seeded, **kwargs)
        await self.runtime.runs.start_run(run_id)
        return await self.runtime.runs.get_for_worker(run_id), token

    @staticmethod
    def step_id():
        return str(uuid4())


@pytest.fixture
def harness(runtime):
    return Harness(runtime)
