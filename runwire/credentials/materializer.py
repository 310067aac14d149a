"""Resolving credentials for a run, refreshing OAuth tokens on the way."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from sqlalchemy import select

from ..config import OAuthConfig
from ..db import Credential, Job, Project, ProjectCredential, RunStore, User, utcnow
from ..errors import CredentialAccessDenied, NotFound, UpstreamError
from .oauth import OAuthTokenClient, is_oauth_body, merge_token_response, still_fresh

logger = logging.getLogger(__name__)

CREDENTIAL_NOT_FOUND = "Credential not found!"


class CredentialMaterializer:
    """Hands a credential body to a run's worker.

    Refreshes of one credential are single-flight: concurrent callers await
    the same task, so a single-use refresh token is spent once.
    """

    def __init__(
        self,
        store: RunStore,
        config: Optional[OAuthConfig] = None,
        client: Optional[OAuthTokenClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or OAuthConfig()
        self.client = client or OAuthTokenClient(timeout=self.config.http_timeout)
        self.clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}

    async def materialize(
        self, credential_id: str, workflow_id: str, project_id: str
    ) -> Credential:
        """Load, authorize and, when near expiry, refresh a credential.

        Raises:
            NotFound: no job of the workflow uses this credential.
            CredentialAccessDenied: the credential is not shared with the project.
            UpstreamError: the OAuth provider refused or could not be reached.
        """
        credential = await self._load(credential_id, workflow_id)
        await self._authorize(credential, project_id)

        if not is_oauth_body(credential.body):
            return credential
        if still_fresh(credential.body, self.config.refresh_margin_seconds, self.clock()):
            return credential
        return await self._refresh_once(credential)

    async def _load(self, credential_id: str, workflow_id: str) -> Credential:
        async with self.store.session() as session:
            result = await session.execute(
                select(Credential)
                .join(Job, Job.credential_id == Credential.id)
                .where(Job.workflow_id == workflow_id, Credential.id == credential_id)
            )
            credential = result.scalars().first()
        if credential is None:
            raise NotFound(CREDENTIAL_NOT_FOUND)
        return credential

    async def _authorize(self, credential: Credential, project_id: str) -> None:
        async with self.store.session() as session:
            shared = await session.execute(
                select(ProjectCredential.id).where(
                    ProjectCredential.project_id == project_id,
                    ProjectCredential.credential_id == credential.id,
                )
            )
            if shared.first() is not None:
                return

            owner = await session.get(User, credential.user_id) if credential.user_id else None
            project = await session.get(Project, project_id)
            if owner is not None and owner.support_user and project and project.allow_support_access:
                logger.info(f"Support access to credential {credential.id} for project {project_id}")
                return
        raise CredentialAccessDenied(f"credential {credential.id} is not shared with this project")

    async def _refresh_once(self, credential: Credential) -> Credential:
        task = self._inflight.get(credential.id)
        if task is None:
            task = asyncio.create_task(self._refresh(credential.id))
            self._inflight[credential.id] = task
            task.add_done_callback(lambda _t, key=credential.id: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _refresh(self, credential_id: str) -> Credential:
        async with self.store.session() as session:
            credential = await session.get(Credential, credential_id, populate_existing=True)
            body = dict(credential.body or {})
            # another process may have refreshed it since we looked
            if still_fresh(body, self.config.refresh_margin_seconds, self.clock()):
                return credential

            client = self.config.clients.get(credential.schema_name)
            if client is None:
                logger.warning(
                    f"No OAuth client configured for schema {credential.schema_name!r}; "
                    f"returning credential {credential_id} as stored"
                )
                return credential

            try:
                response = await self.client.refresh(client, body["refresh_token"])
            except UpstreamError as exc:
                logger.error(f"Refreshing credential {credential_id} failed: {exc.message}")
                raise

            credential.body = merge_token_response(body, response, self.clock())
            credential.updated_at = utcnow()
            session.add(credential)
            await session.commit()
            await session.refresh(credential)

        logger.info(f"Refreshed OAuth token for credential {credential_id}")
        return credential
