"""Wiring of the orchestrator services for one process."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .channels import ChannelRegistry
from .config import RunwireConfig, load_config
from .constants import DEFAULT_DATABASE_URL
from .credentials import CredentialMaterializer, OAuthTokenClient
from .db import RunStore
from .events import RunEvents
from .queue import ClaimQueue
from .runs import RunService
from .security import TokenAuthority
from .transports import BaseTransport, get_transport
from .work_orders import WorkOrderService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: RunwireConfig
    store: RunStore
    transport: BaseTransport
    events: RunEvents
    tokens: TokenAuthority
    runs: RunService
    work_orders: WorkOrderService
    queue: ClaimQueue
    credentials: CredentialMaterializer
    registry: ChannelRegistry

    async def start(self) -> None:
        await self.store.init_db()
        await self.transport.connect()
        logger.info(f"Runtime started with database {self.store.database_url}")

    async def stop(self) -> None:
        await self.transport.disconnect()
        await self.store.dispose()


def build_runtime(
    config: Optional[RunwireConfig] = None,
    transport: Optional[BaseTransport] = None,
    oauth_client: Optional[OAuthTokenClient] = None,
) -> Runtime:
    """Build every service from configuration.

    Args:
        config: Loaded configuration; read from ``RUNWIRE_CONFIG`` when omitted.
        transport: Event transport override, e.g. a shared in-memory one in tests.
        oauth_client: OAuth client override, e.g. one on an ``httpx.MockTransport``.
    """
    config = config or load_config()
    store = RunStore(
        config.database_url or DEFAULT_DATABASE_URL,
        max_transition_retries=config.queue.max_transition_retries,
    )
    transport = transport or get_transport(config=config)
    events = RunEvents(transport)
    tokens = TokenAuthority(config.tokens)
    runs = RunService(store, events)
    registry = ChannelRegistry()
    runs.add_kill_listener(registry.kill)
    return Runtime(
        config=config,
        store=store,
        transport=transport,
        events=events,
        tokens=tokens,
        runs=runs,
        work_orders=WorkOrderService(store, events, config.queue.default_run_timeout_ms),
        queue=ClaimQueue(store, tokens, runs, events, config.queue),
        credentials=CredentialMaterializer(
            store,
            config.oauth,
            oauth_client or OAuthTokenClient(timeout=config.oauth.http_timeout),
        ),
        registry=registry,
    )
