"""Wiring of workers, clients, and gates for one worker process."""

from __future__ import annotations

import dataclasses
import typing as typ

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from auditrelay.credentials import CredentialConfig, FernetCredentialProvider
from auditrelay.fetch.client import GoogleReportsClient, ReportsClientConfig
from auditrelay.fetch.worker import FetchConfig, FetchWorker
from auditrelay.forward.delivery import WebhookClientConfig, WebhookDeliveryClient
from auditrelay.forward.worker import ForwardWorker
from auditrelay.metrics import LoggingMetricsSink
from auditrelay.queue.gates import LaneGate, build_rate_limit_backend
from auditrelay.queue.lanes import Lane
from auditrelay.store.events import EventStore
from auditrelay.store.sources import SourceRepository

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import contextlib

    from auditrelay.config import PipelineConfig
    from auditrelay.credentials import CredentialProvider
    from auditrelay.fetch.client import RemoteLogClient
    from auditrelay.fetch.worker import ForwardEnqueuer
    from auditrelay.forward.delivery import DeliveryClient
    from auditrelay.metrics import MetricsSink

type SessionFactory = async_sessionmaker[AsyncSession]
type RemoteClientFactory = cabc.Callable[
    [], contextlib.AbstractAsyncContextManager[RemoteLogClient]
]
type DeliveryClientFactory = cabc.Callable[
    [], contextlib.AbstractAsyncContextManager[DeliveryClient]
]


@dataclasses.dataclass(slots=True)
class PipelineResources:
    """Long-lived collaborators shared by every job in a worker process.

    HTTP clients are not held here: each job opens its own through the
    factories because ``asyncio.run`` gives every job a fresh event loop.
    """

    config: PipelineConfig
    session_factory: SessionFactory
    credentials: CredentialProvider
    metrics: MetricsSink
    gates: dict[Lane, LaneGate]
    remote_client_factory: RemoteClientFactory
    delivery_client_factory: DeliveryClientFactory

    def fetch_worker(
        self, client: RemoteLogClient, queue: ForwardEnqueuer
    ) -> FetchWorker:
        """Return a fetch worker using ``client`` for this job."""
        return FetchWorker(
            SourceRepository(self.session_factory),
            EventStore(self.session_factory),
            self.credentials,
            client,
            queue,
            config=FetchConfig(
                initial_lookback=self.config.initial_lookback,
                min_window=self.config.min_window,
            ),
            metrics=self.metrics,
        )

    def forward_worker(self, delivery: DeliveryClient) -> ForwardWorker:
        """Return a forward worker using ``delivery`` for this job."""
        return ForwardWorker(
            SourceRepository(self.session_factory),
            EventStore(self.session_factory),
            delivery,
            metrics=self.metrics,
        )


def build_gates(config: PipelineConfig) -> dict[Lane, LaneGate]:
    """Create the admission gates of both lanes from ``config``."""
    backend = build_rate_limit_backend(config.broker_url)
    return {
        Lane.FETCH: LaneGate(backend, Lane.FETCH, config.fetch_lane),
        Lane.FORWARD: LaneGate(backend, Lane.FORWARD, config.forward_lane),
    }


def build_resources(
    config: PipelineConfig,
    *,
    session_factory: SessionFactory | None = None,
    credentials: CredentialProvider | None = None,
    metrics: MetricsSink | None = None,
) -> PipelineResources:
    """Assemble production collaborators from ``config`` and the environment.

    The engine uses ``NullPool`` because connections must not outlive the
    per-job event loop.
    """
    if session_factory is None:
        engine = create_async_engine(config.require_database_url(), poolclass=NullPool)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
    if credentials is None:
        credentials = FernetCredentialProvider.from_config(CredentialConfig.from_env())

    reports_config = ReportsClientConfig(max_pages=config.max_pages)
    webhook_config = WebhookClientConfig(
        timeout_s=config.webhook_timeout.total_seconds()
    )
    return PipelineResources(
        config=config,
        session_factory=session_factory,
        credentials=credentials,
        metrics=metrics or LoggingMetricsSink(),
        gates=build_gates(config),
        remote_client_factory=lambda: GoogleReportsClient(reports_config),
        delivery_client_factory=lambda: WebhookDeliveryClient(webhook_config),
    )


__all__ = ["PipelineResources", "build_gates", "build_resources"]
