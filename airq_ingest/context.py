"""Contexto de aplicación: dueño de todos los servicios con estado.

Sustituye a los singletons de módulo: el listener, el buffer de métricas,
el hub de notificaciones y el sweep viven aquí y se inyectan en la app
FastAPI (``app.state.context``) o en los jobs CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import get_engine

from .core.clock import utc_now
from .fanout.notifier import FanoutNotifier
from .fanout.observers import ObserverWorker, RedisStreamObserver
from .infrastructure.persistence.store import SqlDocumentStore
from .infrastructure.persistence.tables import create_schema
from .metrics.buffer import MetricsBuffer, MetricsBufferConfig
from .mqtt.listener import BrokerListener, ClientFactory, ListenerConfig
from .pipeline.dedup import DedupGuard
from .pipeline.ingestion import IngestionPipeline
from .rate_limiter import CounterStore, RateLimitConfig, RedisCounterStore, WebhookRateLimiter
from .status.engine import StatusThresholds
from .status.sweeper import StatusSweeper, StatusSweepScheduler

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    store: SqlDocumentStore
    pipeline: IngestionPipeline
    notifier: FanoutNotifier
    metrics_buffer: MetricsBuffer
    rate_limiter: WebhookRateLimiter
    sweeper: StatusSweeper
    scheduler: Optional[StatusSweepScheduler] = None
    listener: Optional[BrokerListener] = None
    observers: List[ObserverWorker] = field(default_factory=list)
    webhook_secret: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)

    @classmethod
    def build(
        cls,
        *,
        engine: Engine,
        webhook_secret: Optional[str] = None,
        thresholds: Optional[StatusThresholds] = None,
        max_future_skew: timedelta = timedelta(minutes=5),
        rate_limit_config: Optional[RateLimitConfig] = None,
        counter_store: Optional[CounterStore] = None,
        metrics_config: Optional[MetricsBufferConfig] = None,
        sweep_interval_seconds: Optional[float] = None,
        listener_config: Optional[ListenerConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        on_listener_fatal: Optional[Callable[[BrokerListener], None]] = None,
        create_tables: bool = True,
    ) -> "AppContext":
        """Ensambla los servicios.

        Args:
            engine: engine SQLAlchemy del almacén
            webhook_secret: secreto Bearer del webhook
            sweep_interval_seconds: None desactiva el sweep programado
            listener_config: None desactiva el listener MQTT
            client_factory: cliente paho alternativo (tests)
        """
        if create_tables:
            create_schema(engine)

        thresholds = thresholds or StatusThresholds.from_env()
        store = SqlDocumentStore(engine)
        notifier = FanoutNotifier()
        metrics_buffer = MetricsBuffer(store.write_events, metrics_config or MetricsBufferConfig.from_env())
        pipeline = IngestionPipeline(
            store,
            dedup=DedupGuard(),
            metrics_buffer=metrics_buffer,
            notifier=notifier,
            thresholds=thresholds,
            max_future_skew=max_future_skew,
        )
        sweeper = StatusSweeper(store, thresholds)

        scheduler = None
        if sweep_interval_seconds:
            scheduler = StatusSweepScheduler(sweeper, sweep_interval_seconds)

        listener = None
        if listener_config is not None:
            listener = BrokerListener(
                listener_config,
                pipeline.handle_broker_message,
                client_factory=client_factory,
                on_fatal=on_listener_fatal,
            )

        return cls(
            store=store,
            pipeline=pipeline,
            notifier=notifier,
            metrics_buffer=metrics_buffer,
            rate_limiter=WebhookRateLimiter(rate_limit_config, counter_store),
            sweeper=sweeper,
            scheduler=scheduler,
            listener=listener,
            webhook_secret=webhook_secret,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AppContext":
        settings = settings or get_settings()
        engine = get_engine(settings)

        counter_store = RedisCounterStore.from_url(settings.redis_url) if settings.redis_url else None
        ctx = cls.build(
            engine=engine,
            webhook_secret=settings.webhook_secret,
            max_future_skew=timedelta(seconds=settings.max_future_skew_seconds),
            counter_store=counter_store,
            sweep_interval_seconds=settings.status_sweep_interval_seconds,
            listener_config=ListenerConfig.from_env() if settings.mqtt_listener_enabled else None,
        )

        if settings.redis_url and settings.redis_stream_enabled:
            observer = RedisStreamObserver.from_url(settings.redis_url)
            ctx.observers.append(ObserverWorker(ctx.notifier, observer, name="redis-stream"))

        return ctx

    def start(self) -> None:
        self.metrics_buffer.start()
        if self.scheduler is not None:
            self.scheduler.start()
        for observer in self.observers:
            observer.start()
        if self.listener is not None:
            self.listener.start()
        logger.info(
            "[APP] Context started listener=%s scheduler=%s observers=%d",
            self.listener is not None,
            self.scheduler is not None,
            len(self.observers),
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Detiene en orden inverso; cada paso acotado por ``timeout``."""
        if self.listener is not None:
            await self.listener.stop(timeout)
        for observer in self.observers:
            observer.stop(timeout)
        if self.scheduler is not None:
            self.scheduler.stop(timeout)
        self.notifier.close()
        self.metrics_buffer.stop(timeout)
        logger.info("[APP] Context stopped")
