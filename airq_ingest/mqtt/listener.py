"""Listener MQTT persistente para lecturas de calidad del aire.

Máquina de estados:

    disconnected → connecting → connected → subscribing → subscribed
         ↑              │            │             │            │
         └──────────────┴────────────┴─────────────┴────────────┘  error de transporte
    tras max_reconnect_attempts fallos consecutivos → failed (señal fatal de salud)

Un único thread dueño maneja el cliente paho con ``client.loop()``: no se
usa loop_start() ni la reconexión automática de paho, así que nunca hay
dos intentos de conexión en vuelo y los mensajes se procesan en el orden
en que llegan.

Al conectar publica un registro de presencia ``online`` (retenido) en
``system/air-quality-listener/status`` y lo repite como heartbeat; el
last-will publica ``offline`` si el proceso muere sin despedirse.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from ..core.clock import to_iso_z, utc_now
from ..core.topics import LISTENER_STATUS_TOPIC, SENSOR_TOPIC_FILTER, extract_sensor_id
from ..metrics.prometheus import LISTENER_CONNECTED, LISTENER_RECONNECTS
from .stats import ListenerStats

logger = logging.getLogger(__name__)

# (sensor_id, payload, topic)
MessageHandler = Callable[[str, bytes, str], Any]
ClientFactory = Callable[[str], "mqtt.Client"]


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    FAILED = "failed"


_LINK_UP_STATES = (ListenerState.CONNECTED, ListenerState.SUBSCRIBING, ListenerState.SUBSCRIBED)


@dataclass
class ListenerConfig:
    """Configuración del listener."""
    broker_host: str = "localhost"
    broker_port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = False
    client_id_prefix: str = "air-quality-listener"
    topic: str = SENSOR_TOPIC_FILTER
    qos: int = 1
    status_topic: str = LISTENER_STATUS_TOPIC
    keepalive: int = 60
    connect_timeout: float = 10.0
    reconnect_interval: float = 5.0
    max_reconnect_attempts: int = 10
    heartbeat_interval: float = 30.0
    loop_timeout: float = 0.5
    offline_grace: float = 0.5

    @classmethod
    def from_env(cls) -> "ListenerConfig":
        return cls(
            broker_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
            broker_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
            username=os.getenv("MQTT_USERNAME") or None,
            password=os.getenv("MQTT_PASSWORD") or None,
            tls=os.getenv("MQTT_TLS", "0").strip().lower() in ("1", "true", "yes"),
            connect_timeout=float(os.getenv("MQTT_CONNECT_TIMEOUT_SECONDS", "10")),
            reconnect_interval=float(os.getenv("MQTT_RECONNECT_INTERVAL_SECONDS", "5")),
            max_reconnect_attempts=int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "10")),
            heartbeat_interval=float(os.getenv("MQTT_HEARTBEAT_INTERVAL_SECONDS", "30")),
        )


def _default_client_factory(client_id: str) -> "mqtt.Client":
    return mqtt.Client(
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )


def _is_failure(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return reason_code >= 0x80


class BrokerListener:
    """Suscripción persistente a ``sensors/+/data`` con reconexión acotada."""

    def __init__(
        self,
        config: ListenerConfig,
        handler: MessageHandler,
        *,
        client_factory: Optional[ClientFactory] = None,
        on_fatal: Optional[Callable[["BrokerListener"], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Inicializa el listener.

        Args:
            config: broker, topics y tiempos
            handler: recibe (sensor_id, payload, topic) de cada mensaje válido
            client_factory: construye el cliente paho (inyectable en tests)
            on_fatal: se invoca una vez al agotar los reintentos
            clock: reloj monotónico
        """
        self._config = config
        self._handler = handler
        self._client_factory = client_factory or _default_client_factory
        self._on_fatal = on_fatal
        self._clock = clock

        self.client_id = f"{config.client_id_prefix}-{uuid.uuid4().hex[:8]}"
        self.stats = ListenerStats()

        self._client: Optional[mqtt.Client] = None
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._state = ListenerState.DISCONNECTED
        self._stopping = False

        self._connect_in_flight = False
        self._consecutive_failures = 0
        self._next_attempt_at = 0.0
        self._phase_deadline: Optional[float] = None
        self._next_heartbeat_at = 0.0
        self._subscribe_mid: Optional[int] = None

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    @property
    def state(self) -> ListenerState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "BrokerListener":
        """Arranca el thread dueño. Idempotente: si ya corre, retorna la misma instancia."""
        with self._start_lock:
            if self.is_running:
                logger.info("[MQTT] Listener already running client_id=%s", self.client_id)
                return self

            self._stop_event.clear()
            self._stopping = False
            self._consecutive_failures = 0
            self._next_attempt_at = 0.0
            self._set_state(ListenerState.DISCONNECTED)

            self._client = self._build_client()
            self.stats.mark_started()
            self._thread = threading.Thread(target=self._run, name="airq-mqtt-listener", daemon=True)
            self._thread.start()

            logger.info(
                "[MQTT] Listener started client_id=%s broker=%s:%d topic=%s",
                self.client_id,
                self._config.broker_host,
                self._config.broker_port,
                self._config.topic,
            )
            return self

    def shutdown(self, timeout: float = 5.0) -> None:
        """Publica ``offline``, espera un margen para su envío y cierra el transporte."""
        with self._start_lock:
            thread = self._thread
            if thread is None:
                return

            deadline = time.monotonic() + timeout
            self._stopping = True

            if self.state in _LINK_UP_STATES and thread.is_alive():
                info = self._publish_status("offline")
                self._wait_published(info, min(self._config.offline_grace, timeout))

            if self._client is not None:
                try:
                    self._client.disconnect()
                except (OSError, ValueError) as e:
                    logger.warning("[MQTT] Disconnect error: %s", e)

            self._stop_event.set()
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning("[MQTT] Listener thread still alive after %.1fs, abandoning it", timeout)
            self._thread = None

            if self.state is not ListenerState.FAILED:
                self._set_state(ListenerState.DISCONNECTED)
            self.stats.mark_disconnected()

            logger.info(
                "[MQTT] Listener stopped. Stats: received=%d dropped=%d reconnects=%d errors=%d",
                self.stats.messages_received,
                self.stats.messages_dropped,
                self.stats.reconnect_count,
                self.stats.errors,
            )

    async def stop(self, timeout: float = 5.0) -> None:
        await asyncio.to_thread(self.shutdown, timeout)

    # ------------------------------------------------------------------
    # Observabilidad
    # ------------------------------------------------------------------

    def health_check(self) -> dict:
        state = self.state
        return {
            "healthy": state is ListenerState.SUBSCRIBED,
            "state": state.value,
            "fatal": state is ListenerState.FAILED,
            "running": self.is_running,
            "consecutive_failures": self._consecutive_failures,
            "max_reconnect_attempts": self._config.max_reconnect_attempts,
        }

    def get_status(self) -> dict:
        state = self.state
        status = {
            "connected": state in _LINK_UP_STATES,
            "state": state.value,
            "client_id": self.client_id,
            "broker": f"{self._config.broker_host}:{self._config.broker_port}",
            "topic": self._config.topic,
        }
        status.update(self.stats.to_dict())
        return status

    # ------------------------------------------------------------------
    # Thread dueño
    # ------------------------------------------------------------------

    def _build_client(self) -> "mqtt.Client":
        cfg = self._config
        client = self._client_factory(self.client_id)

        if cfg.username:
            client.username_pw_set(cfg.username, cfg.password)
        if cfg.tls:
            client.tls_set()

        client.will_set(cfg.status_topic, payload=self._status_payload("offline"), qos=1, retain=True)
        client.connect_timeout = cfg.connect_timeout

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        return client

    def _run(self) -> None:
        while not self._stop_event.is_set():
            state = self.state

            if state is ListenerState.FAILED:
                break

            if state is ListenerState.DISCONNECTED:
                if self._stopping:
                    self._stop_event.wait(self._config.loop_timeout)
                    continue
                wait = self._next_attempt_at - self._clock()
                if wait > 0:
                    self._stop_event.wait(min(wait, self._config.loop_timeout))
                    continue
                self._attempt_connect()
                continue

            rc = self._client.loop(timeout=self._config.loop_timeout)
            if (
                rc != mqtt.MQTT_ERR_SUCCESS
                and not self._stopping
                and self.state not in (ListenerState.DISCONNECTED, ListenerState.FAILED)
            ):
                self._handle_failure(f"network loop rc={rc}")
                continue

            self._check_phase_deadline()
            self._maybe_heartbeat()

        logger.debug("[MQTT] Listener loop exited state=%s", self.state.value)

    def _attempt_connect(self) -> None:
        if self._connect_in_flight:
            return

        cfg = self._config
        self._connect_in_flight = True
        self._set_state(ListenerState.CONNECTING)
        self._phase_deadline = self._clock() + cfg.connect_timeout

        logger.info(
            "[MQTT] Connecting to %s:%d (attempt %d/%d)",
            cfg.broker_host,
            cfg.broker_port,
            self._consecutive_failures + 1,
            cfg.max_reconnect_attempts,
        )
        try:
            self._client.connect(cfg.broker_host, cfg.broker_port, keepalive=cfg.keepalive)
        except (OSError, ValueError) as e:
            self._handle_failure(f"connect failed: {e}")

    def _handle_failure(self, reason: str) -> None:
        """Error de transporte: vuelve a disconnected o pasa a failed."""
        cfg = self._config
        self._connect_in_flight = False
        self._phase_deadline = None
        self._subscribe_mid = None
        self._consecutive_failures += 1
        self.stats.record_error(reason)
        self.stats.mark_disconnected()

        if self._consecutive_failures >= cfg.max_reconnect_attempts:
            self._set_state(ListenerState.FAILED)
            logger.critical(
                "[MQTT] Giving up after %d consecutive failures (last: %s)",
                self._consecutive_failures,
                reason,
            )
            self._fire_fatal()
            return

        self._set_state(ListenerState.DISCONNECTED)
        self._next_attempt_at = self._clock() + cfg.reconnect_interval
        self.stats.record_reconnect()
        LISTENER_RECONNECTS.inc()
        logger.warning(
            "[MQTT] %s; reconnecting in %.1fs (%d/%d)",
            reason,
            cfg.reconnect_interval,
            self._consecutive_failures,
            cfg.max_reconnect_attempts,
        )

    def _fire_fatal(self) -> None:
        if self._on_fatal is None:
            return
        try:
            self._on_fatal(self)
        except Exception:
            logger.exception("[MQTT] on_fatal callback failed")

    def _check_phase_deadline(self) -> None:
        if self._phase_deadline is None:
            return
        if self.state in (ListenerState.CONNECTING, ListenerState.SUBSCRIBING) and self._clock() > self._phase_deadline:
            self._handle_failure(f"{self.state.value} timeout after {self._config.connect_timeout:.0f}s")

    def _maybe_heartbeat(self) -> None:
        if self.state not in _LINK_UP_STATES:
            return
        now = self._clock()
        if now >= self._next_heartbeat_at:
            self._publish_status("online")
            self._next_heartbeat_at = now + self._config.heartbeat_interval

    # ------------------------------------------------------------------
    # Callbacks paho (se ejecutan dentro de client.loop(), en el thread dueño)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        self._connect_in_flight = False
        if rc != 0:
            self._handle_failure(f"connection refused rc={rc}")
            return

        cfg = self._config
        self._set_state(ListenerState.CONNECTED)
        self.stats.mark_connected()
        logger.info("[MQTT] Connected to %s:%d", cfg.broker_host, cfg.broker_port)

        self._publish_status("online")
        self._next_heartbeat_at = self._clock() + cfg.heartbeat_interval

        result, mid = client.subscribe(cfg.topic, qos=cfg.qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._handle_failure(f"subscribe request failed rc={result}")
            return
        self._subscribe_mid = mid
        self._phase_deadline = self._clock() + cfg.connect_timeout
        self._set_state(ListenerState.SUBSCRIBING)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        if mid != self._subscribe_mid:
            return
        if any(_is_failure(rc) for rc in reason_code_list):
            self._handle_failure(f"subscription to {self._config.topic} refused")
            try:
                client.disconnect()
            except (OSError, ValueError) as e:
                logger.debug("[MQTT] Disconnect after refused subscription failed: %s", e)
            return

        self._phase_deadline = None
        self._consecutive_failures = 0
        self._set_state(ListenerState.SUBSCRIBED)
        logger.info("[MQTT] Subscribed to %s qos=%d", self._config.topic, self._config.qos)

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        if self._stopping:
            self._set_state(ListenerState.DISCONNECTED)
            self.stats.mark_disconnected()
            logger.info("[MQTT] Disconnected (shutdown)")
            return
        if self.state in (ListenerState.DISCONNECTED, ListenerState.FAILED):
            return
        self._handle_failure(f"disconnected rc={rc}")

    def _on_message(self, client, userdata, msg):
        self.stats.record_message()

        sensor_id = extract_sensor_id(msg.topic)
        if sensor_id is None:
            self.stats.record_dropped()
            logger.warning("[MQTT] Ignoring message on unexpected topic=%s", msg.topic)
            return

        try:
            self._handler(sensor_id, msg.payload, msg.topic)
        except Exception as e:
            # Un handler roto no debe tumbar el loop de red
            self.stats.record_error(f"handler: {type(e).__name__}")
            logger.exception("[MQTT] Handler failed topic=%s", msg.topic)

    # ------------------------------------------------------------------
    # Presencia
    # ------------------------------------------------------------------

    def _status_payload(self, status: str) -> str:
        return json.dumps({
            "status": status,
            "clientId": self.client_id,
            "timestamp": to_iso_z(utc_now()),
            "messagesReceived": self.stats.messages_received,
        })

    def _publish_status(self, status: str):
        try:
            return self._client.publish(
                self._config.status_topic,
                self._status_payload(status),
                qos=1,
                retain=True,
            )
        except (OSError, ValueError, RuntimeError) as e:
            logger.warning("[MQTT] Status publish failed status=%s: %s", status, e)
            return None

    @staticmethod
    def _wait_published(info, grace: float) -> None:
        if info is None:
            return
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            try:
                if info.is_published():
                    return
            except (ValueError, RuntimeError):
                return
            time.sleep(0.05)

    def _set_state(self, new_state: ListenerState) -> None:
        with self._state_lock:
            old_state = self._state
            self._state = new_state
        if old_state is not new_state:
            logger.debug("[MQTT] State %s → %s", old_state.value, new_state.value)
        LISTENER_CONNECTED.set(1 if new_state is ListenerState.SUBSCRIBED else 0)
