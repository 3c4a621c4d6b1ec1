"""
IoT hub device session over MQTT.

A HubSession is a single-use handle: open() once, use it, close() once. It sends
device-to-cloud events and reads/patches the device twin. Nothing here enforces
a timeout: open, publish and twin requests wait as long as the hub takes.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from hub_sensor_agent.connection_string import (
    DEFAULT_TOKEN_TTL_S,
    ConnectionString,
    ConnectionStringError,
    parse_connection_string,
)
from hub_sensor_agent.hub_topics import HubTopics, TwinResponse, parse_twin_response

logger = logging.getLogger(__name__)

API_VERSION = "2021-04-12"
MQTTS_PORT = 8883

_NEW = "new"
_OPEN = "open"
_CLOSED = "closed"


class HubError(Exception):
    """Base class for session failures."""


class SessionOpenError(HubError):
    """Raised when a session cannot be opened."""


class SessionStateError(HubError, RuntimeError):
    """Raised when a session is reused or used outside its open window."""


class PublishError(HubError):
    """Raised when a device-to-cloud event is not accepted."""


class TwinError(HubError):
    """Raised (or carried) when a twin request fails."""


@dataclass(slots=True)
class Message:
    """Device-to-cloud message body plus its declared system properties."""

    data: str
    content_type: Optional[str] = None
    content_encoding: Optional[str] = None

    def system_properties(self) -> dict[str, str]:
        props: dict[str, str] = {}
        if self.content_type:
            props["$.ct"] = self.content_type
        if self.content_encoding:
            props["$.ce"] = self.content_encoding
        return props


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of a reported-properties patch. `error` is for logging only."""

    error: Optional[Exception] = None
    version: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class _PendingRequest:
    done: threading.Event = field(default_factory=threading.Event)
    response: Optional[TwinResponse] = None
    body: bytes = b""
    error: Optional[Exception] = None


@dataclass(slots=True)
class _PendingSubscribe:
    done: threading.Event = field(default_factory=threading.Event)
    reason_codes: list[Any] = field(default_factory=list)
    error: Optional[Exception] = None


def _is_failure(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if is_failure is not None:
        return bool(is_failure)
    return int(reason_code) >= 0x80


class Twin:
    """Handle on the device twin, bound to the session that fetched it."""

    def __init__(self, session: "HubSession") -> None:
        self._session = session
        self.desired: dict[str, Any] = {}
        self.reported: dict[str, Any] = {}

    def refresh(self) -> None:
        """Fetch the full twin document. Raises TwinError on failure."""
        response, body = self._session._twin_request(self._session.topics.twin_get, "")
        if not response.ok:
            raise TwinError(f"twin GET rejected with status {response.status}")
        try:
            doc = json.loads(body.decode("utf-8")) if body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TwinError(f"twin document is not valid JSON: {exc}") from exc
        if not isinstance(doc, dict):
            raise TwinError(f"twin document is a JSON {type(doc).__name__}, expected an object")
        self.desired = dict(doc.get("desired") or {})
        self.reported = dict(doc.get("reported") or {})

    def update_reported(self, patch: dict[str, Any]) -> UpdateResult:
        """
        Patch the reported properties.

        Never raises for hub-side rejections or a lost session; the failure is
        returned in UpdateResult.error instead.
        """
        payload = json.dumps(patch)
        try:
            response, _ = self._session._twin_request(
                self._session.topics.twin_patch_reported, payload
            )
        except HubError as exc:
            return UpdateResult(error=exc)

        if not response.ok:
            return UpdateResult(
                error=TwinError(f"reported properties patch rejected with status {response.status}")
            )
        self.reported.update(patch)
        return UpdateResult(version=response.version)


class HubSession:
    """
    MQTT session to the hub for one device identity.
    Single-use: a session is never opened twice, and a closed session stays closed.
    """

    def __init__(
        self,
        conn: ConnectionString,
        *,
        port: int = MQTTS_PORT,
        keepalive: int = 60,
        token_ttl_s: int = DEFAULT_TOKEN_TTL_S,
    ) -> None:
        self.conn = conn
        self.port = port
        self.keepalive = keepalive
        self.token_ttl_s = token_ttl_s

        self.topics = HubTopics(conn.device_id, conn.module_id)
        if conn.module_id:
            self.client_id = f"{conn.device_id}/{conn.module_id}"
        else:
            self.client_id = conn.device_id
        self.username = f"{conn.host_name}/{self.client_id}/?api-version={API_VERSION}"

        self._client: Optional[mqtt.Client] = None
        self._state = _NEW
        self._lock = threading.Lock()

        self._connack = threading.Event()
        self._open_error: Optional[str] = None

        self._rid = itertools.count(1)
        self._pending: dict[str, _PendingRequest] = {}
        self._subacks: dict[int, _PendingSubscribe] = {}
        self._early_subacks: dict[int, list[Any]] = {}
        self._twin: Optional[Twin] = None

    @classmethod
    def from_connection_string(cls, value: str, **kwargs: Any) -> "HubSession":
        return cls(parse_connection_string(value), **kwargs)

    # -------------------------
    # Lifecycle
    # -------------------------
    def open(self) -> None:
        """Connect and wait for the CONNACK. Raises SessionOpenError on failure."""
        with self._lock:
            if self._state != _NEW:
                raise SessionStateError(f"session cannot be opened: already {self._state}")
            self._state = _OPEN

        client: Optional[mqtt.Client] = None
        try:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                protocol=mqtt.MQTTv311,
            )
            client.username_pw_set(self.username, self.conn.sas_token(ttl_s=self.token_ttl_s))
            client.tls_set()

            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message
            client.on_subscribe = self._on_subscribe
            self._client = client

            client.connect(self.conn.gateway, self.port, keepalive=self.keepalive)
        except Exception as exc:
            self._abandon(client)
            raise SessionOpenError(f"connect to {self.conn.gateway}:{self.port} failed: {exc}") from exc

        client.loop_start()
        self._connack.wait()

        if self._open_error is not None:
            self._abandon(client)
            raise SessionOpenError(f"hub refused connection: {self._open_error}")

        logger.info("Session opened to %s as %s", self.conn.gateway, self.client_id)

    def close(self) -> None:
        """Best-effort disconnect. Never raises; safe to call more than once."""
        with self._lock:
            if self._state == _CLOSED:
                return
            self._state = _CLOSED
            client, self._client = self._client, None

        self._fail_pending(TwinError("session closed"))
        if client is None:
            return

        try:
            client.disconnect()
        except Exception as exc:
            logger.warning("Session disconnect failed: %s", exc)
        finally:
            try:
                client.loop_stop()
            except Exception as exc:
                logger.warning("Session network loop stop failed: %s", exc)
        logger.info("Session closed")

    def is_open(self) -> bool:
        return self._state == _OPEN and self._client is not None

    def _abandon(self, client: Optional[mqtt.Client]) -> None:
        with self._lock:
            self._state = _CLOSED
            self._client = None
        if client is None:
            return
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as exc:
            logger.debug("Cleanup after failed open: %s", exc)

    def _require_open(self) -> mqtt.Client:
        client = self._client
        if self._state != _OPEN or client is None:
            raise SessionStateError(f"session is not open (state={self._state})")
        return client

    # -------------------------
    # Device-to-cloud
    # -------------------------
    def send_event(self, message: Message) -> None:
        """Publish a telemetry event at QoS 1 and wait for the hub's PUBACK."""
        client = self._require_open()
        topic = self.topics.events(message.system_properties())
        try:
            info = client.publish(topic, payload=message.data.encode("utf-8"), qos=1)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise PublishError(f"publish not queued: {mqtt.error_string(info.rc)}")
            info.wait_for_publish()
        except PublishError:
            raise
        except Exception as exc:
            raise PublishError(f"publish failed: {exc}") from exc
        logger.debug("Event published mid=%s", info.mid)

    # -------------------------
    # Twin
    # -------------------------
    def get_twin(self) -> Twin:
        """Subscribe to twin responses and fetch the twin. Raises TwinError on failure."""
        client = self._require_open()
        if self._twin is not None:
            return self._twin

        result, mid = client.subscribe(self.topics.twin_responses(), qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TwinError(f"twin response subscribe failed: {mqtt.error_string(result)}")
        # the hub drops twin responses until the subscription is acknowledged
        self._wait_suback(mid)

        twin = Twin(self)
        twin.refresh()
        self._twin = twin
        return twin

    def _wait_suback(self, mid: int) -> None:
        waiter = _PendingSubscribe()
        with self._lock:
            early = self._early_subacks.pop(mid, None)
            if early is None:
                self._subacks[mid] = waiter

        if early is not None:
            reason_codes = early
        else:
            try:
                waiter.done.wait()
            finally:
                with self._lock:
                    self._subacks.pop(mid, None)
            if waiter.error is not None:
                raise waiter.error
            reason_codes = waiter.reason_codes

        if any(_is_failure(rc) for rc in reason_codes):
            raise TwinError(f"twin response subscription rejected: {reason_codes}")

    def _twin_request(self, make_topic: Callable[[str], str], payload: str) -> tuple[TwinResponse, bytes]:
        client = self._require_open()
        rid = str(next(self._rid))
        pending = _PendingRequest()
        with self._lock:
            self._pending[rid] = pending
        try:
            info = client.publish(make_topic(rid), payload=payload, qos=0)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise TwinError(f"twin request not sent: {mqtt.error_string(info.rc)}")
            pending.done.wait()
        finally:
            with self._lock:
                self._pending.pop(rid, None)

        if pending.error is not None:
            raise pending.error
        if pending.response is None:
            raise TwinError(f"twin request rid={rid} ended without a response")
        return pending.response, pending.body

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending: list[Any] = list(self._pending.values())
            pending += list(self._subacks.values())
        for req in pending:
            req.error = error
            req.done.set()

    # -------------------------
    # paho callbacks
    # -------------------------
    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if self._connack.is_set():
            # automatic reconnect by the network loop
            if reason_code == 0 and self._twin is not None:
                client.subscribe(self.topics.twin_responses(), qos=0)
            logger.info("Session reconnected rc=%s", reason_code)
            return

        if reason_code != 0:
            self._open_error = str(reason_code)
        self._connack.set()

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if not self._connack.is_set():
            self._open_error = f"disconnected before CONNACK ({reason_code})"
            self._connack.set()
            return
        if reason_code != 0:
            logger.warning("Unexpected disconnect rc=%s", reason_code)
            self._fail_pending(TwinError(f"connection lost ({reason_code})"))

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: Any, properties: Any) -> None:
        with self._lock:
            waiter = self._subacks.get(mid)
            if waiter is None:
                # SUBACK beat the waiter registration (or came from a reconnect)
                self._early_subacks[mid] = list(reason_code_list)
                return
        waiter.reason_codes = list(reason_code_list)
        waiter.done.set()

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        response = parse_twin_response(msg.topic)
        if response is None:
            logger.warning("Unhandled topic: %s", msg.topic)
            return
        with self._lock:
            pending = self._pending.get(response.rid)
        if pending is None:
            logger.debug("Twin response for unknown rid=%s", response.rid)
            return
        pending.response = response
        pending.body = msg.payload or b""
        pending.done.set()


def open_session(connection_string: str) -> HubSession:
    """
    Build and open a session from a connection string.

    Any failure, including an unparsable connection string, raises SessionOpenError.
    """
    try:
        session = HubSession.from_connection_string(connection_string)
    except ConnectionStringError as exc:
        raise SessionOpenError(f"invalid connection string: {exc}") from exc
    session.open()
    return session
