"""MQTT transport for a persistent hub session."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import ssl
from functools import partial
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode

import paho.mqtt.client as paho
from paho.mqtt.client import MQTTMessage

from ..const import (
    HUB_CONNECT_TIMEOUT,
    HUB_MQTT_API_VERSION,
    HUB_MQTT_KEEPALIVE,
    HUB_MQTT_PORT,
    TOPIC_METHOD_RESPONSE_FORMAT,
    TOPIC_METHODS,
    TOPIC_METHODS_PREFIX,
    TOPIC_TELEMETRY_FORMAT,
    TOPIC_TWIN_DESIRED,
    TOPIC_TWIN_DESIRED_PREFIX,
    TOPIC_TWIN_GET_FORMAT,
    TOPIC_TWIN_REPORTED_FORMAT,
    TOPIC_TWIN_RESPONSE,
    TOPIC_TWIN_RESPONSE_PREFIX,
    TRANSPORT_MQTT,
)
from ..models.messages import HubMessage
from .exceptions import CredentialError, DeviceConnectionError, TransmissionError
from .sas_token import SasTokenManager
from .transport import HubTransport

_LOGGER = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 5
RECONNECT_MAX_DELAY_SECONDS = 60
TWIN_REQUEST_TIMEOUT = 10


def _split_topic(topic: str) -> Tuple[str, Dict[str, str]]:
    """Split ``path/?$rid=1&$version=2`` into the path and its query values."""
    path, _, query = topic.partition("?")
    params = {key: values[0] for key, values in parse_qs(query).items() if values}
    return path, params


class MqttTransport(HubTransport):
    """Manages the MQTT session, device twin and direct methods for one device."""

    name = TRANSPORT_MQTT
    supports_push = True
    supports_commands = True

    __slots__ = (
        "_loop",
        "_mqttc",
        "_device_id",
        "_hub_host",
        "_tokens",
        "_connect_lock",
        "_connected_event",
        "_is_connected",
        "_stopping",
        "_pending",
        "_rid",
    )

    def __init__(self) -> None:
        super().__init__()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._mqttc: Optional[paho.Client] = None
        self._device_id: Optional[str] = None
        self._hub_host: Optional[str] = None
        self._tokens: Optional[SasTokenManager] = None
        self._connect_lock = asyncio.Lock()
        self._connected_event = asyncio.Event()
        self._is_connected = False
        self._stopping = False
        self._pending: Dict[str, asyncio.Future] = {}
        self._rid = itertools.count(1)

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _call_soon(self, callback, *args) -> None:
        """Hand a paho-thread callback over to the event loop."""
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    async def open(self, hub_host: str, device_id: str, tokens: SasTokenManager) -> None:
        """Establish the MQTT connection and subscribe to twin and method topics."""
        async with self._connect_lock:
            if self._is_connected:
                if _LOGGER.isEnabledFor(logging.DEBUG):
                    _LOGGER.debug("[%s] MQTT already connected", device_id)
                return

            self._loop = asyncio.get_running_loop()
            self._hub_host = hub_host
            self._device_id = device_id
            self._tokens = tokens
            self._stopping = False
            self._connected_event.clear()

            try:
                password = tokens.ensure_valid()
            except CredentialError as exc:
                raise DeviceConnectionError(f"Cannot build hub credential: {exc}") from exc

            self._mqttc = paho.Client(
                paho.CallbackAPIVersion.VERSION2, client_id=device_id, protocol=paho.MQTTv311
            )
            self._mqttc.username_pw_set(
                username=f"{hub_host}/{device_id}/?api-version={HUB_MQTT_API_VERSION}",
                password=password,
            )
            self._mqttc.tls_set_context(ssl.create_default_context())
            self._mqttc.reconnect_delay_set(
                min_delay=RECONNECT_DELAY_SECONDS, max_delay=RECONNECT_MAX_DELAY_SECONDS
            )
            self._mqttc.on_connect = self._on_connect
            self._mqttc.on_disconnect = self._on_disconnect
            self._mqttc.on_message = self._on_message

            _LOGGER.info(f"[{device_id}] MQTT connecting: {hub_host}:{HUB_MQTT_PORT}")

            try:
                await self._loop.run_in_executor(
                    None, self._mqttc.connect, hub_host, HUB_MQTT_PORT, HUB_MQTT_KEEPALIVE
                )
                self._mqttc.loop_start()
                try:
                    await asyncio.wait_for(self._connected_event.wait(), timeout=HUB_CONNECT_TIMEOUT)
                except asyncio.TimeoutError:
                    raise DeviceConnectionError(f"MQTT connection timeout after {HUB_CONNECT_TIMEOUT}s")
                if not self._is_connected:
                    raise DeviceConnectionError("MQTT connection refused")
            except Exception as exc:
                _LOGGER.error(f"[{device_id}] Failed MQTT connect: {exc}")
                mqttc = self._mqttc
                self._mqttc = None
                self._is_connected = False
                self._stopping = True
                if mqttc is not None:
                    try:
                        mqttc.loop_stop()
                    except Exception as stop_exc:
                        _LOGGER.warning(f"[{device_id}] Loop stop error: {stop_exc}")
                if isinstance(exc, DeviceConnectionError):
                    raise
                raise DeviceConnectionError(f"MQTT setup error: {exc}") from exc

            _LOGGER.info(f"[{device_id}] Connected to hub via MQTT")

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        """Paho callback when the CONNACK arrives."""
        if reason_code == 0:
            self._is_connected = True
            for topic in (TOPIC_TWIN_RESPONSE, TOPIC_TWIN_DESIRED, TOPIC_METHODS):
                result, mid = client.subscribe(topic, qos=0)
                if result != paho.MQTT_ERR_SUCCESS:
                    _LOGGER.error(f"[{self._device_id}] MQTT subscribe failed {topic} (rc={result})")
                elif _LOGGER.isEnabledFor(logging.DEBUG):
                    _LOGGER.debug("[%s] Subscribed %s (mid=%s)", self._device_id, topic, mid)
            self._call_soon(self._connected_event.set)
            self._call_soon(self._notify_connected)
        else:
            _LOGGER.error(f"[{self._device_id}] MQTT connection refused (rc={reason_code})")
            self._is_connected = False
            self._call_soon(self._connected_event.set)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        """Paho callback when the session drops or is closed."""
        self._is_connected = False
        if reason_code == 0 or self._stopping:
            _LOGGER.info(f"[{self._device_id}] MQTT disconnected cleanly")
        else:
            _LOGGER.warning(f"[{self._device_id}] MQTT unexpected disconnect (rc={reason_code})")
        self._call_soon(self._notify_disconnected, str(reason_code))
        if not self._stopping:
            # paho reconnects on its own; the password has to be fresh by then
            self._call_soon(self._refresh_password)

    def _notify_connected(self) -> None:
        if self._listener is not None:
            self._listener.on_transport_connected()

    def _notify_disconnected(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransmissionError(f"Disconnected: {reason}"))
        self._pending.clear()
        if self._listener is not None:
            self._listener.on_transport_disconnected(reason)

    def _refresh_password(self) -> None:
        if self._mqttc is None or self._tokens is None or self._stopping:
            return
        try:
            password = self._tokens.ensure_valid()
        except CredentialError as exc:
            if self._listener is not None:
                self._listener.on_transport_error(exc)
            return
        self._mqttc.username_pw_set(
            username=f"{self._hub_host}/{self._device_id}/?api-version={HUB_MQTT_API_VERSION}",
            password=password,
        )

    def _on_message(self, client, userdata, msg: MQTTMessage) -> None:
        """Paho callback for twin responses, desired patches and method calls."""
        topic = msg.topic
        try:
            payload = json.loads(msg.payload.decode("utf-8")) if msg.payload else None
        except (UnicodeDecodeError, ValueError) as exc:
            _LOGGER.warning(f"[{self._device_id}] Undecodable payload on {topic}: {exc}")
            payload = None

        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("[%s] MQTT message received: topic='%s'", self._device_id, topic)

        path, params = _split_topic(topic)
        if topic.startswith(TOPIC_TWIN_RESPONSE_PREFIX):
            status = path[len(TOPIC_TWIN_RESPONSE_PREFIX):].strip("/")
            self._call_soon(self._resolve_pending, params.get("$rid", ""), status, payload)
        elif topic.startswith(TOPIC_TWIN_DESIRED_PREFIX):
            if isinstance(payload, dict):
                self._call_soon(self._deliver_desired, payload)
        elif topic.startswith(TOPIC_METHODS_PREFIX):
            method_name = path[len(TOPIC_METHODS_PREFIX):].strip("/")
            self._call_soon(self._deliver_method, method_name, params.get("$rid", ""), payload)
        else:
            _LOGGER.warning(f"[{self._device_id}] Unexpected topic: {topic}")

    def _resolve_pending(self, rid: str, status: str, payload: Any) -> None:
        future = self._pending.pop(rid, None)
        if future is None or future.done():
            return
        if status.isdigit() and int(status) < 300:
            future.set_result(payload if isinstance(payload, dict) else {})
        else:
            future.set_exception(TransmissionError(f"Twin request {rid} failed with status {status}"))

    def _deliver_desired(self, patch: Dict[str, Any]) -> None:
        if self._listener is not None:
            self._listener.on_desired_properties(patch)

    def _deliver_method(self, name: str, rid: str, payload: Any) -> None:
        if self._listener is not None:
            self._listener.on_method_request(name, rid, payload)

    async def _publish(self, topic: str, body: Optional[Dict[str, Any]]) -> None:
        if not self._is_connected or self._mqttc is None:
            raise TransmissionError("MQTT not connected")
        data = json.dumps(body).encode("utf-8") if body is not None else b""
        loop = asyncio.get_running_loop()
        try:
            msg_info = await loop.run_in_executor(None, partial(self._mqttc.publish, topic, payload=data, qos=0))
        except (ValueError, RuntimeError) as exc:
            raise TransmissionError(f"MQTT publish error: {exc}") from exc
        if msg_info is None or msg_info.rc != paho.MQTT_ERR_SUCCESS:
            raise TransmissionError(f"MQTT publish failed RC: {msg_info.rc if msg_info else 'Executor Error'}")

    async def _twin_request(self, topic_format: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        rid = str(next(self._rid))
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[rid] = future
        try:
            await self._publish(topic_format.format(rid=rid), body)
            return await asyncio.wait_for(future, timeout=TWIN_REQUEST_TIMEOUT)
        except asyncio.TimeoutError as exc:
            raise TransmissionError(f"Twin request {rid} timed out") from exc
        finally:
            self._pending.pop(rid, None)

    async def send(self, message: HubMessage) -> None:
        topic = TOPIC_TELEMETRY_FORMAT.format(
            device_id=self._device_id, properties=urlencode(message.properties)
        )
        await self._publish(topic, message.body)

    async def get_twin(self) -> Dict[str, Any]:
        return await self._twin_request(TOPIC_TWIN_GET_FORMAT, None)

    async def update_reported(self, patch: Dict[str, Any]) -> None:
        await self._twin_request(TOPIC_TWIN_REPORTED_FORMAT, patch)

    async def respond_method(self, request_id: str, status: int, payload: Any) -> None:
        await self._publish(TOPIC_METHOD_RESPONSE_FORMAT.format(status=status, rid=request_id), payload)

    async def close(self) -> None:
        """Disconnect the MQTT client. Safe to call more than once."""
        self._stopping = True
        self._connected_event.set()

        mqttc_to_disconnect = None
        async with self._connect_lock:
            if self._mqttc:
                mqttc_to_disconnect = self._mqttc
                self._mqttc = None
            self._is_connected = False

        if mqttc_to_disconnect is None:
            if _LOGGER.isEnabledFor(logging.DEBUG):
                _LOGGER.debug("[%s] MQTT client already closed", self._device_id)
            return

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, mqttc_to_disconnect.disconnect)
            await loop.run_in_executor(None, mqttc_to_disconnect.loop_stop)
            _LOGGER.info(f"[{self._device_id}] MQTT client disconnected")
        except Exception as exc:
            _LOGGER.warning(f"[{self._device_id}] Error during MQTT disconnect: {exc}")
