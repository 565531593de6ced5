import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import paho.mqtt.client as mqtt

from .config import MqttConfig
from .event_bus import BridgeEvent, EventBus, EventHandler, subscribe
from .models import ConnectionPhase
from .util import slugify_device_id

if TYPE_CHECKING:
    from .bridge import BridgeAdapter

_LOGGER = logging.getLogger(__name__)

# Fields of the player snapshot mirrored to the `state` topic.
_STATE_FIELDS = (
    "PlaybackStatus",
    "Position",
    "Volume",
    "Rate",
    "CanPlay",
    "CanPause",
    "CanSeek",
)

# MQTT command payload -> BridgeAdapter method
COMMANDS = {
    "play": "play",
    "pause": "pause",
    "play_pause": "play_pause",
    "stop": "stop",
    "next": "next",
    "previous": "previous",
}


class MqttController(EventHandler):
    """Mirrors the bridge state to MQTT and accepts simple playback commands."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        event_bus: EventBus,
        config: MqttConfig,
        device_name: str,
        adapter: "BridgeAdapter",
    ):
        self._loop = loop
        self._host = config.host
        self._port = config.port
        self._username = config.username
        self._password = config.password
        self._adapter = adapter
        self._last_state: Optional[str] = None

        self._device_id = slugify_device_id(device_name)
        self._topic_prefix = f"chromecast_mpris/{self._device_id}"
        self.topics = {
            "availability": f"{self._topic_prefix}/availability",
            "phase": f"{self._topic_prefix}/phase",
            "state": f"{self._topic_prefix}/state",
            "command": f"{self._topic_prefix}/command",
        }

        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._on_connect
        self._client.on_message = self._on_message

        super().__init__(event_bus)

    def start(self):
        try:
            if self._username:
                self._client.username_pw_set(self._username, self._password)

            self._client.will_set(self.topics["availability"], "offline", retain=True)
            _LOGGER.debug("Connecting to MQTT broker at %s:%s", self._host, self._port)
            self._client.connect(self._host, self._port, 60)
            self._client.loop_start()
        except Exception:
            _LOGGER.exception("Failed to connect to MQTT broker")

    def stop(self):
        self._client.publish(self.topics["availability"], "offline", retain=True)
        self._client.loop_stop()
        self._client.disconnect()
        _LOGGER.debug("Disconnected from MQTT broker")

    # -------------------------------------------------------------------------
    # paho callbacks (network thread)
    # -------------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            _LOGGER.error("Failed to connect to MQTT: %s", reason_code)
            return
        _LOGGER.info("Connected to MQTT broker")
        client.subscribe(self.topics["command"])
        self.publish_state(self._adapter.properties.to_dict(), force=True)

    def _on_message(self, client, userdata, msg):
        payload_str = msg.payload.decode(errors="ignore").strip().lower()
        _LOGGER.debug("Received MQTT message on topic %s", msg.topic)

        if msg.topic != self.topics["command"]:
            return

        method = COMMANDS.get(payload_str)
        if method is None:
            _LOGGER.warning("Received unknown command: %s", payload_str)
            return

        self._loop.call_soon_threadsafe(getattr(self._adapter, method))

    # -------------------------------------------------------------------------
    # Event bus
    # -------------------------------------------------------------------------

    @subscribe(BridgeEvent.CONNECTED)
    def publish_online(self, _session: Any = None):
        self._client.publish(self.topics["availability"], "online", retain=True)

    @subscribe(BridgeEvent.DISCONNECTED)
    def publish_offline(self, _payload: Any = None):
        self._client.publish(self.topics["availability"], "offline", retain=True)

    @subscribe(BridgeEvent.PHASE_CHANGED)
    def publish_phase(self, phase: ConnectionPhase):
        self._client.publish(self.topics["phase"], ConnectionPhase(phase).value, retain=True)

    @subscribe(BridgeEvent.PROPERTIES_CHANGED)
    def publish_properties(self, _changed: Optional[Dict[str, Any]] = None):
        self.publish_state(self._adapter.properties.to_dict())

    # Position is not part of PROPERTIES_CHANGED; every poll refreshes it.
    # Runs after the adapter has applied the same status.
    @subscribe(BridgeEvent.STATUS)
    def publish_status(self, _snapshot: Any = None):
        self.publish_state(self._adapter.properties.to_dict())

    def publish_state(self, properties: Dict[str, Any], force: bool = False):
        state = json.dumps({name: properties[name] for name in _STATE_FIELDS})
        if state == self._last_state and not force:
            return
        self._last_state = state
        self._client.publish(self.topics["state"], state, retain=True)
