#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional, Tuple

from .bridge import BridgeAdapter
from .cast_client import CastReceiverClient
from .config import Config, load_config_from_json
from .discovery import ReceiverBrowser
from .event_bus import EventBus
from .mpris import MprisTransport
from .mqtt_controller import MqttController
from .state_machine import ConnectionStateMachine

_LOGGER = logging.getLogger(__name__)
_MODULE_DIR = Path(__file__).parent

# Libraries that log every packet at DEBUG/INFO.
_NOISY_LOGGERS = ("pychromecast", "zeroconf")

# -----------------------------------------------------------------------------
# Main Application
# -----------------------------------------------------------------------------

async def main() -> None:
    # --- 1. Load Basics ---
    config, loop, event_bus = _init_basics()

    # --- 2. Build the state machine ---
    discovery, machine = _init_machine(loop, event_bus, config)

    # --- 3. Export the MPRIS player ---
    transport = MprisTransport(loop, name=config.mpris.name, identity=config.mpris.identity)
    adapter = BridgeAdapter(event_bus, machine, transport)
    transport.start(adapter)

    # --- 4. Optional MQTT mirror ---
    mqtt_controller = _init_mqtt(loop, event_bus, config, adapter)

    # --- 5. Run until signalled ---
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        machine.connect()
        await stop_event.wait()
    finally:
        # --- 6. Cleanup ---
        _LOGGER.debug("Shutting down...")
        await machine.shutdown()
        await discovery.aclose()
        transport.stop()

        if mqtt_controller is not None:
            _LOGGER.debug("Stopping MQTT controller...")
            mqtt_controller.stop()

# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------

def _init_basics() -> Tuple[Config, asyncio.AbstractEventLoop, EventBus]:
    """Loads config, sets up logging, and creates loop/event bus."""
    parser = argparse.ArgumentParser(prog="chromecast-mpris")
    parser.add_argument(
        "-c", "--config", type=Path, required=False,
        default=_MODULE_DIR / "config.json",
        help="Path to configuration.json file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    config_path = args.config.expanduser().resolve()
    config = load_config_from_json(config_path)

    if args.debug:
        config.app.debug = True

    logging.basicConfig(
        level=logging.DEBUG if config.app.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    if not config.app.debug:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
    _LOGGER.info("Loading configuration from: %s", config_path)

    loop = asyncio.get_running_loop()
    event_bus = EventBus()

    return config, loop, event_bus

def _init_machine(
    loop: asyncio.AbstractEventLoop,
    event_bus: EventBus,
    config: Config,
) -> Tuple[ReceiverBrowser, ConnectionStateMachine]:
    """Wires discovery and the receiver client into the state machine."""
    discovery = ReceiverBrowser(
        loop,
        service_type=config.discovery.service_type,
        friendly_name=config.discovery.friendly_name,
    )
    machine = ConnectionStateMachine(
        loop=loop,
        event_bus=event_bus,
        discovery=discovery,
        client_factory=lambda: CastReceiverClient(loop, config.cast.connect_timeout),
        config=config.cast,
    )
    return discovery, machine

def _init_mqtt(
    loop: asyncio.AbstractEventLoop,
    event_bus: EventBus,
    config: Config,
    adapter: BridgeAdapter,
) -> Optional[MqttController]:
    if not config.mqtt.enabled:
        return None

    mqtt_controller = MqttController(
        loop=loop,
        event_bus=event_bus,
        config=config.mqtt,
        device_name=config.discovery.friendly_name or config.mpris.name,
        adapter=adapter,
    )
    mqtt_controller.start()
    return mqtt_controller


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
