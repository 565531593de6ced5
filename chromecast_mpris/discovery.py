from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Dict, Optional, Set

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .base_receiver import ReceiverDiscovery
from .models import CAST_PORT, DeviceAddress

_LOGGER = logging.getLogger(__name__)

CAST_SERVICE_TYPE = "_googlecast._tcp.local."


def _decode_properties(props: Optional[Dict[bytes, Optional[bytes]]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not props:
        return out
    for k, v in props.items():
        if isinstance(k, bytes):
            k = k.decode("utf-8", errors="ignore")
        if v is None:
            v = ""
        elif isinstance(v, bytes):
            v = v.decode("utf-8", errors="ignore")
        out[str(k)] = str(v)
    return out


def address_from_service(host: str, port: Optional[int], properties: Dict[str, str]) -> DeviceAddress:
    """
    Build a DeviceAddress from a resolved cast service.

    TXT keys: `id` (uuid, hex without dashes), `fn` (friendly name), `md` (model).
    """
    receiver_uuid: Optional[uuid.UUID] = None
    raw_id = properties.get("id")
    if raw_id:
        try:
            receiver_uuid = uuid.UUID(raw_id)
        except ValueError:
            _LOGGER.debug("Ignoring malformed receiver id %r", raw_id)

    return DeviceAddress(
        host=host,
        port=int(port) if port else CAST_PORT,
        uuid=receiver_uuid,
        friendly_name=properties.get("fn") or None,
        model_name=properties.get("md") or None,
    )


class ReceiverBrowser(ReceiverDiscovery):
    """
    Finds receivers via mDNS/DNS-SD.

    Service type: `_googlecast._tcp.local.`
    Only IPv4 addresses are considered. The first resolved receiver (or the
    first one whose friendly name matches) is reported once per start().
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        service_type: str = CAST_SERVICE_TYPE,
        friendly_name: Optional[str] = None,
    ) -> None:
        self._loop = loop
        self._service_type = service_type
        self._friendly_name = friendly_name

        self._azc: Optional[AsyncZeroconf] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._on_found: Optional[Callable[[DeviceAddress], None]] = None
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

    def start(self, on_found: Callable[[DeviceAddress], None]) -> None:
        if self._browser is not None:
            self.stop()

        self._generation += 1
        generation = self._generation
        self._on_found = on_found
        self._azc = AsyncZeroconf(ip_version=IPVersion.V4Only)

        # IMPORTANT: zeroconf calls handlers using keyword args.
        # So this handler must accept those parameter names.
        def _on_state_change(
            zeroconf, service_type: str, name: str, state_change: ServiceStateChange
        ) -> None:
            if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
                return
            self._spawn(self._resolve(zeroconf, service_type, name, generation))

        self._browser = AsyncServiceBrowser(
            self._azc.zeroconf,
            self._service_type,
            handlers=[_on_state_change],
        )
        _LOGGER.debug("Browsing for %s", self._service_type)

    def stop(self) -> None:
        self._on_found = None
        browser, self._browser = self._browser, None
        azc, self._azc = self._azc, None
        if azc is not None:
            self._spawn(self._close(browser, azc))

    async def aclose(self) -> None:
        """Stop watching and wait until the zeroconf instance is closed."""
        self.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _resolve(self, zeroconf, service_type: str, name: str, generation: int) -> None:
        try:
            info = AsyncServiceInfo(service_type, name)
            ok = await info.async_request(zeroconf, timeout=1500)
            if not ok:
                return

            addrs = info.parsed_addresses(IPVersion.V4Only)
            if not addrs:
                return

            address = address_from_service(addrs[0], info.port, _decode_properties(info.properties))
        except Exception:
            _LOGGER.debug("Receiver discovery error for %s", name, exc_info=True)
            return

        if self._friendly_name and address.friendly_name != self._friendly_name:
            _LOGGER.debug("Skipping receiver %s (%s)", address.friendly_name, address)
            return

        if generation != self._generation:
            return

        on_found, self._on_found = self._on_found, None
        if on_found is not None:
            on_found(address)

    async def _close(self, browser: Optional[AsyncServiceBrowser], azc: AsyncZeroconf) -> None:
        try:
            if browser is not None:
                await browser.async_cancel()
        except Exception:
            _LOGGER.debug("Browser cancel failed", exc_info=True)
        await azc.async_close()

    def _spawn(self, coro) -> None:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
