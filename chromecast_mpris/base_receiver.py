from abc import ABC, abstractmethod
from typing import Callable, FrozenSet, List

from .models import Capability, DeviceAddress, SessionDescriptor, StatusSnapshot

CloseListener = Callable[[], None]
RemoveListener = Callable[[], None]


class ReceiverDiscovery(ABC):
    """Watches the network for receivers."""

    @abstractmethod
    def start(self, on_found: Callable[[DeviceAddress], None]) -> None:
        """Start watching; call on_found once, for the first match."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop watching. Matches resolved after this are dropped."""
        pass


class PlayerHandle(ABC):
    """An open media-control channel to a joined session."""

    def __init__(self, session: SessionDescriptor, capabilities: FrozenSet[Capability]):
        self.session = session
        self.capabilities = frozenset(capabilities)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    async def get_status(self) -> StatusSnapshot:
        pass

    @abstractmethod
    async def play(self) -> None:
        pass

    @abstractmethod
    async def pause(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def seek(self, seconds: float) -> None:
        pass

    @abstractmethod
    async def next(self) -> None:
        pass

    @abstractmethod
    async def previous(self) -> None:
        pass

    @abstractmethod
    async def open_uri(self, uri: str) -> None:
        """Only called when the handle advertises Capability.OPEN."""
        pass

    @abstractmethod
    def add_close_listener(self, listener: CloseListener) -> RemoveListener:
        """Called when the session ends without close() being called."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the channel and detach all listeners. Idempotent."""
        pass


class ReceiverClient(ABC):
    """Connection to one receiver."""

    @abstractmethod
    async def connect(self, address: DeviceAddress) -> None:
        pass

    @abstractmethod
    async def list_sessions(self) -> List[SessionDescriptor]:
        pass

    @abstractmethod
    async def join(self, session: SessionDescriptor) -> PlayerHandle:
        pass

    @abstractmethod
    def add_close_listener(self, listener: CloseListener) -> RemoveListener:
        """Called when the connection drops without close() being called."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection and detach all listeners. Idempotent."""
        pass
