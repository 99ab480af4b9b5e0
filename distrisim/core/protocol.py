"""
Uniform hooks the host layer relies on.

Protocols do not inherit from anything; they only need to provide these
methods for the timeline session and delivery scheduler to drive them.
"""
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from distrisim.core.context import ProtocolSnapshot
from distrisim.core.message_pool import Message, MessageStatus


@runtime_checkable
class SimulationProtocol(Protocol):
    name: str

    def tick(self) -> None: ...

    def reset(self) -> None: ...

    def get_stats(self) -> Dict[str, Any]: ...

    def get_messages(self) -> List[Message]: ...

    def list_in_flight(self) -> List[Message]: ...

    def deliver(self, message_id: str) -> Optional[MessageStatus]: ...

    def snapshot(self) -> ProtocolSnapshot: ...

    def restore(self, snapshot: ProtocolSnapshot) -> None: ...
