from typing import NewType, Protocol, runtime_checkable

from ulid import ULID

#
## New Types
#
ConnId = NewType("ConnId", str)


def new_conn_id() -> ConnId:
    """Server-assigned, opaque connection identifier."""
    return ConnId(str(ULID()).lower())


@runtime_checkable
class WebSocketProtocol(Protocol):
    async def send_text(self, data: str) -> None: ...
    async def receive_text(self) -> str: ...
    async def close(self) -> None: ...
