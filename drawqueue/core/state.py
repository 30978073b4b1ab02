from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionStatus(str, Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    error = "error"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.disconnected
    error_message: Optional[str] = None

    @classmethod
    def failed(cls, message: str) -> "ConnectionState":
        return cls(ConnectionStatus.error, message)

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.connected

    @property
    def is_connecting(self) -> bool:
        return self.status is ConnectionStatus.connecting

    def to_dict(self) -> dict:
        return {"status": self.status.value, "error": self.error_message}


DISCONNECTED = ConnectionState()
CONNECTING = ConnectionState(ConnectionStatus.connecting)
CONNECTED = ConnectionState(ConnectionStatus.connected)
