"""Server connection profiles."""
import uuid
from dataclasses import dataclass, field, replace

from .errors import ValidationError

DEFAULT_PORT = 7859


@dataclass
class ServerProfile:
    """A saved server address the connection manager can connect to."""
    name: str
    host: str = "localhost"
    port: int = DEFAULT_PORT
    use_tls: bool = True
    is_default: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @classmethod
    def from_address(
        cls,
        name: str,
        address: str,
        use_tls: bool = True,
        is_default: bool = False,
    ) -> "ServerProfile":
        """Create a profile from "host:port"; anything else is used as the host."""
        host, port = address, DEFAULT_PORT
        parts = address.split(":")
        if len(parts) == 2:
            try:
                port = int(parts[1])
                host = parts[0]
            except ValueError:
                pass
        return cls(name=name, host=host, port=port, use_tls=use_tls, is_default=is_default)

    @classmethod
    def localhost(cls) -> "ServerProfile":
        return cls(name="Local Server", host="localhost", port=DEFAULT_PORT, use_tls=True, is_default=True)

    def copy(self, **changes) -> "ServerProfile":
        return replace(self, **changes)

    def validate(self) -> None:
        if not self.name.strip():
            raise ValidationError("Profile name is required")
        if not self.host.strip():
            raise ValidationError("Profile host is required")
        if not 0 < self.port < 65536:
            raise ValidationError(f"Invalid port: {self.port}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "use_tls": self.use_tls,
            "is_default": self.is_default,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServerProfile":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            host=data.get("host", "localhost"),
            port=int(data.get("port", DEFAULT_PORT)),
            use_tls=bool(data.get("use_tls", True)),
            is_default=bool(data.get("is_default", False)),
        )
