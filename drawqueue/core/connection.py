"""Connection manager.

Owns the server profile registry and at most one live session. Connection
failures never escape ``connect``; they are reported through ``state``.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .catalog import ModelsCatalog
from .errors import ValidationError
from .profiles import ServerProfile
from .session import Connector, Session
from .state import CONNECTED, CONNECTING, DISCONNECTED, ConnectionState
from .storage import RecordStore, StoreWriter

DEFAULT_PROBE_TIMEOUT = 10.0

StateListener = Callable[[ConnectionState], None]


@dataclass(frozen=True)
class ConnectionSnapshot:
    state: ConnectionState
    profiles: tuple[ServerProfile, ...]
    active_profile: Optional[ServerProfile]
    default_profile: Optional[ServerProfile]

    def to_dict(self) -> dict:
        return {
            **self.state.to_dict(),
            "connected": self.state.is_connected,
            "active_profile": self.active_profile.to_dict() if self.active_profile else None,
            "default_profile": self.default_profile.to_dict() if self.default_profile else None,
            "profiles": [p.to_dict() for p in self.profiles],
        }


class ConnectionManager:
    """Manages server profiles and the connection lifecycle."""

    def __init__(
        self,
        store: RecordStore,
        connector: Connector,
        *,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        logger: Optional[logging.Logger] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.catalog = ModelsCatalog()
        self.probe_timeout = probe_timeout
        self._connector = connector
        self._writer = StoreWriter(store, self.logger)
        self._profiles: list[ServerProfile] = []
        self._active_profile: Optional[ServerProfile] = None
        self._state: ConnectionState = DISCONNECTED
        self._session: Optional[Session] = None
        self._listeners: list[StateListener] = []
        self._connect_lock: Optional[asyncio.Lock] = None
        # Bumped by every connect/disconnect so a superseded attempt can tell.
        self._attempt = 0
        self._closing: set[asyncio.Task] = set()
        self._load_profiles(store)

    # Observable state

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def profiles(self) -> tuple[ServerProfile, ...]:
        return tuple(p.copy() for p in self._profiles)

    @property
    def active_profile(self) -> Optional[ServerProfile]:
        return self._active_profile.copy() if self._active_profile else None

    @property
    def default_profile(self) -> Optional[ServerProfile]:
        profile = next((p for p in self._profiles if p.is_default), None)
        return profile.copy() if profile else None

    @property
    def active_session(self) -> Optional[Session]:
        """The live session, or None unless connected."""
        if not self._state.is_connected:
            return None
        return self._session

    def get_profile(self, profile_id: str) -> Optional[ServerProfile]:
        profile = self._find(profile_id)
        return profile.copy() if profile else None

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            state=self._state,
            profiles=self.profiles,
            active_profile=self.active_profile,
            default_profile=self.default_profile,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for state changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Profile management

    def add_profile(self, profile: ServerProfile) -> ServerProfile:
        profile.validate()
        if self._find(profile.id) is not None:
            raise ValidationError(f"Profile already exists: {profile.id}")
        new_profile = profile.copy()
        if new_profile.is_default:
            self._clear_default_flag()
        if not self._profiles:
            new_profile.is_default = True
        self._profiles.append(new_profile)
        self._commit_profiles(preferred_default=new_profile.id if new_profile.is_default else None)
        self.logger.info(f"Added profile {new_profile.name} ({new_profile.address})")
        return new_profile.copy()

    def update_profile(self, profile: ServerProfile) -> bool:
        profile.validate()
        index = self._index(profile.id)
        if index is None:
            return False
        updated = profile.copy()
        if updated.is_default:
            self._clear_default_flag(except_id=updated.id)
        self._profiles[index] = updated
        self._commit_profiles(preferred_default=updated.id if updated.is_default else None)
        if self._active_profile is not None and self._active_profile.id == updated.id:
            self._active_profile = self._profiles[index].copy()
        return True

    def delete_profile(self, profile_id: str) -> bool:
        """Delete a profile; the last remaining profile cannot be deleted."""
        profile = self._find(profile_id)
        if profile is None:
            return False
        if len(self._profiles) == 1:
            self.logger.warning("Refusing to delete the only server profile")
            return False
        if self._active_profile is not None and self._active_profile.id == profile_id:
            self.disconnect()
        self._profiles = [p for p in self._profiles if p.id != profile_id]
        if profile.is_default:
            self._profiles[0].is_default = True
        self._commit_profiles()
        self.logger.info(f"Deleted profile {profile.name}")
        return True

    def set_default(self, profile_id: str) -> bool:
        index = self._index(profile_id)
        if index is None:
            return False
        self._clear_default_flag()
        self._profiles[index].is_default = True
        self._commit_profiles()
        return True

    # Connection management

    async def connect(self, profile: ServerProfile) -> ConnectionState:
        """Connect to a profile. Returns the resulting state; never raises."""
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            if self._session is not None or self._state.is_connected:
                self.disconnect()

            self._attempt += 1
            attempt = self._attempt
            self._active_profile = profile.copy()
            self._set_state(CONNECTING)
            self.logger.info(f"Connecting to {profile.name} ({profile.address}, tls={profile.use_tls})")

            session: Optional[Session] = None
            try:
                session = await self._connector(profile.address, profile.use_tls)
                metadata = await asyncio.wait_for(session.probe(), timeout=self.probe_timeout)
            except asyncio.CancelledError:
                if session is not None:
                    self._close_in_background(session)
                if attempt == self._attempt:
                    self._set_state(ConnectionState.failed("Connection attempt cancelled"))
                raise
            except Exception as e:
                message = str(e) or type(e).__name__
                if isinstance(e, asyncio.TimeoutError):
                    message = "Connection timed out, the server took too long to respond"
                self.logger.error(f"Failed to connect to {profile.address}: {message}")
                if session is not None:
                    self._close_in_background(session)
                if attempt == self._attempt:
                    self._set_state(ConnectionState.failed(message))
                return self._state

            if attempt != self._attempt:
                # Superseded by disconnect() while we were waiting.
                self._close_in_background(session)
                return self._state

            self._session = session
            self.catalog.update_from_metadata(metadata)
            self._set_state(CONNECTED)
            self.logger.info(f"Connected to {profile.address}")
            return self._state

    async def connect_to_default(self) -> ConnectionState:
        profile = self.default_profile
        if profile is None:
            self._set_state(ConnectionState.failed("No default profile configured"))
            return self._state
        return await self.connect(profile)

    async def reconnect(self) -> ConnectionState:
        if self._active_profile is None:
            return self._state
        return await self.connect(self._active_profile)

    def disconnect(self) -> None:
        """Drop the session and return to disconnected. Safe to call repeatedly."""
        self._attempt += 1
        session, self._session = self._session, None
        self._active_profile = None
        self.catalog.clear()
        if session is not None:
            self.logger.info("Disconnecting from server")
            self._close_in_background(session)
        self._set_state(DISCONNECTED)

    async def close(self) -> None:
        """Disconnect and wait for session teardown and pending profile writes."""
        self.disconnect()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        await self._writer.flush()

    # Internals

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                self.logger.exception("Connection state listener failed")

    def _close_in_background(self, session: Session) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning("No running event loop; session left for garbage collection")
            return
        task = loop.create_task(self._close_session(session))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_session(self, session: Session) -> None:
        try:
            await session.close()
        except Exception as e:
            self.logger.warning(f"Error while closing session: {e}")

    def _load_profiles(self, store: RecordStore) -> None:
        for record in store.load():
            try:
                self._profiles.append(ServerProfile.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping malformed profile record: {e}")
        if not self._profiles:
            self.add_profile(ServerProfile.localhost())
        elif self._normalize_defaults():
            self._save_profiles()

    def _commit_profiles(self, preferred_default: Optional[str] = None) -> None:
        self._normalize_defaults(preferred_default)
        self._save_profiles()

    def _normalize_defaults(self, preferred_default: Optional[str] = None) -> bool:
        """Ensure exactly one default when non-empty. Returns True if anything changed."""
        defaults = [p for p in self._profiles if p.is_default]
        if not self._profiles or len(defaults) == 1:
            return False
        if defaults:
            keep = next((p for p in defaults if p.id == preferred_default), defaults[0])
        else:
            keep = self._profiles[0]
        for p in self._profiles:
            p.is_default = p is keep
        return True

    def _clear_default_flag(self, except_id: Optional[str] = None) -> None:
        for p in self._profiles:
            if p.id != except_id:
                p.is_default = False

    def _save_profiles(self) -> None:
        self._writer.schedule([p.to_dict() for p in self._profiles])

    def _find(self, profile_id: str) -> Optional[ServerProfile]:
        return next((p for p in self._profiles if p.id == profile_id), None)

    def _index(self, profile_id: str) -> Optional[int]:
        return next((i for i, p in enumerate(self._profiles) if p.id == profile_id), None)
