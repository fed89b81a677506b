"""
SecureMsg - Session state and the session store.

This module holds the per-peer symmetric session state and the keyed
store the client owns. Sessions are mutated in place by the codec and the
ratchet; the store serializes those mutations per session.

Concurrency model:
- One re-entrant lock per session id; encrypt, decrypt and ratchet
  advance run under it, so two decrypts cannot race on the replay check
- Distinct sessions never contend with each other
- Snapshots for persistence take each session lock, so saved state is
  always a completed post-call state

Author: orpheus497
Version: 1.0.0
"""

import base64
import contextlib
import copy
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import ErrorCode, MessagingError, SessionNotFound
from .vault import Vault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Handshake:
    """Initiator key material a responder needs to mirror a session.

    Attributes:
        identity_key: Initiator identity public key (PEM)
        base_key: Initiator ephemeral public key (PEM)
        one_time_pre_key: Responder one-time prekey the initiator consumed (PEM), if any
    """

    identity_key: str
    base_key: str
    one_time_pre_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identityKey": self.identity_key,
            "baseKey": self.base_key,
            "oneTimePreKey": self.one_time_pre_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Handshake":
        handshake = cls(data["identityKey"], data["baseKey"], data.get("oneTimePreKey"))
        if not isinstance(handshake.identity_key, str) or not isinstance(handshake.base_key, str):
            raise TypeError("handshake keys must be PEM strings")
        if handshake.one_time_pre_key is not None and not isinstance(handshake.one_time_pre_key, str):
            raise TypeError("oneTimePreKey must be a PEM string")
        return handshake


@dataclass
class Session:
    """Symmetric state shared with one peer.

    Attributes:
        session_id: Unique session identifier (random 128 bits + peer id)
        peer_id: User id of the remote party
        encryption_key: Current 16-byte message encryption key
        mac_key: Current 16-byte package MAC key
        chain_key: Current 16-byte ratchet chain key
        counter: Highest counter sent or accepted on this session
        handshake: Set while a locally initiated session awaits the peer's first reply
    """

    session_id: str
    peer_id: str
    encryption_key: bytes
    mac_key: bytes
    chain_key: bytes
    counter: int = 0
    handshake: Optional[Handshake] = None

    def rekey(self, encryption_key: bytes, mac_key: bytes, chain_key: bytes) -> None:
        """Replace all three keys together; the previous keys are dropped."""
        self.encryption_key, self.mac_key, self.chain_key = encryption_key, mac_key, chain_key

    def copy(self) -> "Session":
        return copy.copy(self)

    def restore(self, snapshot: "Session") -> None:
        """Roll this session back to a snapshot taken with copy()."""
        if snapshot.session_id != self.session_id:
            raise ValueError("Snapshot belongs to a different session")
        self.encryption_key = snapshot.encryption_key
        self.mac_key = snapshot.mac_key
        self.chain_key = snapshot.chain_key
        self.counter = snapshot.counter
        self.handshake = snapshot.handshake

    def to_dict(self) -> Dict[str, Any]:
        """Export session fields with key material base64 encoded.

        Note:
            The result is secret material and must be encrypted before storage.
        """
        return {
            "peerId": self.peer_id,
            "encryptionKey": base64.b64encode(self.encryption_key).decode("ascii"),
            "macKey": base64.b64encode(self.mac_key).decode("ascii"),
            "chainKey": base64.b64encode(self.chain_key).decode("ascii"),
            "counter": self.counter,
            "handshake": self.handshake.to_dict() if self.handshake else None,
        }

    @staticmethod
    def from_dict(session_id: str, data: Dict[str, Any]) -> "Session":
        """Import a session exported by to_dict().

        Raises:
            MessagingError: If session data is invalid
        """
        try:
            handshake = data.get("handshake")
            return Session(
                session_id=session_id,
                peer_id=data["peerId"],
                encryption_key=base64.b64decode(data["encryptionKey"]),
                mac_key=base64.b64decode(data["macKey"]),
                chain_key=base64.b64decode(data["chainKey"]),
                counter=int(data["counter"]),
                handshake=Handshake.from_dict(handshake) if handshake else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise MessagingError(
                f"Invalid session data: {e}", code=ErrorCode.E002_INVALID_ARGUMENT
            ) from e


class SessionStore:
    """
    Keyed container from session id to Session, owned by one client.

    Also tracks which session is current for each peer.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._peers: Dict[str, str] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def add(self, session: Session) -> None:
        """Store a session and make it the current one for its peer."""
        with self._lock:
            self._sessions[session.session_id] = session
            self._locks.setdefault(session.session_id, threading.RLock())
            self._peers[session.peer_id] = session.session_id
        logger.debug(f"Stored session {session.session_id}")

    def get(self, session_id: str) -> Session:
        """
        Look up a session.

        Raises:
            SessionNotFound: If the id is unknown
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session not found: {session_id}", {"session_id": session_id})
        return session

    def for_peer(self, peer_id: str) -> Optional[Session]:
        """Get the current session for a peer, if any."""
        session_id = self._peers.get(peer_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        """Evict a session. Returns False if it was not stored."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
            if session is None:
                return False
            if self._peers.get(session.peer_id) == session_id:
                del self._peers[session.peer_id]
        logger.info(f"Evicted session {session_id}")
        return True

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    @contextlib.contextmanager
    def locked(self, session_id: str) -> Iterator[Session]:
        """
        Hold the single-writer lock for a session.

        Raises:
            SessionNotFound: If the id is unknown
        """
        with self._lock:
            lock = self._locks.get(session_id)
        if lock is None:
            raise SessionNotFound(f"Session not found: {session_id}", {"session_id": session_id})
        with lock:
            yield self.get(session_id)

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot the store in its persisted layout.

        Each session is copied under its own lock.
        """
        sessions = {}
        for session_id in self.session_ids():
            try:
                with self.locked(session_id) as session:
                    sessions[session_id] = session.to_dict()
            except SessionNotFound:
                continue
        with self._lock:
            peers = dict(self._peers)
        return {"peers": peers, "sessions": sessions}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionStore":
        """Rebuild a store from to_dict() output, skipping invalid sessions."""
        store = cls()
        for session_id, session_data in data.get("sessions", {}).items():
            try:
                session = Session.from_dict(session_id, session_data)
            except MessagingError as e:
                logger.warning(f"Skipping invalid session {session_id}: {e}")
                continue
            store._sessions[session_id] = session
            store._locks[session_id] = threading.RLock()
        for peer_id, session_id in data.get("peers", {}).items():
            if session_id in store._sessions:
                store._peers[peer_id] = session_id
        return store

    def save(self, path: Path, vault: Vault) -> None:
        """Encrypt and atomically write the store to path."""
        vault.save(path, self.to_dict())
        logger.debug(f"Saved {len(self)} sessions to {path}")

    @classmethod
    def load(cls, path: Path, vault: Vault) -> "SessionStore":
        """Load a store from path, or return an empty store if it does not exist."""
        data = vault.load(path)
        if data is None:
            logger.debug("No existing sessions file found")
            return cls()
        store = cls.from_dict(data)
        logger.info(f"Loaded {len(store)} sessions")
        return store
