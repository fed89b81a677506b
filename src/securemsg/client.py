"""
SecureMsg - Messaging client.

Created by orpheus497

Glues the keyring, session establishment and message codec to a relay:

- initialize()        load or create identity keys, load sessions, publish bundle
- start_session(peer) claim the peer's bundle and establish a session
- send_message()      encrypt and enqueue; the ratchet is rolled back if the
                      relay call fails or is cancelled
- receive_messages()  drain the mailbox, accept incoming handshakes, decrypt

Keyring and sessions are persisted through a password Vault after every
completed call when a data directory is given.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .codec import MessageCodec, MessagePackage
from .config import Config
from .constants import KEYRING_FILENAME, SESSIONS_FILENAME
from .errors import (
    BundleNotFound,
    MalformedPackage,
    MessagingError,
    RelayError,
    SessionNotFound,
    UninitializedClient,
)
from .establish import SessionEstablisher
from .keyring import IdentityKeyring
from .session import SessionStore
from .vault import Vault

logger = logging.getLogger(__name__)


@dataclass
class ReceivedMessage:
    """A decrypted incoming message."""

    sender: str
    content: str
    timestamp: int
    session_id: str
    counter: int


class MessagingClient:
    """End-to-end encrypted messaging for one local user."""

    def __init__(
        self,
        user_id: str,
        relay,
        data_dir: Optional[Path] = None,
        password: Optional[str] = None,
        config: Optional[Config] = None,
    ):
        """
        Initialize client.

        Args:
            user_id: Local user id, as published to the relay
            relay: RelayClient or LocalRelay
            data_dir: Directory for the encrypted keyring and sessions;
                None keeps everything in memory
            password: Vault password, required when data_dir is given
            config: Configuration (defaults when omitted)
        """
        if not user_id:
            raise ValueError("user_id must not be empty")
        if data_dir is not None and not password:
            raise ValueError("A password is required to persist keys")

        self.user_id = user_id
        self.relay = relay
        self.data_dir = Path(data_dir).expanduser() if data_dir is not None else None
        self.config = config or Config()
        self.vault: Optional[Vault] = None
        if self.data_dir is not None:
            self.vault = Vault(
                password,
                time_cost=self.config.get("vault", "time_cost"),
                memory_cost=self.config.get("vault", "memory_cost"),
                parallelism=self.config.get("vault", "parallelism"),
            )

        self.keyring: Optional[IdentityKeyring] = None
        self.store: Optional[SessionStore] = None
        self.establisher: Optional[SessionEstablisher] = None
        self.codec: Optional[MessageCodec] = None
        self._peer_locks: Dict[str, asyncio.Lock] = {}
        self._pending: List[Dict[str, Any]] = []

    @property
    def initialized(self) -> bool:
        return self.codec is not None

    @property
    def keyring_path(self) -> Optional[Path]:
        if self.data_dir is None:
            return None
        return self.data_dir / KEYRING_FILENAME.format(user=self.user_id)

    @property
    def sessions_path(self) -> Optional[Path]:
        if self.data_dir is None:
            return None
        return self.data_dir / SESSIONS_FILENAME.format(user=self.user_id)

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise UninitializedClient(f"Client {self.user_id} is not initialized")

    def _peer_lock(self, peer_id: str) -> asyncio.Lock:
        if peer_id not in self._peer_locks:
            self._peer_locks[peer_id] = asyncio.Lock()
        return self._peer_locks[peer_id]

    async def initialize(self) -> None:
        """
        Load or generate identity material, load sessions and publish the bundle.

        Raises:
            KeyGenerationFailure: If key generation fails
            VaultError: If stored keys cannot be decrypted (wrong password)
            RelayUnavailable: If the bundle cannot be published
        """
        one_time_count = self.config.get("client", "one_time_prekeys")
        loop = asyncio.get_running_loop()

        keyring_data = self.vault.load(self.keyring_path) if self.vault else None
        if keyring_data is None:
            keyring = IdentityKeyring()
            # Key generation is CPU bound; keep it off the event loop
            await loop.run_in_executor(None, keyring.initialize, one_time_count)
            logger.info(f"Generated new identity for {self.user_id}")
        else:
            keyring = IdentityKeyring.from_dict(keyring_data)
            await loop.run_in_executor(None, keyring.replenish, one_time_count)
            logger.info(f"Loaded identity for {self.user_id}")

        if self.vault:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.store = SessionStore.load(self.sessions_path, self.vault)
        else:
            self.store = SessionStore()

        self.keyring = keyring
        self.establisher = SessionEstablisher(keyring, self.store)
        self.codec = MessageCodec(self.store, self.user_id)
        self._save_keyring()

        await self.relay.publish(keyring.create_registration_bundle(self.user_id))
        logger.info(f"Published bundle for {self.user_id}")

    def _save_keyring(self) -> None:
        if self.vault:
            self.vault.save(self.keyring_path, self.keyring.to_dict())

    def save(self) -> None:
        """Persist sessions (after a call has completed)."""
        if self.vault and self.store is not None:
            self.store.save(self.sessions_path, self.vault)

    async def list_users(self) -> List[str]:
        """Registered users other than ourselves."""
        users = await self.relay.list_users()
        return [user for user in users if user != self.user_id]

    async def start_session(self, peer_id: str) -> str:
        """
        Return the current session with peer_id, establishing one if needed.

        Raises:
            UninitializedClient: If initialize() has not completed
            BundleNotFound: If peer_id never published a bundle
            InvalidBundleSignature: If the peer's bundle fails verification
        """
        self._require_initialized()
        if peer_id == self.user_id:
            raise ValueError("Cannot open a session with yourself")

        existing = self.store.for_peer(peer_id)
        if existing is not None:
            return existing.session_id

        bundle = await self.relay.claim(peer_id)
        session_id = self.establisher.establish_session(peer_id, bundle)
        self.save()
        return session_id

    async def send_message(self, peer_id: str, text: str) -> MessagePackage:
        """
        Encrypt text for peer_id and hand it to the relay.

        Raises:
            RelayUnavailable: If the relay cannot be reached (session unchanged)
        """
        self._require_initialized()
        async with self._peer_lock(peer_id):
            session_id = await self.start_session(peer_id)
            with self.store.locked(session_id) as session:
                snapshot = session.copy()

            package = self.codec.encrypt(session, text)
            try:
                await self.relay.enqueue(peer_id, package)
            except BaseException:
                with self.store.locked(session_id) as session:
                    session.restore(snapshot)
                logger.warning(f"Delivery to {peer_id} failed; rolled back message #{package.counter}")
                raise

            self.save()
        logger.info(f"Sent message #{package.counter} to {peer_id}")
        return package

    async def process_package(self, data: Dict[str, Any]) -> ReceivedMessage:
        """
        Decrypt one drained package, accepting its handshake if needed.

        Raises:
            MalformedPackage: If the package cannot be parsed or is misaddressed
            SessionNotFound: If the session is unknown and no handshake is attached
            InvalidHandshake: If the attached handshake cannot be accepted
            ReplayDetected, MacMismatch, DecryptionFailure: From decryption
        """
        self._require_initialized()
        package = MessagePackage.from_dict(data)
        if package.recipient != self.user_id:
            raise MalformedPackage(
                f"Package addressed to {package.recipient}", {"recipient": package.recipient}
            )

        accepted = False
        previous = self.store.for_peer(package.sender)
        one_time_pair = None
        if package.session_id not in self.store:
            handshake = package.handshake
            if handshake is None:
                raise SessionNotFound(
                    f"Session not found: {package.session_id}", {"session_id": package.session_id}
                )
            if handshake.one_time_pre_key:
                one_time_pair = self.keyring.one_time_pre_keys.get(handshake.one_time_pre_key)
            bundle = await self.relay.fetch(package.sender)
            self.establisher.accept_session(package.sender, bundle, package.session_id, handshake)
            accepted = True

        try:
            if self.store.get(package.session_id).peer_id != package.sender:
                raise MalformedPackage(
                    f"Sender {package.sender} does not own session {package.session_id}",
                    {"session_id": package.session_id},
                )
            content = self.codec.decrypt(package)
        except MessagingError:
            if accepted:
                # A handshake whose first message fails is not kept
                self.store.remove(package.session_id)
                if previous is not None:
                    self.store.add(previous)
                if one_time_pair is not None:
                    self.keyring.restore_one_time_pre_key(one_time_pair)
            raise

        if accepted:
            self._save_keyring()
            logger.info(f"New session from {package.sender}")
        return ReceivedMessage(
            sender=package.sender,
            content=content,
            timestamp=package.timestamp,
            session_id=package.session_id,
            counter=package.counter,
        )

    async def receive_messages(self) -> List[ReceivedMessage]:
        """
        Drain the mailbox and decrypt every package.

        Packages that fail are logged with their error code and dropped;
        the rest are still processed. Packages that could not be handled
        because the relay failed are held and retried on the next call,
        together with every later package from the same sender.
        """
        self._require_initialized()
        raw_packages = self._pending + await self.relay.drain(self.user_id)
        self._pending = []
        deferred_senders = set()
        received = []
        for data in raw_packages:
            sender = data.get("sender") if isinstance(data, dict) else None
            if isinstance(sender, str) and sender in deferred_senders:
                self._pending.append(data)
                continue
            try:
                received.append(await self.process_package(data))
            except MessagingError as e:
                if isinstance(e, RelayError) and not isinstance(e, BundleNotFound):
                    self._pending.append(data)
                    if isinstance(sender, str):
                        deferred_senders.add(sender)
                    logger.warning(
                        f"Holding package from {sender} until the relay recovers: [{e.code.value}] {e.message}"
                    )
                else:
                    logger.warning(f"Dropped package from {sender}: [{e.code.value}] {type(e).__name__}: {e.message}")

        if raw_packages:
            self.save()
        return received
