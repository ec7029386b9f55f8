import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from base58 import b58decode
from solders.keypair import Keypair

from orchestrator_errors import KeyConflict, MalformedSecret

logger = logging.getLogger(__name__)

KEYPAIR_LENGTH = 64
SEED_LENGTH = 32


@dataclass(frozen=True)
class AuditRecord:
    role: str
    address: str
    origin: str  # 'generated' or 'external'
    timestamp: str


def _keypair_from_bytes(secret_bytes):
    if len(secret_bytes) == KEYPAIR_LENGTH:
        return Keypair.from_bytes(secret_bytes)
    if len(secret_bytes) == SEED_LENGTH:
        return Keypair.from_seed(secret_bytes)
    raise ValueError(f"expected {KEYPAIR_LENGTH} or {SEED_LENGTH} bytes, got {len(secret_bytes)}")


def parse_secret(secret):
    """
    Decode a secret key supplied as raw bytes or as text.

    Text may be a JSON byte array (Uint8Array export), a hex string with an
    optional 0x prefix, or a base58 string (common wallet export format).

    Raises:
        MalformedSecret: if no format yields a valid keypair.
    """
    if isinstance(secret, (bytes, bytearray)):
        try:
            return _keypair_from_bytes(bytes(secret))
        except ValueError as e:
            raise MalformedSecret(f"Invalid secret key bytes: {e}") from e

    if not isinstance(secret, str) or not secret.strip():
        raise MalformedSecret("Secret key must be bytes or a non-empty string")

    text = secret.strip()
    error_messages = []

    # 1. Array of bytes
    if text.startswith('[') and text.endswith(']'):
        try:
            return _keypair_from_bytes(bytes(json.loads(text)))
        except (ValueError, TypeError) as e:
            error_messages.append(f"Array format failed: {e}")

    # 2. Hex string
    hex_text = text[2:] if text.lower().startswith('0x') else text
    if len(hex_text) in (2 * KEYPAIR_LENGTH, 2 * SEED_LENGTH):
        try:
            return _keypair_from_bytes(bytes.fromhex(hex_text))
        except ValueError as e:
            error_messages.append(f"Hex decode failed: {e}")

    # 3. Base58 string
    try:
        return _keypair_from_bytes(b58decode(text))
    except ValueError as e:
        error_messages.append(f"Base58 decode failed: {e}")

    raise MalformedSecret(f"Could not parse private key in any format: {'; '.join(error_messages)}")


class KeyVault:
    """
    Signing keys of one orchestration session, addressed by role name.

    A role is assigned at most one keypair; asking again returns the same one.
    First requests for the same role are serialized with a per-role lock so
    concurrent callers never end up with different keys for one role.
    """

    def __init__(self):
        self._keys = {}
        self._origins = {}
        self._role_locks = {}
        self._guard = threading.Lock()
        self.audit_log = []

    def _lock_for(self, role):
        with self._guard:
            lock = self._role_locks.get(role)
            if lock is None:
                lock = threading.Lock()
                self._role_locks[role] = lock
            return lock

    def _record(self, role, keypair, origin):
        record = AuditRecord(role, str(keypair.pubkey()), origin, datetime.now().isoformat())
        self.audit_log.append(record)
        logger.info(f"Key vault: {role} -> {record.address} ({origin})")

    def key_for(self, role):
        """Return the keypair for ``role``, generating one on first request."""
        with self._lock_for(role):
            keypair = self._keys.get(role)
            if keypair is None:
                keypair = Keypair()
                self._keys[role] = keypair
                self._origins[role] = 'generated'
            self._record(role, keypair, self._origins[role])
            return keypair

    def external_key_for(self, role, secret):
        """Import a caller-supplied secret (e.g. a pre-funded payer) under ``role``."""
        keypair = parse_secret(secret)
        with self._lock_for(role):
            existing = self._keys.get(role)
            if existing is not None:
                if existing.pubkey() != keypair.pubkey():
                    raise KeyConflict(f"Role {role} already holds key {existing.pubkey()}")
                keypair = existing
            else:
                self._keys[role] = keypair
                self._origins[role] = 'external'
            self._record(role, keypair, 'external')
            return keypair

    def get(self, role):
        return self._keys.get(role)

    def roles(self):
        return list(self._keys)

    def session(self):
        """A new vault for one session, holding only this vault's imported keys."""
        with self._guard:
            imported = {role: keypair for role, keypair in self._keys.items() if self._origins[role] == 'external'}
        session = KeyVault()
        for role, keypair in imported.items():
            session._keys[role] = keypair
            session._origins[role] = 'external'
        return session

    def keypairs(self):
        return list(self._keys.values())

    def discard_generated(self):
        """Forget generated keys at the end of a session; imported keys stay."""
        with self._guard:
            generated = [role for role, origin in self._origins.items() if origin == 'generated']
            for role in generated:
                self._keys.pop(role, None)
                self._origins.pop(role, None)
                self._role_locks.pop(role, None)
        if generated:
            logger.info(f"Discarded generated keys for roles: {', '.join(generated)}")
        return generated
