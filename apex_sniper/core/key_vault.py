"""
Key Vault

Custodial storage of per-user Solana keypairs.

At rest every secret is sealed with AES-256-GCM under a key derived once,
at construction, from the operator secret via scrypt. Each record uses a fresh
12-byte nonce and binds the user id as associated data, so a record copied to
another user fails authentication. The stored form is
base64(nonce || ciphertext+tag).
"""

import base64
import binascii
import json
import logging
import os
import re
from typing import Optional, Union, Sequence

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from ..constants import SECRET_KEY_LENGTH
from ..db.database import DatabaseManager
from ..exceptions import InvalidKeyFormat, NoWallet, KeyDecryptionFailed, MalformedTransaction

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")

KeyMaterial = Union[str, bytes, bytearray, Sequence[int]]


def _bytes_from_ints(values) -> bytes:
    if not all(isinstance(v, int) and not isinstance(v, bool) and 0 <= v <= 255 for v in values):
        raise InvalidKeyFormat()
    return bytes(values)


def decode_secret(raw: KeyMaterial) -> bytes:
    """
    Decode user-supplied key material into the 64-byte secret.

    Accepts raw bytes, a list of ints, a JSON array string, hex, base58 or
    base64. Raises InvalidKeyFormat for anything else.
    """
    if isinstance(raw, (bytes, bytearray)):
        secret = bytes(raw)
    elif isinstance(raw, (list, tuple)):
        secret = _bytes_from_ints(raw)
    elif isinstance(raw, str):
        secret = _decode_secret_string(raw.strip())
    else:
        raise InvalidKeyFormat()

    if len(secret) != SECRET_KEY_LENGTH:
        raise InvalidKeyFormat(f"Invalid key length: expected {SECRET_KEY_LENGTH} bytes, got {len(secret)}")
    return secret


def _decode_secret_string(text: str) -> bytes:
    if not text:
        raise InvalidKeyFormat()

    if text.startswith("["):
        try:
            values = json.loads(text)
        except ValueError:
            raise InvalidKeyFormat()
        if not isinstance(values, list):
            raise InvalidKeyFormat()
        return _bytes_from_ints(values)

    if _HEX_RE.match(text) and len(text.removeprefix("0x")) == SECRET_KEY_LENGTH * 2:
        return bytes.fromhex(text.removeprefix("0x"))

    try:
        decoded = base58.b58decode(text)
        if len(decoded) == SECRET_KEY_LENGTH:
            return decoded
    except ValueError:
        pass

    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidKeyFormat()


def keypair_from_secret(secret: bytes) -> Keypair:
    """Build a Keypair, checking the embedded public half matches the seed"""
    try:
        keypair = Keypair.from_seed(secret[:32])
    except ValueError:
        raise InvalidKeyFormat()
    if bytes(keypair.pubkey()) != secret[32:]:
        raise InvalidKeyFormat("Public key does not match the private key")
    return keypair


def format_secret(secret: bytes, encoding: str = "json") -> str:
    """Render an exported secret as a JSON array, base58 or hex"""
    if encoding == "json":
        return json.dumps(list(secret))
    if encoding == "base58":
        return base58.b58encode(secret).decode()
    if encoding == "hex":
        return secret.hex()
    raise ValueError(f"Unknown encoding: {encoding}")


class KeyVault:
    """
    Encrypted keypair custody, one record per user.

    Usage:
        vault = KeyVault(db, config.wallet_encryption_key)
        pubkey = vault.generate("user-1")
        signed = vault.sign("user-1", tx_bytes)
    """

    def __init__(
        self,
        db: DatabaseManager,
        encryption_secret: str,
        salt: str = "apex-sniper-wallet",
        kdf_cost: int = 2 ** 15
    ):
        if not encryption_secret:
            raise ValueError("encryption secret is required")
        self.db = db
        kdf = Scrypt(salt=salt.encode(), length=32, n=kdf_cost, r=8, p=1)
        self._aead = AESGCM(kdf.derive(encryption_secret.encode()))

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    def _encrypt(self, user_id: str, secret: bytes) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, secret, user_id.encode())
        return base64.b64encode(nonce + sealed).decode()

    def _decrypt(self, user_id: str, record: str) -> bytes:
        try:
            blob = base64.b64decode(record, validate=True)
        except (binascii.Error, ValueError):
            raise KeyDecryptionFailed(user_id=user_id)
        if len(blob) <= NONCE_SIZE:
            raise KeyDecryptionFailed(user_id=user_id)
        try:
            return self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], user_id.encode())
        except InvalidTag:
            logger.error(f"Wallet record for user {user_id} failed authentication")
            raise KeyDecryptionFailed(user_id=user_id)

    def _store(self, user_id: str, keypair: Keypair) -> str:
        public_key = str(keypair.pubkey())
        self.db.save_wallet(user_id, public_key, self._encrypt(user_id, bytes(keypair)))
        return public_key

    def _load_keypair(self, user_id: str) -> Keypair:
        record = self.db.get_wallet(user_id)
        if record is None:
            raise NoWallet(user_id=user_id)
        return Keypair.from_bytes(self._decrypt(user_id, record["encrypted_secret"]))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate(self, user_id: str) -> str:
        """Create a fresh keypair for the user (overwrites any existing one)"""
        public_key = self._store(user_id, Keypair())
        logger.info(f"Generated wallet for user {user_id}: {public_key}")
        return public_key

    def import_key(self, user_id: str, raw_key_material: KeyMaterial) -> str:
        """
        Import an existing secret key. Destructive: replaces the user's record.

        Nothing is written unless the material decodes to a consistent keypair.
        """
        secret = decode_secret(raw_key_material)
        keypair = keypair_from_secret(secret)
        public_key = self._store(user_id, keypair)
        logger.info(f"Imported wallet for user {user_id}: {public_key}")
        return public_key

    def export(self, user_id: str) -> bytes:
        """Decrypted 64-byte secret (seed || public key)"""
        return bytes(self._load_keypair(user_id))

    def public_key(self, user_id: str) -> Optional[str]:
        """Stored public key, no decryption involved"""
        record = self.db.get_wallet(user_id)
        return record["public_key"] if record else None

    def pubkey(self, user_id: str) -> Pubkey:
        public_key = self.public_key(user_id)
        if public_key is None:
            raise NoWallet(user_id=user_id)
        return Pubkey.from_string(public_key)

    def keypair(self, user_id: str) -> Keypair:
        return self._load_keypair(user_id)

    def sign(self, user_id: str, transaction: Union[bytes, VersionedTransaction]) -> VersionedTransaction:
        """
        Sign an unsigned (or partially signed) versioned transaction for the user.

        Raises:
            NoWallet, KeyDecryptionFailed: key problems
            MalformedTransaction: bytes do not parse or the user is not the fee payer
        """
        keypair = self._load_keypair(user_id)
        try:
            tx = transaction if isinstance(transaction, VersionedTransaction) \
                else VersionedTransaction.from_bytes(bytes(transaction))
            return VersionedTransaction(tx.message, [keypair])
        except Exception as e:
            raise MalformedTransaction(user_id=user_id, error=str(e))
