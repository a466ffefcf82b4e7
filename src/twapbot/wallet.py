"""Wallet: Ed25519 keystore loading and Sui address derivation.

The keystore is a small JSON document holding a base64 private key::

    {"privateKey": "<base64>"}
    {"schema": "ED25519", "privateKey": "<base64>"}

The decoded key may be a bare 32-byte seed, a 33-byte Sui-style key
(scheme flag byte followed by the seed), or a 64-byte seed+public-key
blob. Encrypted keystores are rejected.

For container deployments the whole keystore JSON can be supplied
base64-encoded via ``KEYSTORE_DATA`` instead of a file path.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from pathlib import Path
from typing import Protocol

import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from twapbot.errors import WalletError

logger = structlog.get_logger(__name__)

ED25519_FLAG = 0x00

FULLNODE_URLS: dict[str, str] = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
}


class Wallet(Protocol):
    """What the gateway and runner need from a wallet."""

    def address(self) -> str: ...


def rpc_url_for_network(network: str) -> str:
    """Resolve a network name (or custom URL) to a full-node RPC endpoint.

    Unknown names fall back to mainnet.
    """
    key = network.lower()
    if key in FULLNODE_URLS:
        return FULLNODE_URLS[key]
    if network.startswith("http"):
        return network
    return FULLNODE_URLS["mainnet"]


def derive_sui_address(public_key: bytes) -> str:
    """Sui address: blake2b-256 over the scheme flag and the raw public key."""
    digest = hashlib.blake2b(bytes([ED25519_FLAG]) + public_key, digest_size=32)
    return "0x" + digest.hexdigest()


class KeystoreWallet:
    """Ed25519 wallet backed by a plain JSON keystore.

    Parameters
    ----------
    keystore_path : str
        Path to the keystore JSON file. Ignored when ``keystore_data`` is set.
    password : str | None
        Accepted for encrypted keystores, which are not supported yet.
    network : str
        ``mainnet``, ``testnet``, ``devnet`` or a custom ``http(s)://`` RPC URL.
    keystore_data : str | None
        Base64-encoded keystore JSON, used instead of the file when given.
    """

    def __init__(
        self,
        keystore_path: str,
        password: str | None = None,
        network: str = "mainnet",
        keystore_data: str | None = None,
    ) -> None:
        self._keystore_path = keystore_path
        self._private_key = self._load_keystore(keystore_path, password, keystore_data)
        self.public_key: bytes = self._private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw,
        )
        self._address = derive_sui_address(self.public_key)
        self.network = network
        self.rpc_url = rpc_url_for_network(network)

        logger.info(
            "wallet_loaded",
            address=self._address,
            network=network,
            rpc_url=self.rpc_url,
        )

    def address(self) -> str:
        return self._address

    def sign(self, message: bytes) -> bytes:
        """Raw Ed25519 signature over ``message``."""
        return self._private_key.sign(message)

    @staticmethod
    def _load_keystore(
        keystore_path: str,
        password: str | None,
        keystore_data: str | None,
    ) -> Ed25519PrivateKey:
        try:
            if keystore_data:
                text = base64.b64decode(keystore_data).decode("utf-8")
            else:
                text = Path(keystore_path).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise WalletError(f"Keystore file not found at: {keystore_path}") from exc
        except (OSError, binascii.Error, UnicodeDecodeError) as exc:
            raise WalletError(f"Failed to load keystore: {exc}") from exc

        try:
            keystore = json.loads(text)
        except json.JSONDecodeError as exc:
            raise WalletError(f"Failed to load keystore: {exc}") from exc

        if not isinstance(keystore, dict):
            raise WalletError("Failed to load keystore: Unsupported keystore format")

        encoded = keystore.get("privateKey")
        if not encoded:
            if keystore.get("encryptedPrivateKey"):
                raise WalletError(
                    "Encrypted keystore decryption not yet implemented. "
                    "Please use unencrypted keystore format."
                )
            raise WalletError("Failed to load keystore: Unsupported keystore format")

        schema = keystore.get("schema", "ED25519")
        if str(schema).upper() != "ED25519":
            raise WalletError(f"Failed to load keystore: unsupported key scheme {schema}")

        try:
            raw = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise WalletError(f"Failed to load keystore: invalid base64 key: {exc}") from exc

        return Ed25519PrivateKey.from_private_bytes(_extract_seed(raw))


def _extract_seed(raw: bytes) -> bytes:
    if len(raw) == 32:
        return raw
    if len(raw) == 33:
        if raw[0] != ED25519_FLAG:
            raise WalletError(
                f"Failed to load keystore: unsupported key scheme flag {raw[0]:#04x}"
            )
        return raw[1:]
    if len(raw) == 64:
        return raw[:32]
    raise WalletError(f"Failed to load keystore: unexpected key length {len(raw)}")
