"""
Nostr keys, events (NIP-01) and encrypted direct messages (NIP-04).
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import time
from dataclasses import dataclass, field
from typing import Any

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


class NostrError(Exception):
    pass


class NostrKeys:
    """A secp256k1 key pair identified on the relay by its x-only public key."""

    def __init__(self, private_key: PrivateKey | None = None):
        if private_key is None:
            private_key = PrivateKey()
        self._private_key = private_key

    @classmethod
    def from_hex(cls, secret_hex: str) -> NostrKeys:
        try:
            return cls(PrivateKey(bytes.fromhex(secret_hex)))
        except ValueError as e:
            raise NostrError(f"Invalid secret key: {e}") from e

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def secret_hex(self) -> str:
        return self._private_key.secret.hex()

    @property
    def public_key_hex(self) -> str:
        return self._private_key.public_key.format(compressed=True)[1:].hex()

    def sign(self, message_hash: bytes) -> bytes:
        """BIP340 schnorr signature over a 32-byte hash."""
        return self._private_key.sign_schnorr(message_hash, os.urandom(32))

    @staticmethod
    def is_valid_public_key(public_key_hex: str) -> bool:
        """Whether ``public_key_hex`` is an x-only key on the curve."""
        try:
            PublicKeyXOnly(bytes.fromhex(public_key_hex))
        except ValueError:
            return False
        return True

    def shared_secret(self, public_key_hex: str) -> bytes:
        """NIP-04 shared secret: the bare x coordinate of the ECDH point."""
        try:
            point = PublicKey(b"\x02" + bytes.fromhex(public_key_hex))
        except ValueError as e:
            raise NostrError(f"Invalid public key {public_key_hex}: {e}") from e
        return point.multiply(self._private_key.secret).format(compressed=True)[1:]


@dataclass
class Event:
    pubkey: str
    created_at: int
    kind: int
    tags: list[list[str]] = field(default_factory=list)
    content: str = ""
    id: str = ""
    sig: str = ""

    def serialize_for_id(self) -> bytes:
        payload = [0, self.pubkey, self.created_at, self.kind, self.tags, self.content]
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def compute_id(self) -> str:
        return hashlib.sha256(self.serialize_for_id()).hexdigest()

    def verify(self) -> bool:
        """Check that the id matches the content and the signature is valid."""
        if self.id != self.compute_id():
            return False
        try:
            return PublicKeyXOnly(bytes.fromhex(self.pubkey)).verify(
                bytes.fromhex(self.sig), bytes.fromhex(self.id)
            )
        except ValueError:
            return False

    def tag_values(self, name: str) -> list[str]:
        return [tag[1] for tag in self.tags if len(tag) >= 2 and tag[0] == name]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Event:
        if not isinstance(data, dict):
            raise NostrError("Event must be a JSON object")
        try:
            event = cls(
                id=data["id"],
                pubkey=data["pubkey"],
                created_at=data["created_at"],
                kind=data["kind"],
                tags=data["tags"],
                content=data["content"],
                sig=data["sig"],
            )
        except KeyError as e:
            raise NostrError(f"Event is missing field {e}") from e

        if not all(isinstance(v, str) for v in (event.id, event.pubkey, event.content, event.sig)):
            raise NostrError("Event string fields have wrong types")
        if not isinstance(event.created_at, int) or not isinstance(event.kind, int):
            raise NostrError("Event integer fields have wrong types")
        if not isinstance(event.tags, list) or not all(
            isinstance(tag, list) and all(isinstance(v, str) for v in tag) for tag in event.tags
        ):
            raise NostrError("Event tags must be a list of string lists")
        return event


def build_event(
    keys: NostrKeys,
    kind: int,
    content: str,
    tags: list[list[str]] | None = None,
    created_at: int | None = None,
) -> Event:
    event = Event(
        pubkey=keys.public_key_hex,
        created_at=int(time.time()) if created_at is None else created_at,
        kind=kind,
        tags=tags or [],
        content=content,
    )
    event.id = event.compute_id()
    event.sig = keys.sign(bytes.fromhex(event.id)).hex()
    return event


def matches_filter(event: Event, filt: dict[str, Any]) -> bool:
    """NIP-01 filter matching for the fields this client uses."""
    if "ids" in filt and event.id not in filt["ids"]:
        return False
    if "authors" in filt and event.pubkey not in filt["authors"]:
        return False
    if "kinds" in filt and event.kind not in filt["kinds"]:
        return False
    if "since" in filt and event.created_at < filt["since"]:
        return False
    if "until" in filt and event.created_at > filt["until"]:
        return False
    for key, values in filt.items():
        if key.startswith("#") and len(key) == 2:
            if not set(event.tag_values(key[1])) & set(values):
                return False
    return True


def nip04_encrypt(keys: NostrKeys, recipient_hex: str, plaintext: str) -> str:
    key = keys.shared_secret(recipient_hex)
    iv = os.urandom(16)

    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return f"{base64.b64encode(ciphertext).decode()}?iv={base64.b64encode(iv).decode()}"


def nip04_decrypt(keys: NostrKeys, sender_hex: str, content: str) -> str:
    try:
        ct_b64, iv_b64 = content.split("?iv=")
        ciphertext = base64.b64decode(ct_b64, validate=True)
        iv = base64.b64decode(iv_b64, validate=True)
        if len(iv) != 16:
            raise ValueError("IV must be 16 bytes")

        decryptor = Cipher(algorithms.AES(keys.shared_secret(sender_hex)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise NostrError(f"Cannot decrypt message from {sender_hex[:8]}: {e}") from e
