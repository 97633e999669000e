"""Authenticated symmetric encoding of JSON claim sets.

Wire format (base64, standard alphabet)::

    nonce (16 bytes) || tag (16 bytes) || ciphertext

The cipher is AES-256-GCM. The 256-bit key is the SHA-256 digest of the
configured secret string, so secrets of any length normalize to key size.
"""

import base64
import binascii
import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from rentalhub.errors import CorruptToken, MalformedToken, TamperedToken

NONCE_SIZE = 16
TAG_SIZE = 16
MIN_TOKEN_BYTES = NONCE_SIZE + TAG_SIZE + 1


def derive_key(secret: str) -> bytes:
    if not secret:
        raise ValueError("Token secret must not be empty")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encode(claims: dict[str, Any], key: bytes) -> str:
    plaintext = json.dumps(claims, separators=(",", ":")).encode("utf-8")
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    # AESGCM returns ciphertext || tag; the wire format carries the tag first
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def _to_bytes(token: Any) -> bytes:
    if not isinstance(token, str) or not token:
        raise MalformedToken("Token is missing or not a string")
    try:
        raw = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedToken("Token is not valid base64") from exc
    if len(raw) < MIN_TOKEN_BYTES:
        raise MalformedToken("Token is too short to contain nonce and tag")
    return raw


def structure_check(token: Any) -> bool:
    """Cheap validity test that never touches the cipher."""
    try:
        _to_bytes(token)
    except MalformedToken:
        return False
    return True


def decode(token: str, key: bytes) -> dict[str, Any]:
    raw = _to_bytes(token)
    nonce = raw[:NONCE_SIZE]
    tag = raw[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
    ciphertext = raw[NONCE_SIZE + TAG_SIZE :]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise TamperedToken("Token failed authentication") from exc
    try:
        claims = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptToken("Token payload is not valid JSON") from exc
    if not isinstance(claims, dict):
        raise CorruptToken("Token payload is not a JSON object")
    return claims
