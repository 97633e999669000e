import base64

import pytest

from rentalhub.errors import CorruptToken, MalformedToken, TamperedToken
from rentalhub.services import token_codec
from rentalhub.services.token_codec import MIN_TOKEN_BYTES, NONCE_SIZE, TAG_SIZE

KEY = token_codec.derive_key("codec-test-secret")
OTHER_KEY = token_codec.derive_key("another-secret")


def _flip(token: str, index: int) -> str:
    raw = bytearray(base64.b64decode(token))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def test_round_trip_preserves_claims():
    claims = {"user_id": 7, "email": "a@b.com", "nested": {"roles": [1, 2]}, "flag": None}
    assert token_codec.decode(token_codec.encode(claims, KEY), KEY) == claims


def test_wire_layout_is_nonce_tag_ciphertext():
    token = token_codec.encode({"a": 1}, KEY)
    raw = base64.b64decode(token)
    plaintext_len = len(b'{"a":1}')
    assert len(raw) == NONCE_SIZE + TAG_SIZE + plaintext_len


def test_same_claims_encode_differently():
    assert token_codec.encode({"a": 1}, KEY) != token_codec.encode({"a": 1}, KEY)


def test_derive_key_normalizes_length():
    assert len(token_codec.derive_key("x")) == 32
    assert len(token_codec.derive_key("y" * 500)) == 32


def test_derive_key_rejects_empty_secret():
    with pytest.raises(ValueError):
        token_codec.derive_key("")


@pytest.mark.parametrize("region", ["nonce", "tag", "ciphertext"])
def test_single_bit_flip_is_detected(region):
    token = token_codec.encode({"user_id": 1, "business_id": 2}, KEY)
    index = {"nonce": 0, "tag": NONCE_SIZE + 3, "ciphertext": NONCE_SIZE + TAG_SIZE + 2}[region]
    with pytest.raises(TamperedToken):
        token_codec.decode(_flip(token, index), KEY)


def test_every_byte_is_authenticated():
    token = token_codec.encode({"k": "v"}, KEY)
    length = len(base64.b64decode(token))
    for index in range(length):
        with pytest.raises(TamperedToken):
            token_codec.decode(_flip(token, index), KEY)


def test_wrong_key_is_tampered():
    token = token_codec.encode({"user_id": 1}, KEY)
    with pytest.raises(TamperedToken):
        token_codec.decode(token, OTHER_KEY)


@pytest.mark.parametrize(
    "token",
    [
        "",
        None,
        12345,
        "not base64 at all!!",
        base64.b64encode(b"short").decode("ascii"),
        base64.b64encode(b"x" * (MIN_TOKEN_BYTES - 1)).decode("ascii"),
    ],
)
def test_malformed_tokens(token):
    assert token_codec.structure_check(token) is False
    with pytest.raises(MalformedToken):
        token_codec.decode(token, KEY)


def test_structure_check_accepts_encoded_token():
    assert token_codec.structure_check(token_codec.encode({"a": 1}, KEY)) is True


def test_non_json_plaintext_is_corrupt():
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    nonce = b"\x00" * NONCE_SIZE
    sealed = AESGCM(KEY).encrypt(nonce, b"\xffnot-json", None)
    raw = nonce + sealed[-TAG_SIZE:] + sealed[:-TAG_SIZE]
    with pytest.raises(CorruptToken):
        token_codec.decode(base64.b64encode(raw).decode("ascii"), KEY)


def test_json_array_payload_is_corrupt():
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    nonce = b"\x01" * NONCE_SIZE
    sealed = AESGCM(KEY).encrypt(nonce, b"[1, 2, 3]", None)
    raw = nonce + sealed[-TAG_SIZE:] + sealed[:-TAG_SIZE]
    with pytest.raises(CorruptToken):
        token_codec.decode(base64.b64encode(raw).decode("ascii"), KEY)
