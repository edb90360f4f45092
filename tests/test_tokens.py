import re

from authcore.service.tokens import TOKEN_BYTES, generate_token, token_digest, token_prefix


def test_generated_tokens_are_hex_and_long_enough():
    token = generate_token()
    assert len(token) == TOKEN_BYTES * 2
    assert re.fullmatch(r"[0-9a-f]+", token)


def test_generated_tokens_do_not_repeat():
    assert len({generate_token() for _ in range(100)}) == 100


def test_digest_is_stable_and_hides_token():
    token = generate_token()
    assert token_digest(token) == token_digest(token)
    assert token not in token_digest(token)
    assert len(token_digest(token)) == 64


def test_prefix_is_short():
    assert token_prefix("abcdef0123456789") == "abcdef01"
