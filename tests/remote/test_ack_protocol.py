"""Tests for the launch acknowledgement token and stdout scanner."""

import re
from unittest.mock import patch

import pytest

from remote_optimizer.remote.ack import ACK_TOKEN_PREFIX, AckScanner, append_ack, build_ack_token

pytestmark = pytest.mark.unit

TOKEN = "__SC_REMOTE_OPT_ACK__abc_12345678"


# ---------------------------------------------------------------------------
# Token
# ---------------------------------------------------------------------------


def test_token_is_prefixed_and_shell_safe() -> None:
    token = build_ack_token()

    assert token.startswith(ACK_TOKEN_PREFIX)
    assert re.fullmatch(r"[A-Za-z0-9_]+", token)


def test_token_encodes_time_in_base36() -> None:
    assert build_ack_token(now_ms=36, rand="zzzzzzzz") == f"{ACK_TOKEN_PREFIX}10_zzzzzzzz"


def test_token_strips_unsafe_characters() -> None:
    assert build_ack_token(now_ms=0, rand="a'b;c d$") == f"{ACK_TOKEN_PREFIX}0_abcd"


def test_tokens_differ_between_calls() -> None:
    assert build_ack_token() != build_ack_token()


def test_token_suffix_comes_from_csprng() -> None:
    with patch("remote_optimizer.remote.ack.secrets.choice", return_value="q") as choice:
        token = build_ack_token(now_ms=0)

    assert token == f"{ACK_TOKEN_PREFIX}0_qqqqqqqq"
    assert choice.call_count == 8


def test_token_suffix_is_eight_base36_characters() -> None:
    suffix = build_ack_token(now_ms=1).rsplit("_", 1)[1]

    assert re.fullmatch(r"[0-9a-z]{8}", suffix)


def test_append_ack_prints_token_on_its_own_line() -> None:
    assert append_ack("echo hi", TOKEN) == f"echo hi\nprintf '%s\\n' '{TOKEN}'\n"


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------


def test_exact_line_resolves() -> None:
    scanner = AckScanner(TOKEN)

    assert scanner.feed(f"starting\n{TOKEN}\n") is True
    assert scanner.acknowledged
    assert scanner.output == "starting"


def test_token_split_across_chunks_resolves_once_line_completes() -> None:
    scanner = AckScanner(TOKEN)

    assert scanner.feed(TOKEN[:10]) is False
    assert scanner.feed(TOKEN[10:]) is False
    assert scanner.feed("\n") is True


def test_carriage_return_is_tolerated() -> None:
    scanner = AckScanner(TOKEN)

    assert scanner.feed(f"{TOKEN}\r\n") is True


def test_prefix_of_longer_line_does_not_resolve() -> None:
    scanner = AckScanner(TOKEN)

    assert scanner.feed(f"{TOKEN}extra\n") is False
    assert scanner.feed(f"echo {TOKEN}\n") is False
    assert not scanner.acknowledged
    assert scanner.output == f"{TOKEN}extra\necho {TOKEN}"


def test_resolves_at_most_once() -> None:
    scanner = AckScanner(TOKEN)

    assert scanner.feed(f"{TOKEN}\n") is True
    assert scanner.feed(f"{TOKEN}\n") is False
    assert scanner.finish() is False


def test_finish_checks_trailing_partial_line() -> None:
    scanner = AckScanner(TOKEN)
    scanner.feed(f"line one\n{TOKEN}")

    assert scanner.finish() is True
    assert scanner.output == "line one"


def test_finish_without_token_keeps_output() -> None:
    scanner = AckScanner(TOKEN)
    scanner.feed("boom\npartial")

    assert scanner.finish() is False
    assert scanner.output == "boom\npartial"
