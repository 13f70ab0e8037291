import pytest

from sipwire.utils import (
    ANGLES_DELIM,
    LETTERS,
    QUOTES_DELIM,
    ascii_to_lower,
    ascii_to_upper,
    find_any_unescaped,
    find_unescaped,
    header_to_lower,
    message_short_string,
    nonce,
    rand_string,
    split_by_whitespace,
    uri_is_sip,
    uri_is_sips,
)


def test_ascii_to_lower():
    assert ascii_to_lower("CSeq") == "cseq"


def test_ascii_to_lower_keeps_non_ascii():
    assert ascii_to_lower("ÄBc") == "Äbc"
    assert ascii_to_lower("already") == "already"


def test_ascii_to_upper():
    assert ascii_to_upper("udp") == "UDP"
    assert ascii_to_upper("wSs") == "WSS"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Content-Type", "content-type"),
        ("CSEQ", "cseq"),
        ("Max-Forwards", "max-forwards"),
        ("X-Custom-Header", "x-custom-header"),
    ],
)
def test_header_to_lower(name, expected):
    assert header_to_lower(name) == expected


def test_uri_scheme_checks():
    assert uri_is_sip("sip") and uri_is_sip("SIP")
    assert not uri_is_sip("sips")
    assert uri_is_sips("SIPS") and uri_is_sips("sips")
    assert not uri_is_sips("Sip")


@pytest.mark.parametrize("n", [0, 1, 16, 100])
def test_rand_string_length_and_charset(n):
    value = rand_string(n)
    assert len(value) == n
    assert set(value) <= set(LETTERS)


@pytest.mark.parametrize("n", [0, 8, 32])
def test_nonce_length_and_charset(n):
    value = nonce(n)
    assert len(value) == n
    assert set(value) <= set(LETTERS)


def test_split_by_whitespace():
    assert split_by_whitespace("a  b\tc") == ["a", "b", "c"]


def test_split_by_whitespace_leading_space():
    assert split_by_whitespace(" a") == ["", "a"]


def test_find_unescaped_quotes():
    assert find_unescaped('"a;b";c', ";", QUOTES_DELIM) == 5
    assert find_unescaped('"a;b";c', ";") == 2


def test_find_unescaped_angles():
    assert find_unescaped("<sip:a;b>;tag=1", ";", ANGLES_DELIM) == 9


def test_find_unescaped_missing():
    assert find_unescaped("abc", ";") == -1
    assert find_unescaped("<a;b>", ";", ANGLES_DELIM) == -1


def test_find_any_unescaped():
    assert find_any_unescaped('"x,y" a;b,c', ",;", QUOTES_DELIM) == 7


def test_message_short_string():
    class _Msg:
        def short(self):
            return "short form"

    assert message_short_string(_Msg()) == "short form"
    assert message_short_string(object()) == "Unknown message type"