import pytest

from conftest import RFC_SECRET, RFC_SECRET_B32
from twofa import decode_key, format_code, get_time_remaining, hotp, normalize_key, totp

# RFC 4226 appendix D
RFC_4226_CODES = [755224, 287082, 359152, 969429, 338314, 254676, 287922, 162583, 399871, 520489]


@pytest.mark.parametrize("counter,expected", list(enumerate(RFC_4226_CODES)))
def test_hotp_rfc4226_vectors(counter, expected):
    assert hotp(RFC_SECRET, counter, 6) == expected


def test_hotp_renders_rfc4226_codes():
    assert format_code(hotp(RFC_SECRET, 0, 6), 6) == "755224"
    assert format_code(hotp(RFC_SECRET, 1, 6), 6) == "287082"


def test_hotp_is_deterministic():
    assert hotp(RFC_SECRET, 42, 6) == hotp(RFC_SECRET, 42, 6)


def test_hotp_clamps_digits():
    assert hotp(RFC_SECRET, 1, 8) == 94287082
    assert hotp(RFC_SECRET, 1, 9) == hotp(RFC_SECRET, 1, 8)
    assert hotp(RFC_SECRET, 1, 0) == 0
    assert hotp(RFC_SECRET, 1, -3) == 0


def test_totp_rfc6238_vectors():
    # RFC 6238 appendix B, SHA1
    assert totp(RFC_SECRET, 59, 8) == 94287082
    assert totp(RFC_SECRET, 1111111109, 8) == 7081804
    assert totp(RFC_SECRET, 1234567890, 8) == 89005924
    assert totp(RFC_SECRET, 2000000000, 8) == 69279037


def test_totp_uses_thirty_second_steps():
    assert totp(RFC_SECRET, 59, 8) == hotp(RFC_SECRET, 1, 8)
    assert totp(RFC_SECRET, 60.5, 6) == hotp(RFC_SECRET, 2, 6)
    assert totp(RFC_SECRET, 29.9, 6) == hotp(RFC_SECRET, 0, 6)


def test_format_code_zero_pads():
    assert format_code(42, 6) == "000042"
    assert format_code(7081804, 8) == "07081804"


def test_time_remaining():
    assert get_time_remaining(60) == 30
    assert get_time_remaining(89) == 1


def test_decode_key_is_case_insensitive():
    assert decode_key(RFC_SECRET_B32) == RFC_SECRET
    assert decode_key(RFC_SECRET_B32.lower()) == RFC_SECRET


@pytest.mark.parametrize("text", ["not base32!", "ABC", "GEZDGNB1"])
def test_decode_key_rejects_bad_text(text):
    with pytest.raises(ValueError):
        decode_key(text)


def test_normalize_key_strips_and_pads():
    assert normalize_key("nzxx iidb\tebvwk6jb\n") == "nzxxiidbebvwk6jb"
    assert normalize_key("JBSWY3DPEHPK3PXPA") == "JBSWY3DPEHPK3PXPA" + "=" * 7
    assert normalize_key("") == ""
