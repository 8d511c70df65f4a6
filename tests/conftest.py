import pytest

# RFC 4226 appendix D secret, "12345678901234567890"
RFC_SECRET = b"12345678901234567890"
RFC_SECRET_B32 = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def keychain_path(tmp_path, monkeypatch):
    path = tmp_path / ".2fa"
    monkeypatch.setenv("TWOFA_KEYCHAIN", str(path))
    return path
