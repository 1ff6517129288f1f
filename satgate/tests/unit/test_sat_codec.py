from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from satgate.core.config import get_settings
from satgate.core.errors import ConfigurationError
from satgate.domain.sat import DecodeError, DecodeFailure, SatClaims
from satgate.services.sat import codec


SECRET = "codec-secret-0123456789abcdef0123456789abcdef"
OTHER_SECRET = "other-secret-0123456789abcdef0123456789abcdef"
NOW = datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc)


def _claims(**overrides: object) -> SatClaims:
    values: dict[str, object] = {
        "subject": "u-1",
        "feature": "chat.send",
        "method": "POST",
        "path": "/v1/messages",
        "token_id": "tok-1",
        "issued_at": NOW,
        "expires_at": NOW + timedelta(seconds=120),
        "session_id": None,
    }
    values.update(overrides)
    return SatClaims(**values)  # type: ignore[arg-type]


def test_encode_then_decode_preserves_binding() -> None:
    token = codec.encode(_claims(session_id="s-1"), secret=SECRET)
    decoded = codec.decode(token, now=NOW + timedelta(seconds=5), secret=SECRET)

    assert isinstance(decoded, SatClaims)
    assert decoded.subject == "u-1"
    assert decoded.feature == "chat.send"
    assert decoded.method == "POST"
    assert decoded.path == "/v1/messages"
    assert decoded.token_id == "tok-1"
    assert decoded.session_id == "s-1"
    assert decoded.expires_at == NOW + timedelta(seconds=120)


def test_decode_rejects_other_secret_as_bad_signature() -> None:
    token = codec.encode(_claims(), secret=SECRET)
    decoded = codec.decode(token, now=NOW, secret=OTHER_SECRET)
    assert decoded == DecodeError(DecodeFailure.BAD_SIGNATURE)


@pytest.mark.parametrize("token", ["", "not.a.jwt", "garbage", "a.b"])
def test_decode_rejects_malformed_strings(token: str) -> None:
    decoded = codec.decode(token, now=NOW, secret=SECRET)
    assert decoded == DecodeError(DecodeFailure.MALFORMED)


def test_decode_rejects_token_missing_binding_claims() -> None:
    token = jwt.encode(
        {"sub": "u-1", "feature": "chat.send", "iat": int(NOW.timestamp()), "exp": int(NOW.timestamp()) + 60},
        SECRET,
        algorithm="HS256",
    )
    decoded = codec.decode(token, now=NOW, secret=SECRET)
    assert decoded == DecodeError(DecodeFailure.MALFORMED)


def test_decode_checks_expiry_against_injected_clock() -> None:
    token = codec.encode(_claims(), secret=SECRET)
    expires_at = NOW + timedelta(seconds=120)

    assert isinstance(codec.decode(token, now=expires_at - timedelta(seconds=1), secret=SECRET), SatClaims)
    assert codec.decode(token, now=expires_at, secret=SECRET) == DecodeError(DecodeFailure.EXPIRED)
    assert codec.decode(token, now=expires_at + timedelta(days=1), secret=SECRET) == DecodeError(
        DecodeFailure.EXPIRED
    )


def test_decode_rejects_future_issued_at_beyond_leeway() -> None:
    token = codec.encode(_claims(issued_at=NOW + timedelta(seconds=30)), secret=SECRET)

    assert codec.decode(token, now=NOW, secret=SECRET) == DecodeError(DecodeFailure.MALFORMED)
    assert isinstance(codec.decode(token, now=NOW, secret=SECRET, leeway_s=60), SatClaims)


def test_decode_keeps_tokens_without_identifier() -> None:
    token = codec.encode(_claims(token_id=None), secret=SECRET)
    decoded = codec.decode(token, now=NOW, secret=SECRET)
    assert isinstance(decoded, SatClaims)
    assert decoded.token_id is None


def test_missing_secret_fails_closed(monkeypatch) -> None:
    monkeypatch.setenv("SAT_JWT_SECRET", "")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError):
        codec.encode(_claims())
    with pytest.raises(ConfigurationError):
        codec.decode("not.a.jwt", now=NOW)
