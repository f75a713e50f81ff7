"""Source protocol and metadata request tests for livecast."""

import base64

import pytest

from livecast.core.config import ProtocolKind, RelaySettings, ServerProfile
from livecast.core.errors import CloseReason
from livecast.core.metadata import build_metadata_request
from livecast.core.protocol import (
    SourceTarget,
    build_handshake,
    close_reason_for,
    is_auth_rejection,
    source_headers,
)


def _header(handshake: bytes, name: str) -> str:
    for line in handshake.decode().split("\r\n"):
        if line.startswith(f"{name}: "):
            return line.split(": ", 1)[1]
    raise AssertionError(f"{name} header missing")


def test_shoutcast_v1_handshake_is_bare_password():
    target = SourceTarget(host="r1.example.com", port=8000, password="secret", type=ProtocolKind.SHOUTCAST)
    assert build_handshake(target) == b"secret\r\n"
    assert build_handshake(target, RelaySettings(shoutcast_line_ending="\n")) == b"secret\n"


def test_icecast_handshake():
    target = SourceTarget(host="radio.example.com", port=8000, user="source", password="secret", mount="/live")
    handshake = build_handshake(target, RelaySettings(stream_name="Evening", public=True))

    lines = handshake.decode().split("\r\n")
    assert lines[0] == "PUT /live HTTP/1.1"
    assert handshake.endswith(b"\r\n\r\n")
    auth = _header(handshake, "Authorization")
    assert auth.startswith("Basic ")
    assert base64.b64decode(auth[len("Basic "):]).decode() == "source:secret"
    assert _header(handshake, "Content-Type") == "audio/mpeg"
    assert _header(handshake, "Ice-Public") == "1"
    assert _header(handshake, "Ice-Name") == "Evening"
    assert _header(handshake, "Host") == "radio.example.com:8000"
    assert "Transfer-Encoding" not in handshake.decode()


def test_source_headers_private_by_default():
    headers = source_headers(SourceTarget(host="h"))
    assert headers["Ice-Public"] == "0"
    assert list(headers)[:2] == ["Host", "Authorization"]


@pytest.mark.parametrize(
    "response",
    [
        b"HTTP/1.0 401 Unauthorized\r\n\r\n",
        b"HTTP/1.1 403 Forbidden\r\n",
        b"ICY 401 Service Unavailable\r\n",
        b"Invalid Password\r\n",
        b"icv password mismatch",
    ],
)
def test_auth_rejection_detected(response):
    assert is_auth_rejection(response)


@pytest.mark.parametrize("response", [b"HTTP/1.0 200 OK\r\n\r\n", b"OK2\r\nicy-caps:11\r\n\r\n"])
def test_accepted_response(response):
    assert not is_auth_rejection(response)


def test_close_codes():
    assert close_reason_for(1008) is CloseReason.AUTH_FAILED
    assert close_reason_for(1011) is CloseReason.UPSTREAM_ERROR
    assert close_reason_for(1000) is CloseReason.OPERATOR
    assert close_reason_for(1006) is CloseReason.NETWORK
    assert close_reason_for(None) is CloseReason.NETWORK


def test_target_from_query_defaults():
    target = SourceTarget.from_query({"host": "r1.example.com", "pass": "secret"})
    assert target.port == 8000
    assert target.user == "source"
    assert target.mount == "/stream"
    assert target.type is ProtocolKind.ICECAST


def test_target_from_query_normalizes():
    target = SourceTarget.from_query(
        {"host": "h", "port": "9000", "mount": "live", "type": "shoutcast"}, default_user="admin",
    )
    assert target.mount == "/live"
    assert target.user == "admin"
    assert target.type is ProtocolKind.SHOUTCAST


@pytest.mark.parametrize("query", [{}, {"host": ""}, {"host": "h", "port": "abc"}, {"host": "h", "port": "70000"}])
def test_target_from_query_rejects(query):
    with pytest.raises(ValueError):
        SourceTarget.from_query(query)


def test_target_query_round_trip_from_profile():
    profile = ServerProfile(host="radio.example.com", port=8010, password="pw", mount="live", user="dj")
    query = SourceTarget.from_profile(profile).to_query()
    assert query == {
        "host": "radio.example.com",
        "port": "8010",
        "user": "dj",
        "pass": "pw",
        "mount": "/live",
        "type": "Icecast",
    }


def test_icecast_metadata_request():
    target = SourceTarget(host="radio.example.com", port=8000, user="admin", password="secret", mount="/live")
    request = build_metadata_request(target, "My Song")
    assert request.url == "http://radio.example.com:8000/admin/metadata?mode=updinfo&mount=/live&song=My%20Song"
    token = request.headers["Authorization"].split(" ", 1)[1]
    assert base64.b64decode(token).decode() == "admin:secret"


def test_shoutcast_metadata_request():
    target = SourceTarget(host="sc.example.com", port=8000, user="source", password="secret",
                          type=ProtocolKind.SHOUTCAST)
    request = build_metadata_request(target, "A&B")
    assert request.url == "http://sc.example.com:8000/admin.cgi?mode=updinfo&pass=secret&song=A%26B&sid=1"
    token = request.headers["Authorization"].split(" ", 1)[1]
    assert base64.b64decode(token).decode() == "admin:secret"
