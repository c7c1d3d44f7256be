"""Tests for the RouterOS TCP transport and login strategies."""

import asyncio
import hashlib

import pytest

from guestnet.config import DeviceConfig, LoginCredentials
from guestnet.errors import AuthenticationExhausted, ConnectionLost, FramingError
from guestnet.routeros.executor import CommandExecutor
from guestnet.routeros.login import ChallengeLogin, PlainLogin, challenge_response, login_strategy_for
from guestnet.routeros.transport import Transport


class TestCredentialCandidates:
    """Credential fallback order."""

    def test_configured_credentials_first(self):
        config = DeviceConfig(
            username="admin",
            password="custom-pass",
            alternate_credentials=[LoginCredentials(username="ops", password="alt-pass")],
        )
        candidates = Transport(config).credential_candidates()

        assert candidates == [
            ("admin", "custom-pass"),
            ("admin", ""),
            ("admin", "admin"),
            ("ops", "alt-pass"),
        ]

    def test_duplicates_removed(self):
        config = DeviceConfig(username="admin", password="admin")
        assert Transport(config).credential_candidates() == [("admin", "admin"), ("admin", "")]

    def test_fallbacks_can_be_disabled(self):
        config = DeviceConfig(username="hotel", password="pw", use_fallback_logins=False)
        assert Transport(config).credential_candidates() == [("hotel", "pw")]


class TestChallengeResponse:
    """Legacy MD5 login response."""

    def test_digest_covers_zero_byte_password_and_challenge(self):
        challenge = "0102030405060708090a0b0c0d0e0f10"
        expected = hashlib.md5(b"\x00" + b"secret" + bytes(range(1, 17))).hexdigest()
        assert challenge_response("secret", challenge) == "00" + expected

    def test_response_shape(self):
        response = challenge_response("secret", "9a1bc4f2e0d35b6a7c8d9e0f1a2b3c4d")
        assert response.startswith("00")
        assert len(response) == 34

    def test_strategy_lookup(self):
        assert isinstance(login_strategy_for("plain"), PlainLogin)
        assert isinstance(login_strategy_for("challenge"), ChallengeLogin)
        with pytest.raises(ValueError):
            login_strategy_for("kerberos")


class TestTransportConnect:
    """Connecting and logging in against an in-process router."""

    @pytest.mark.asyncio
    async def test_login_with_configured_credentials(self, router):
        async with Transport(router.device_config()) as transport:
            assert transport.is_connected
            assert transport.username == "admin"
            records = await CommandExecutor(transport).execute("/system/identity/print")

        assert records[0].get("name") == "HotelGW"
        assert router.logins == [("admin", "secret")]
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_falls_back_to_default_credentials(self, router):
        router.accounts = [("admin", "admin")]
        transport = Transport(router.device_config(password="wrong"))

        await transport.connect()
        await transport.disconnect()

        assert router.logins == [("admin", "wrong"), ("admin", ""), ("admin", "admin")]

    @pytest.mark.asyncio
    async def test_authentication_exhausted(self, router):
        router.accounts = [("someone-else", "x")]
        config = router.device_config(
            password="wrong",
            alternate_credentials=[LoginCredentials(username="ops", password="ops")],
        )

        with pytest.raises(AuthenticationExhausted) as excinfo:
            await Transport(config).connect()

        assert excinfo.value.attempted_usernames == ["admin", "ops"]
        assert excinfo.value.kind == "authentication_exhausted"
        assert len(router.logins) == 4

    @pytest.mark.asyncio
    async def test_unreachable_router_is_connection_lost(self):
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        config = DeviceConfig(host="127.0.0.1", port=port, connect_timeout=0.5)
        with pytest.raises(ConnectionLost) as excinfo:
            await Transport(config).connect()
        assert not isinstance(excinfo.value, AuthenticationExhausted)

    @pytest.mark.asyncio
    async def test_challenge_login(self, router):
        router.challenge_mode = True
        async with Transport(router.device_config(login_method="challenge")) as transport:
            assert transport.username == "admin"
        assert router.logins == [("admin", challenge_response("secret", "9a1bc4f2e0d35b6a7c8d9e0f1a2b3c4d"))]

    @pytest.mark.asyncio
    async def test_plain_login_against_legacy_router_is_rejected(self, router):
        router.challenge_mode = True
        with pytest.raises(AuthenticationExhausted):
            await Transport(router.device_config(use_fallback_logins=False)).connect()

    @pytest.mark.asyncio
    async def test_malformed_challenge_is_rejected_and_closed(self, router):
        router.challenge_mode = True
        router.challenge = "not-a-hex-challenge"
        transport = Transport(router.device_config(login_method="challenge", use_fallback_logins=False))

        with pytest.raises(AuthenticationExhausted) as excinfo:
            await transport.connect()

        assert "malformed login challenge" in excinfo.value.message
        assert not transport.is_connected
        assert router.logins == []


class TestTransportFailures:
    """Socket failures surface as ConnectionLost or FramingError."""

    @pytest.mark.asyncio
    async def test_read_timeout(self, router):
        transport = Transport(router.device_config(read_timeout=0.2))
        await transport.connect()

        with pytest.raises(ConnectionLost, match="timed out"):
            await CommandExecutor(transport).run("/hang")
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_stream_closed_mid_word(self, router):
        transport = Transport(router.device_config())
        await transport.connect()

        with pytest.raises(FramingError):
            await CommandExecutor(transport).run("/truncate")
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_fatal_reply(self, router):
        transport = Transport(router.device_config())
        await transport.connect()

        with pytest.raises(ConnectionLost, match="session terminated"):
            await CommandExecutor(transport).run("/quit")
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_write_when_disconnected(self):
        with pytest.raises(ConnectionLost):
            await Transport(DeviceConfig()).write_sentence(["/system/identity/print"])
