"""Unit tests for TokenService: signing, verification and maintenance."""

import base64
import json
from datetime import timedelta

import pytest

from authkernel.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from authkernel.service.sessions import DeviceContext

from conftest import STRONG_PASSWORD


async def _issue(runtime, store, device):
    await runtime.auth.register("tokens@example.com", STRONG_PASSWORD)
    user = store.get_user_by_email("tokens@example.com")
    issued = await runtime.tokens.issue_session(user, device)
    return user, issued


def _segments(token):
    header, payload, signature = token.split(".")
    pad = lambda s: s + "=" * (-len(s) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
        signature,
    )


class TestAccessTokens:
    """Tests for access-token claims."""

    @pytest.mark.asyncio
    async def test_claims_snapshot_roles_and_permissions(self, runtime, store, device):
        user, issued = await _issue(runtime, store, device)

        header, payload, _ = _segments(issued.access.token)

        assert header == {"alg": "HS256", "typ": "JWT"}
        assert payload["sub"] == user.id
        assert payload["sid"] == issued.session.id
        assert payload["roles"] == ["customer"]
        assert payload["permissions"] == ["orders:read"]
        assert payload["token_type"] == "access"
        assert payload["exp"] - payload["iat"] == runtime.settings.access_token_ttl_seconds

    @pytest.mark.asyncio
    async def test_each_token_has_unique_jti(self, runtime, store, device):
        user, issued = await _issue(runtime, store, device)

        second = await runtime.tokens.generate_access_token(user, issued.session.id)

        assert second.jti != issued.access.jti

    @pytest.mark.asyncio
    async def test_permission_change_not_reflected_until_reissue(self, runtime, store, device):
        user, issued = await _issue(runtime, store, device)

        await runtime.rbac.grant_permission(user.id, "catalog:write")
        claims = await runtime.tokens.verify_access_token(issued.access.token)
        reissued = await runtime.tokens.generate_access_token(user, issued.session.id)

        assert "catalog:write" not in claims.permissions
        assert "catalog:write" in reissued.claims.permissions


class TestVerifyAccessToken:
    """Tests for verify_access_token failure modes."""

    @pytest.mark.asyncio
    async def test_valid_token(self, runtime, store, device):
        user, issued = await _issue(runtime, store, device)

        claims = await runtime.tokens.verify_access_token(issued.access.token)

        assert claims.user_id == user.id
        assert claims.jti == issued.access.jti

    @pytest.mark.asyncio
    async def test_tampered_signature(self, runtime, store, device):
        _, issued = await _issue(runtime, store, device)
        header, payload, signature = issued.access.token.split(".")
        forged = f"{header}.{payload}.{signature[:-2]}xx"

        with pytest.raises(TokenInvalidError):
            await runtime.tokens.verify_access_token(forged)

    @pytest.mark.asyncio
    async def test_tampered_payload(self, runtime, store, device):
        _, issued = await _issue(runtime, store, device)
        header, _, signature = issued.access.token.split(".")
        _, claims, _ = _segments(issued.access.token)
        claims["permissions"] = ["*"]
        body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")

        with pytest.raises(TokenInvalidError):
            await runtime.tokens.verify_access_token(f"{header}.{body}.{signature}")

    @pytest.mark.asyncio
    async def test_malformed_token(self, runtime):
        with pytest.raises(TokenInvalidError) as excinfo:
            await runtime.tokens.verify_access_token("not-a-jwt")

        assert excinfo.value.reason == "malformed_access_token"

    @pytest.mark.asyncio
    async def test_expired_token(self, runtime, store, device, clock, settings):
        _, issued = await _issue(runtime, store, device)

        clock.advance(
            seconds=settings.access_token_ttl_seconds + settings.token_clock_skew_seconds + 1
        )
        with pytest.raises(TokenExpiredError) as excinfo:
            await runtime.tokens.verify_access_token(issued.access.token)

        assert excinfo.value.reason == "access_token_expired"

    @pytest.mark.asyncio
    async def test_clock_skew_leeway(self, runtime, store, device, clock, settings):
        _, issued = await _issue(runtime, store, device)

        clock.advance(seconds=settings.access_token_ttl_seconds + 1)
        claims = await runtime.tokens.verify_access_token(issued.access.token)

        assert claims.session_id == issued.session.id

    @pytest.mark.asyncio
    async def test_blacklisted_jti(self, runtime, store, device):
        _, issued = await _issue(runtime, store, device)

        await runtime.blacklist.add(issued.access.jti, issued.access.expires_at)

        with pytest.raises(TokenRevokedError) as excinfo:
            await runtime.tokens.verify_access_token(issued.access.token)
        assert excinfo.value.reason == "access_token_revoked"

    @pytest.mark.asyncio
    async def test_revoked_session_rejects_older_tokens(self, runtime, store, device):
        user, issued = await _issue(runtime, store, device)
        older = await runtime.tokens.generate_access_token(user, issued.session.id)

        await runtime.sessions.revoke(issued.session.id, "logout")

        with pytest.raises(TokenRevokedError) as excinfo:
            await runtime.tokens.verify_access_token(older.token)
        assert excinfo.value.reason == "session_revoked"

    @pytest.mark.asyncio
    async def test_foreign_secret_rejected(self, runtime, store, device, clock):
        from authkernel.runtime import Runtime

        from conftest import make_settings

        _, issued = await _issue(runtime, store, device)
        other = Runtime(
            make_settings(jwt_secret="another-secret-that-is-long-enough-to-pass"),
            store=store,
            email=runtime.email,
            now=clock,
        )

        with pytest.raises(TokenInvalidError):
            await other.tokens.verify_access_token(issued.access.token)
        await other.close()

    @pytest.mark.asyncio
    async def test_public_view_is_uniform(self, runtime, store, device, clock, settings):
        _, issued = await _issue(runtime, store, device)
        clock.advance(seconds=settings.access_token_ttl_seconds * 2)

        with pytest.raises(TokenExpiredError) as expired:
            await runtime.tokens.verify_access_token(issued.access.token)
        with pytest.raises(TokenInvalidError) as invalid:
            await runtime.tokens.verify_access_token("a.b.c")

        assert expired.value.to_public() == invalid.value.to_public()
        assert expired.value.to_public()["code"] == "unauthorized"


class TestMaintenance:
    """Tests for the maintenance pass and shutdown."""

    @pytest.mark.asyncio
    async def test_run_maintenance_prunes_expired_state(self, runtime, store, device, clock, settings):
        user, issued = await _issue(runtime, store, device)
        await runtime.auth.refresh(issued.refresh.token, device)
        await runtime.blacklist.add("stale-jti", clock() + timedelta(hours=1))
        await runtime.rbac.get_user_permissions(user.id)

        clock.advance(seconds=settings.refresh_token_ttl_seconds * 2 + 1)
        summary = await runtime.tokens.run_maintenance()

        assert summary["expired_sessions"] == 1
        assert summary["rotated_tokens_purged"] == 1
        assert summary["permission_cache_pruned"] == 1
        assert summary["blacklist_pruned"] == 1
        assert store.get_session(issued.session.id).revoked_reason == "expired"

    @pytest.mark.asyncio
    async def test_start_and_shutdown_are_idempotent(self, runtime):
        await runtime.tokens.start()
        await runtime.tokens.start()
        assert runtime.tokens._task is not None

        await runtime.tokens.shutdown()
        await runtime.tokens.shutdown()

        assert runtime.tokens._task is None

    @pytest.mark.asyncio
    async def test_runtime_close_stops_everything(self, runtime, store, device):
        await runtime.start()
        await _issue(runtime, store, device)

        await runtime.close()
        await runtime.close()

        assert runtime.dispatcher.pending == 0
        assert len(runtime.blacklist) == 0


class TestFingerprints:
    """Tests for device fingerprinting used by new-device alerts."""

    @pytest.mark.asyncio
    async def test_same_device_not_new(self, runtime, store, device):
        user, first = await _issue(runtime, store, device)

        second = await runtime.tokens.issue_session(user, device)

        assert first.new_device is True
        assert second.new_device is False

    @pytest.mark.asyncio
    async def test_client_fingerprint_takes_precedence(self, runtime, store):
        user, first = await _issue(
            runtime, store, DeviceContext(ip_address="10.0.0.1", user_agent="a", fingerprint="fp-1")
        )

        moved = await runtime.tokens.issue_session(
            user, DeviceContext(ip_address="10.0.0.2", user_agent="b", fingerprint="fp-1")
        )

        assert moved.new_device is False
        assert moved.session.fingerprint == first.session.fingerprint
        assert moved.session.fingerprint != "fp-1"
