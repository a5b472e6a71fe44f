"""Performance tests for critical paths.

These measure latency of login, access-token issuance and verification
with cheap hashing parameters, so they catch algorithmic regressions
rather than benchmarking argon2 itself.
"""

import asyncio
import statistics
import time

import pytest

from conftest import STRONG_PASSWORD


class TestAuthLatency:
    """Test latency for the hot authentication paths."""

    @pytest.mark.asyncio
    async def test_login_latency(self, runtime, register_user, device):
        """Login should complete in < 500ms."""
        await register_user()
        times = []
        for _ in range(20):
            start = time.perf_counter()
            result = await runtime.auth.login("shopper@example.com", STRONG_PASSWORD, device=device)
            times.append((time.perf_counter() - start) * 1000)
            assert result.tokens.access_token

        avg = statistics.mean(times)
        p95 = sorted(times)[18]

        print(f"\nLogin latency (ms): avg={avg:.2f}, p95={p95:.2f}")
        assert avg < 500, f"Average latency {avg:.2f}ms exceeds 500ms"

    @pytest.mark.asyncio
    async def test_access_token_issuance_latency(self, runtime, register_user, store, device):
        """Access-token issuance should complete in < 75ms."""
        profile = await register_user()
        user = store.get_user(profile.id)
        issued = await runtime.tokens.issue_session(user, device)

        times = []
        for _ in range(100):
            start = time.perf_counter()
            await runtime.tokens.generate_access_token(user, issued.session.id)
            times.append((time.perf_counter() - start) * 1000)

        p99 = sorted(times)[98]

        print(f"\nToken issuance latency (ms): p99={p99:.2f}")
        assert p99 < 75, f"P99 latency {p99:.2f}ms exceeds 75ms"

    @pytest.mark.asyncio
    async def test_access_token_verification_latency(self, runtime, register_user, store, device):
        """Verification checks signature, blacklist and session state in < 75ms."""
        profile = await register_user()
        user = store.get_user(profile.id)
        issued = await runtime.tokens.issue_session(user, device)

        times = []
        for _ in range(100):
            start = time.perf_counter()
            await runtime.tokens.verify_access_token(issued.access.token)
            times.append((time.perf_counter() - start) * 1000)

        avg = statistics.mean(times)

        print(f"\nToken verification latency (ms): avg={avg:.2f}")
        assert avg < 75, f"Average latency {avg:.2f}ms exceeds 75ms"


class TestThroughput:
    """Test concurrent authentication load."""

    @pytest.mark.asyncio
    async def test_concurrent_logins(self, runtime, register_user, device):
        """Concurrent logins for distinct accounts all succeed."""
        emails = [f"buyer{i}@example.com" for i in range(10)]
        for email in emails:
            await register_user(email=email)

        start = time.perf_counter()
        results = await asyncio.gather(
            *(runtime.auth.login(email, STRONG_PASSWORD, device=device) for email in emails)
        )
        elapsed = (time.perf_counter() - start) * 1000

        print(f"\nConcurrent logins: {len(results)} in {elapsed:.2f}ms")
        assert len({r.session_id for r in results}) == len(emails)
        await runtime.close()
