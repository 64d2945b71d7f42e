"""Tests for argon2 password verification."""

from __future__ import annotations

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.security]


@pytest.mark.asyncio
async def test_verify_correct_and_wrong(password_verifier):
    stored = password_verifier.hash("s3cret")
    assert stored.startswith("$argon2id$")
    assert await password_verifier.verify(stored, "s3cret") is True
    assert await password_verifier.verify(stored, "wrong") is False


@pytest.mark.asyncio
async def test_missing_hash_never_matches(password_verifier):
    assert await password_verifier.verify(None, "trackgate-dummy-password") is False


@pytest.mark.asyncio
async def test_invalid_hash_does_not_raise(password_verifier):
    assert await password_verifier.verify("not-a-hash", "anything") is False
