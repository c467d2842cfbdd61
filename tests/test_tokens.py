"""Tests for token signing and the token lifecycle manager."""

import base64
import json

import pytest

from sessionguard.service.errors import ServerError, TokenError
from sessionguard.service.tokens import (
    TokenManager,
    TokenSigner,
    active_tokens_key,
    blacklist_key,
    login_history_key,
    online_key,
    session_key,
    token_digest,
    token_key,
)
from sessionguard.storage.models import LoginRecord


@pytest.fixture
def signer(settings):
    return TokenSigner.from_settings(settings)


@pytest.fixture
def tokens(store, signer, settings):
    return TokenManager(store, signer, settings)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestTokenSigner:
    def test_sign_and_verify_round_trip(self, signer):
        token = signer.sign({"sub": "7"}, 60)
        claims = signer.verify(token)
        assert claims["sub"] == "7"
        assert claims["iss"] == signer.issuer
        assert claims["exp"] - claims["iat"] == 60

    def test_tampered_signature_rejected(self, signer):
        token = signer.sign({"sub": "7"}, 60)
        head, payload, sig = token.split(".")
        forged = f"{head}.{_b64({'sub': '8', 'iss': signer.issuer, 'aud': signer.audience, 'exp': 9999999999})}.{sig}"
        with pytest.raises(TokenError):
            signer.verify(forged)

    def test_non_hs256_header_rejected(self, signer):
        token = signer.sign({"sub": "7"}, 60)
        _, payload, sig = token.split(".")
        with pytest.raises(TokenError):
            signer.verify(f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.{sig}")

    def test_expired_token_rejected(self, signer):
        token = signer.sign({"sub": "7"}, -(signer.leeway_seconds + 10))
        with pytest.raises(TokenError):
            signer.verify(token)

    def test_other_issuer_rejected(self, settings):
        other = TokenSigner(settings.jwt_secret, issuer="someone-else", audience=settings.jwt_audience)
        token = other.sign({"sub": "7"}, 60)
        with pytest.raises(TokenError):
            TokenSigner.from_settings(settings).verify(token)

    @pytest.mark.parametrize("bad", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_malformed_tokens_rejected(self, signer, bad):
        with pytest.raises(TokenError):
            signer.verify(bad)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TokenSigner("", issuer="i", audience="a")


@pytest.mark.asyncio
async def test_issue_records_session_history_and_online(tokens, store):
    token = await tokens.issue(1, "alice", context={"ip": "10.0.0.1", "userAgent": "curl"})
    digest = token_digest(token)

    assert json.loads(await store.get(token_key(digest))) == {"actorId": 1, "actorName": "alice"}
    assert await store.set_members(active_tokens_key(1)) == [digest]
    assert await store.exists(online_key(1))

    session = await tokens.get_session(1)
    assert session.actor_name == "alice"
    assert session.ip == "10.0.0.1"
    assert session.user_agent == "curl"

    history = [LoginRecord.from_json(raw) for raw in await store.list_range(login_history_key(1), 0, -1)]
    assert [record.type for record in history] == ["login"]


@pytest.mark.asyncio
async def test_tokens_are_never_stored_raw(tokens, store):
    token = await tokens.issue(1, "alice")
    assert not await store.exists(f"user_token:{token}")


@pytest.mark.asyncio
async def test_back_to_back_tokens_are_distinct(tokens):
    first = await tokens.issue(1, "alice")
    second = await tokens.issue(1, "alice")
    assert first != second
    assert await tokens.active_token_count(1) == 2


@pytest.mark.asyncio
async def test_validate_accepts_issued_token_and_touches_session(tokens, store):
    token = await tokens.issue(1, "alice")
    before = await tokens.get_session(1)
    assert await tokens.validate(token) is True
    after = await tokens.get_session(1)
    assert after.last_active >= before.last_active


@pytest.mark.asyncio
async def test_validate_fails_closed_on_garbage(tokens):
    assert await tokens.validate("") is False
    assert await tokens.validate("not-a-token") is False
    assert await tokens.validate(None) is False


@pytest.mark.asyncio
async def test_validate_requires_lookup_key(tokens, store):
    token = await tokens.issue(1, "alice")
    await store.delete(token_key(token_digest(token)))
    assert await tokens.validate(token) is False


@pytest.mark.asyncio
async def test_blacklist_overrides_valid_signature(tokens, store, signer, settings):
    token = await tokens.issue(1, "alice")
    await store.set(blacklist_key(token_digest(token)), "1", settings.blacklist_ttl_seconds)
    # Signature and lookup key are still intact
    assert signer.verify(token)["sub"] == "1"
    assert await store.exists(token_key(token_digest(token)))
    assert await tokens.validate(token) is False


@pytest.mark.asyncio
async def test_revoke_blacklists_and_logs_logout(tokens, store):
    token = await tokens.issue(1, "alice", context={"ip": "10.0.0.1"})
    assert await tokens.revoke(token) is True

    assert await tokens.is_blacklisted(token)
    assert await tokens.validate(token) is False
    assert await tokens.active_token_count(1) == 0
    latest = LoginRecord.from_json((await store.list_range(login_history_key(1), 0, 0))[0])
    assert latest.type == "logout"
    assert latest.ip == "10.0.0.1"


@pytest.mark.asyncio
async def test_revoke_unverifiable_token_returns_false(tokens):
    assert await tokens.revoke("a.b.c") is False


@pytest.mark.asyncio
async def test_force_revoke_all_blacklists_every_token(tokens, store):
    issued = [await tokens.issue(1, "alice") for _ in range(3)]
    assert await tokens.force_revoke_all(1) is True

    for token in issued:
        assert await tokens.validate(token) is False
        assert await tokens.is_blacklisted(token)
    assert not await store.exists(active_tokens_key(1))
    assert not await store.exists(session_key(1))
    assert not await tokens.is_online(1)


@pytest.mark.asyncio
async def test_force_revoke_all_is_idempotent(tokens):
    await tokens.issue(1, "alice")
    assert await tokens.force_revoke_all(1) is True
    assert await tokens.force_revoke_all(1) is True
    assert await tokens.force_revoke_all(99) is True


@pytest.mark.asyncio
async def test_outage_fails_closed(failing_store, signer, settings):
    tokens = TokenManager(failing_store, signer, settings)
    token = signer.sign({"sub": "1"}, 60)

    assert await tokens.validate(token) is False
    assert await tokens.revoke(token) is False
    assert await tokens.force_revoke_all(1) is False
    with pytest.raises(ServerError):
        await tokens.issue(1, "alice")


@pytest.mark.asyncio
async def test_second_revoke_is_rejected_without_history(tokens, store):
    token = await tokens.issue(1, "alice")
    assert await tokens.revoke(token) is True
    history_len = len(await store.list_range(login_history_key(1), 0, -1))

    assert await tokens.revoke(token) is False
    assert len(await store.list_range(login_history_key(1), 0, -1)) == history_len


@pytest.mark.asyncio
async def test_revoke_after_force_revoke_is_rejected(tokens, store):
    token = await tokens.issue(1, "alice")
    assert await tokens.force_revoke_all(1) is True
    history = await store.list_range(login_history_key(1), 0, -1)

    assert await tokens.revoke(token) is False
    assert await store.list_range(login_history_key(1), 0, -1) == history
