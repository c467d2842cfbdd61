from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import ServerError, TokenError
from sessionguard.storage.kv import KVStore
from sessionguard.storage.models import (
    DEFAULT_IP,
    UNKNOWN,
    LoginContext,
    LoginRecord,
    SessionRecord,
    now_ms,
)

logger = get_logger(__name__)


def token_digest(token: str) -> str:
    """Stable key fragment for a token; raw tokens are never used as keys."""
    return hashlib.sha256(token.encode()).hexdigest()


def token_key(digest: str) -> str:
    return f"user_token:{digest}"


def blacklist_key(digest: str) -> str:
    return f"token_blacklist:{digest}"


def active_tokens_key(actor_id: int) -> str:
    return f"user_tokens:{actor_id}"


def session_key(actor_id: int) -> str:
    return f"user_session:{actor_id}"


def online_key(actor_id: int) -> str:
    return f"user_online:{actor_id}"


def login_history_key(actor_id: int) -> str:
    return f"login_history:{actor_id}"


class TokenSigner:
    """HS256 JWT signing and verification."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 120,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.token_clock_skew_seconds,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any], ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token or raise TokenError."""
        if not isinstance(token, str) or not token:
            raise TokenError("token must be a non-empty string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenError("token must have three segments") from exc

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenError("token header is not valid JSON") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenError("unsupported token algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenError("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenError("token payload must be an object")
        if payload.get("iss") != self.issuer:
            raise TokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenError("token audience mismatch")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError("token has no usable expiry") from exc
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenError("token expired")
        return payload


class TokenManager:
    """Issue, validate and revoke tokens, tracking them per actor in the KV store.

    Tokens are self-verifying, so revocation is a blacklist entry checked
    before the signature. A token is valid only while its lookup key exists.
    """

    def __init__(self, store: KVStore, signer: TokenSigner, settings: Settings) -> None:
        self.store = store
        self.signer = signer
        self.settings = settings
        self.logger = logger

    @staticmethod
    def _actor_id_from_claims(claims: dict[str, Any]) -> int:
        try:
            return int(claims["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError("token subject is not an actor id") from exc

    async def _append_history(self, actor_id: int, record: LoginRecord) -> None:
        key = login_history_key(actor_id)
        await self.store.list_push(key, record.to_json())
        await self.store.list_trim(key, 0, self.settings.login_history_limit - 1)
        await self.store.expire(key, self.settings.login_history_ttl_seconds)

    async def issue(
        self,
        actor_id: int,
        actor_name: str,
        claims: Optional[dict[str, Any]] = None,
        *,
        context: LoginContext | dict | None = None,
    ) -> str:
        ctx = LoginContext.coerce(context)
        issued_at = now_ms()
        payload = {
            **(claims or {}),
            "sub": str(actor_id),
            "name": actor_name,
            # Nonce + ms timestamp keep same-millisecond tokens distinct
            "jti": uuid.uuid4().hex,
            "iat_ms": issued_at,
        }
        token = self.signer.sign(payload, self.settings.token_ttl_seconds)
        digest = token_digest(token)
        ttl = self.settings.token_ttl_seconds
        session = SessionRecord(
            actor_id=actor_id,
            actor_name=actor_name,
            login_time=issued_at,
            last_active=issued_at,
            ip=ctx.ip_or_default,
            user_agent=ctx.user_agent_or_default,
        )
        try:
            await self.store.set(
                token_key(digest),
                json.dumps({"actorId": actor_id, "actorName": actor_name}),
                ttl,
            )
            await self.store.set(
                session_key(actor_id), session.to_json(), self.settings.session_ttl_seconds
            )
            await self.store.set_add(active_tokens_key(actor_id), digest)
            await self.store.expire(active_tokens_key(actor_id), ttl)
            await self._append_history(
                actor_id,
                LoginRecord(
                    type="login",
                    timestamp=issued_at,
                    ip=ctx.ip_or_default,
                    user_agent=ctx.user_agent_or_default,
                ),
            )
            await self.store.set(online_key(actor_id), "1", self.settings.session_ttl_seconds)
        except Exception as exc:
            self.logger.error(
                "token_issue_failed",
                actor_id=actor_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("token could not be recorded", detail={"actor_id": actor_id}) from exc
        self.logger.info("token_issued", actor_id=actor_id, jti=payload["jti"])
        return token

    async def validate(self, token: str) -> bool:
        if not isinstance(token, str) or not token:
            return False
        digest = token_digest(token)
        try:
            if await self.store.exists(blacklist_key(digest)):
                return False
            claims = self.signer.verify(token)
            actor_id = self._actor_id_from_claims(claims)
            if not await self.store.exists(token_key(digest)):
                return False
        except TokenError:
            return False
        except Exception as exc:
            self.logger.warning(
                "token_validate_failed_closed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        try:
            await self._touch_session(actor_id)
        except Exception as exc:
            self.logger.warning(
                "session_touch_failed", actor_id=actor_id, error=str(exc)
            )
        return True

    async def _touch_session(self, actor_id: int) -> None:
        raw = await self.store.get(session_key(actor_id))
        if not raw:
            return
        session = SessionRecord.from_json(raw)
        session.last_active = now_ms()
        await self.store.set(
            session_key(actor_id), session.to_json(), self.settings.session_ttl_seconds
        )

    async def revoke(self, token: str) -> bool:
        try:
            claims = self.signer.verify(token)
            actor_id = self._actor_id_from_claims(claims)
        except TokenError:
            return False
        digest = token_digest(token)
        try:
            if await self.store.exists(blacklist_key(digest)):
                self.logger.info("token_already_revoked", actor_id=actor_id)
                return False
            await self.store.set(blacklist_key(digest), "1", self.settings.blacklist_ttl_seconds)
            await self.store.set_remove(active_tokens_key(actor_id), digest)
            await self.store.delete(token_key(digest))
            session = await self.get_session(actor_id)
            await self._append_history(
                actor_id,
                LoginRecord(
                    type="logout",
                    timestamp=now_ms(),
                    ip=session.ip if session else DEFAULT_IP,
                    user_agent=session.user_agent if session else UNKNOWN,
                ),
            )
        except Exception as exc:
            self.logger.warning(
                "token_revoke_failed",
                actor_id=actor_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.logger.info("token_revoked", actor_id=actor_id, jti=claims.get("jti"))
        return True

    async def force_revoke_all(self, actor_id: int) -> bool:
        """Blacklist every active token of an actor and drop its session state."""
        try:
            digests = await self.store.set_members(active_tokens_key(actor_id))
            for digest in digests:
                await self.store.set(
                    blacklist_key(digest), "1", self.settings.blacklist_ttl_seconds
                )
                await self.store.delete(token_key(digest))
            await self.store.delete(
                active_tokens_key(actor_id), session_key(actor_id), online_key(actor_id)
            )
        except Exception as exc:
            self.logger.error(
                "force_revoke_failed",
                actor_id=actor_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.logger.info("tokens_force_revoked", actor_id=actor_id, revoked=len(digests))
        return True

    async def get_session(self, actor_id: int) -> Optional[SessionRecord]:
        raw = await self.store.get(session_key(actor_id))
        if not raw:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError):
            self.logger.warning("session_record_malformed", actor_id=actor_id)
            return None

    async def active_token_count(self, actor_id: int) -> int:
        return len(await self.store.set_members(active_tokens_key(actor_id)))

    async def is_online(self, actor_id: int) -> bool:
        return await self.store.exists(online_key(actor_id))

    async def is_blacklisted(self, token: str) -> bool:
        return await self.store.exists(blacklist_key(token_digest(token)))
