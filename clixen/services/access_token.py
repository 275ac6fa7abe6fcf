"""
Signed access tokens presented by the bot to the workflow engine.

HS256 JWTs built with python-jose. The verifier checks, in order:
structure, signature, expiry, audience, issuer, then the required claims.
"""

import hashlib
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from clixen.services.errors import ClixenError
from clixen.services.user_context import AuthorizationContext

REQUIRED_CLAIMS = (
    "sub", "chat_id", "tier", "quota_used", "quota_limit", "trial_active",
    "permissions", "workflow", "iat", "exp", "iss", "aud",
)


class AccessTokenError(ClixenError):
    code = "access_token_error"
    user_message = "Unauthorized"


class InvalidSignature(AccessTokenError):
    code = "invalid_signature"


class Expired(AccessTokenError):
    code = "expired"


class WrongIssuer(AccessTokenError):
    code = "wrong_issuer"


class WrongAudience(AccessTokenError):
    code = "wrong_audience"


class MalformedToken(AccessTokenError):
    code = "malformed_token"


@dataclass(frozen=True)
class SignedAccessToken:
    token: str
    claims: Dict[str, Any]


def params_digest(parameters: Optional[Mapping[str, Any]]) -> str:
    """Stable SHA-256 over the workflow parameters, bound into the token."""
    canonical = json.dumps(parameters or {}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SignedAccessTokenIssuer:
    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "clixen-ai",
        audience: str = "n8n-workflows",
        ttl_seconds: int = 300,
        algorithm: str = "HS256",
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("access token secret must be set")
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._ttl = ttl_seconds
        self._algorithm = algorithm
        self._clock = clock

    def build_claims(
        self,
        ctx: AuthorizationContext,
        workflow: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        now = int(self._clock())
        return {
            "sub": ctx.account_id,
            "chat_id": ctx.chat_id,
            "tier": ctx.tier,
            "quota_used": ctx.quota_used,
            "quota_limit": ctx.quota_limit,
            "trial_active": ctx.trial_active,
            "permissions": sorted(ctx.permissions),
            "workflow": workflow,
            "params_sha256": params_digest(parameters),
            "iat": now,
            "exp": now + self._ttl,
            "iss": self._issuer,
            "aud": self._audience,
            "jti": str(uuid.uuid4()),
        }

    def encode_claims(self, claims: Mapping[str, Any]) -> str:
        return jwt.encode(dict(claims), self._secret, algorithm=self._algorithm)

    def issue(
        self,
        ctx: AuthorizationContext,
        workflow: str,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> SignedAccessToken:
        claims = self.build_claims(ctx, workflow, parameters)
        return SignedAccessToken(token=self.encode_claims(claims), claims=claims)


class AccessTokenVerifier:
    """Downstream-side validation of a SignedAccessToken."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "clixen-ai",
        audience: str = "n8n-workflows",
        algorithm: str = "HS256",
    ):
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._algorithm = algorithm

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the trusted claims or raise an AccessTokenError subclass."""
        if not token or token.count(".") != 2:
            raise MalformedToken("not a compact JWS")
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise MalformedToken("unreadable header") from e
        if header.get("alg") != self._algorithm:
            raise InvalidSignature(f"unexpected algorithm {header.get('alg')!r}")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_aud": False, "verify_iss": False},
            )
        except ExpiredSignatureError as e:
            raise Expired() from e
        except JWTClaimsError as e:
            raise MalformedToken(str(e)) from e
        except JWTError as e:
            raise InvalidSignature() from e

        if "exp" not in claims:
            raise MalformedToken("missing exp")
        if claims.get("aud") != self._audience:
            raise WrongAudience(f"audience {claims.get('aud')!r}")
        if claims.get("iss") != self._issuer:
            raise WrongIssuer(f"issuer {claims.get('iss')!r}")
        missing = [name for name in REQUIRED_CLAIMS if name not in claims]
        if missing:
            raise MalformedToken(f"missing claims: {', '.join(missing)}")
        if not isinstance(claims["permissions"], list):
            raise MalformedToken("permissions must be a list")
        return claims
