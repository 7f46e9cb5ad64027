"""
Identity & role resolution.

A bearer token is verified by an IdentityProvider and mapped to exactly one
stored user. Role checks go through `authorize`, which every role-gated route
uses via `require_role`.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict, Iterable, Optional

import firebase_admin
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from pymongo.database import Database

import config
from database import get_db
from errors import Forbidden, Unauthorized

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    external_id: str
    email: Optional[str]


class TokenError(Exception):
    reason = "Authentication failed"


class TokenExpired(TokenError):
    reason = "Token expired"


class TokenRevoked(TokenError):
    reason = "Token revoked"


class InvalidToken(TokenError):
    pass


class IdentityProvider:
    def verify(self, token: str) -> Identity:
        raise NotImplementedError


class FirebaseIdentityProvider(IdentityProvider):
    """Verifies Firebase ID tokens, including the revocation check."""

    def __init__(self, credentials_path: Optional[str] = None):
        try:
            self.app = firebase_admin.get_app()
        except ValueError:
            cred = credentials.Certificate(credentials_path) if credentials_path else None
            self.app = firebase_admin.initialize_app(cred)

    def verify(self, token: str) -> Identity:
        try:
            decoded = firebase_auth.verify_id_token(token, app=self.app, check_revoked=True)
        except firebase_auth.ExpiredIdTokenError:
            raise TokenExpired()
        except firebase_auth.RevokedIdTokenError:
            raise TokenRevoked()
        except (firebase_auth.InvalidIdTokenError, firebase_auth.UserDisabledError,
                firebase_auth.CertificateFetchError, ValueError) as e:
            raise InvalidToken(str(e))
        return Identity(external_id=decoded["uid"], email=decoded.get("email"))


class LocalIdentityProvider(IdentityProvider):
    """HS256 tokens signed with a shared secret, for local development and tests."""

    def __init__(self, secret: str = config.JWT_SECRET, algorithm: str = config.JWT_ALGORITHM):
        self.secret = secret
        self.algorithm = algorithm

    def verify(self, token: str) -> Identity:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise TokenExpired()
        except JWTError as e:
            raise InvalidToken(str(e))
        external_id = payload.get("sub")
        if external_id is None:
            raise InvalidToken("Missing subject")
        return Identity(external_id=external_id, email=payload.get("email"))


def create_access_token(external_id: str, email: str, expires_delta: Optional[timedelta] = None,
                        secret: str = config.JWT_SECRET) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": external_id, "email": email, "exp": expire}
    return jwt.encode(to_encode, secret, algorithm=config.JWT_ALGORITHM)


@lru_cache
def get_identity_provider() -> IdentityProvider:
    if config.AUTH_PROVIDER == "local":
        return LocalIdentityProvider()
    return FirebaseIdentityProvider(config.FIREBASE_CREDENTIALS)


def find_user(db: Database, identity: Identity) -> Optional[Dict]:
    clauses = [{"firebase_uid": identity.external_id}]
    if identity.email:
        clauses.insert(0, {"email": identity.email.lower()})
    return db["user"].find_one({"$or": clauses})


def authorize(user: Dict, required_roles: Optional[Iterable[str]] = None) -> Dict:
    """The single role gate: allow when no roles are required or the user's role is listed."""
    if required_roles is not None and user.get("role") not in set(required_roles):
        raise Forbidden("Insufficient permissions")
    return user


async def get_identity(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Identity:
    if creds is None or creds.scheme.lower() != "bearer" or not creds.credentials:
        raise Unauthorized("Missing or invalid token")
    try:
        return provider.verify(creds.credentials)
    except TokenError as e:
        logger.info("token_rejected", reason=e.reason)
        raise Unauthorized(e.reason)


async def get_current_user(identity: Identity = Depends(get_identity), db: Database = Depends(get_db)) -> Dict:
    user = find_user(db, identity)
    if not user:
        raise Unauthorized("User not found")
    if not user.get("is_active", True):
        raise Forbidden("Account is disabled")
    return user


def require_role(*roles: str):
    async def role_dep(user=Depends(get_current_user)):
        return authorize(user, roles)
    return role_dep
