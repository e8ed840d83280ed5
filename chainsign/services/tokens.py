"""
Signed, expiring tokens.

All tokens are HS256 JWTs carrying a ``type`` discriminant so that one kind
can never be presented in place of another:

* ``magic_link``      - emailed to a signer, 7 days, hash kept on the signer row
* ``signing_session`` - issued after OTP success, 1 hour, never persisted
* ``download``        - time-boxed link to the current PDF bytes
* ``access``          - sender bearer token
"""
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ..config import Settings
from ..errors import InvalidTokenError

MAGIC_LINK = "magic_link"
SIGNING_SESSION = "signing_session"
DOWNLOAD = "download"
ACCESS = "access"

ALGORITHM = "HS256"


def hash_token(token: str) -> str:
    """SHA-256 hex digest of the raw token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SignerClaims:
    signer_id: str
    document_id: str
    type: str


@dataclass(frozen=True)
class DownloadClaims:
    file_path: str
    document_id: str
    actor_email: str


class TokenService:
    """Stateless issuer/verifier; a pure function of the secret and payload."""

    def __init__(self, secret: str, magic_link_ttl: timedelta, session_ttl: timedelta,
                 access_ttl: timedelta = timedelta(hours=1)):
        self.secret = secret
        self.magic_link_ttl = magic_link_ttl
        self.session_ttl = session_ttl
        self.access_ttl = access_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            settings.SECRET_KEY,
            magic_link_ttl=timedelta(days=settings.MAGIC_LINK_TTL_DAYS),
            session_ttl=timedelta(minutes=settings.SESSION_TTL_MINUTES),
            access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_TTL_MINUTES),
        )

    # --- issue ---

    def _encode(self, claims: dict, ttl: timedelta) -> str:
        now = datetime.now(timezone.utc)
        payload = dict(claims, iat=now, exp=now + ttl)
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def issue_magic_link(self, signer_id: str, document_id: str) -> str:
        return self._encode(
            {"signerId": signer_id, "documentId": document_id, "type": MAGIC_LINK},
            self.magic_link_ttl,
        )

    def issue_session(self, signer_id: str, document_id: str) -> str:
        return self._encode(
            {"signerId": signer_id, "documentId": document_id, "type": SIGNING_SESSION},
            self.session_ttl,
        )

    def issue_download(self, file_path: str, document_id: str, actor_email: str, ttl_seconds: int) -> str:
        return self._encode(
            {"path": file_path, "documentId": document_id, "actor": actor_email, "type": DOWNLOAD},
            timedelta(seconds=ttl_seconds),
        )

    def issue_access(self, user_id: str) -> str:
        return self._encode({"sub": user_id, "type": ACCESS}, self.access_ttl)

    # --- verify ---

    def _decode(self, token: str, expected_type: str) -> dict:
        if not token:
            raise InvalidTokenError("invalid_token", "Missing token.")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("expired", "This link has expired.")
        except jwt.InvalidTokenError:
            raise InvalidTokenError("invalid_token", "This link is invalid.")
        if payload.get("type") != expected_type:
            raise InvalidTokenError("invalid_token", "This link is invalid.")
        return payload

    def _signer_claims(self, token: str, expected_type: str) -> SignerClaims:
        payload = self._decode(token, expected_type)
        signer_id = payload.get("signerId")
        document_id = payload.get("documentId")
        if not isinstance(signer_id, str) or not isinstance(document_id, str):
            raise InvalidTokenError("invalid_token", "This link is invalid.")
        return SignerClaims(signer_id, document_id, expected_type)

    def verify_magic_link(self, token: str, stored_hash: Optional[str] = None,
                          check_hash: bool = True) -> SignerClaims:
        """Verify a magic-link token.

        When ``check_hash`` is set the token's digest must equal
        ``stored_hash``, so a superseded link stops working as soon as a new
        one is persisted for the same signer.
        """
        claims = self._signer_claims(token, MAGIC_LINK)
        if check_hash and not self.matches_hash(token, stored_hash):
            raise InvalidTokenError("invalid_token", "This link is invalid.")
        return claims

    def verify_session(self, token: str) -> SignerClaims:
        return self._signer_claims(token, SIGNING_SESSION)

    def verify_download(self, token: str) -> DownloadClaims:
        payload = self._decode(token, DOWNLOAD)
        try:
            return DownloadClaims(payload["path"], payload["documentId"], payload["actor"])
        except KeyError:
            raise InvalidTokenError("invalid_token", "This link is invalid.")

    def verify_access(self, token: str) -> str:
        payload = self._decode(token, ACCESS)
        user_id = payload.get("sub")
        if not isinstance(user_id, str):
            raise InvalidTokenError("invalid_token", "Invalid credentials.")
        return user_id

    @staticmethod
    def matches_hash(token: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        return hmac.compare_digest(hash_token(token), stored_hash)
