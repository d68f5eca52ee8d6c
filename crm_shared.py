from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import azure.functions as func

from shared.config import get_auth_session_secret, get_auth_session_ttl_seconds
from shared.db import AuthSession, User
from repository.errors import RepositoryError
from repository.rbac_repo import get_member, stage_grants_for_role

logger = logging.getLogger(__name__)


@dataclass
class CRMActor:
    user_id: str
    email: str
    name: str
    session_id: str
    organization_id: Optional[str] = None
    member_id: Optional[str] = None
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    is_system_role: bool = False
    permissions: List[str] = field(default_factory=list)
    stage_grants: Dict[str, Dict[str, bool]] = field(default_factory=dict)

    def can(self, slug: str) -> bool:
        return slug in self.permissions


def json_response(data: Any, *, status_code: int, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def error_response(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return json_response(payload, status_code=status_code, cors=cors)


def repository_error_response(exc: RepositoryError, cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(cors=cors, status_code=exc.status_code, message=str(exc), code=exc.code)


def server_error_response(cors: Dict[str, str], message: str = "Internal server error") -> func.HttpResponse:
    return error_response(cors=cors, status_code=500, message=message, code="server_error")


def parse_json_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


PASSWORD_HASH_ITERATIONS = 120_000


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), PASSWORD_HASH_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt}${derived.hex()}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    parts = str(stored or "").split("$")
    if len(parts) != 4 or parts[0] != "pbkdf2_sha256" or not parts[1].isdigit():
        return False
    _, iterations, salt, expected = parts
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), int(iterations))
    return hmac.compare_digest(derived.hex(), expected)


def _sign(secret: str, data: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    """Inverse of _encode_segment; raises ValueError on malformed input."""
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _extract_auth_session_token(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    """Bearer header first, then an auth_token query parameter, then the JSON body."""
    headers = req.headers or {}
    scheme, _, credentials = str(headers.get("Authorization") or "").strip().partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    body = body or {}
    for candidate in (req.params.get("auth_token"), body.get("auth_token"), body.get("authToken")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def issue_auth_session_token(session_id: str, *, ttl_seconds: Optional[int] = None) -> Tuple[Optional[str], Optional[datetime]]:
    secret = get_auth_session_secret()
    if not secret or not session_id:
        return None, None
    if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        ttl_seconds = get_auth_session_ttl_seconds()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    claims = {"sid": str(session_id), "exp": int(expires_at.timestamp()), "jti": secrets.token_urlsafe(8)}
    body = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return f"{_encode_segment(body)}.{_encode_segment(_sign(secret, body))}", expires_at


def _verify_auth_session_token(token: str) -> Optional[Dict[str, Any]]:
    secret = get_auth_session_secret()
    body_part, dot, sig_part = str(token or "").strip().partition(".")
    if not secret or not dot:
        return None
    try:
        body = _decode_segment(body_part)
        signature = _decode_segment(sig_part)
    except ValueError:
        return None
    if not body or not hmac.compare_digest(_sign(secret, body), signature):
        return None
    try:
        claims = json.loads(body.decode("utf-8"))
        expires = int(claims.get("exp") or 0)
    except (ValueError, TypeError, AttributeError):
        return None
    if not claims.get("sid") or expires <= int(datetime.now(timezone.utc).timestamp()):
        return None
    return claims


def open_auth_session(
    db,
    user: User,
    req: Optional[func.HttpRequest] = None,
    *,
    active_organization_id: Optional[str] = None,
) -> Tuple[Optional[str], Optional[AuthSession]]:
    """Create a session row for the user and return (token, session)."""
    session = AuthSession(id=str(uuid4()), user_id=user.id, token_hash="", expires_at=datetime.utcnow())
    token, expires_at = issue_auth_session_token(session.id)
    if not token:
        logger.error("Cannot issue session token: AUTH_SESSION_SECRET is not configured")
        return None, None
    session.token_hash = hash_session_token(token)
    session.expires_at = expires_at.replace(tzinfo=None)
    session.active_organization_id = active_organization_id
    if req is not None:
        headers = req.headers or {}
        forwarded = str(headers.get("x-forwarded-for") or "").split(",")[0].strip()
        session.ip_address = forwarded or None
        session.user_agent = headers.get("user-agent") or None
    db.add(session)
    db.flush()
    return token, session


def get_auth_session(db, token: str) -> Optional[AuthSession]:
    claims = _verify_auth_session_token(token)
    if not claims:
        return None
    session = db.query(AuthSession).filter_by(token_hash=hash_session_token(token)).one_or_none()
    if not session or session.id != claims.get("sid"):
        return None
    if session.expires_at <= datetime.utcnow():
        # Committed here: callers answering 401 close the session without committing.
        db.delete(session)
        db.commit()
        return None
    return session


def resolve_session(db, req: func.HttpRequest, body: Optional[dict] = None) -> Optional[AuthSession]:
    token = _extract_auth_session_token(req, body)
    if not token:
        return None
    return get_auth_session(db, token)


def extract_organization_id(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    body = body or {}
    headers = req.headers or {}
    candidates = [
        (req.route_params or {}).get("organizationId"),
        req.params.get("organizationId"),
        body.get("organizationId"),
        headers.get("x-organization-id"),
    ]
    for candidate in candidates:
        value = str(candidate or "").strip()
        if value:
            return value
    return ""


def build_actor(db, session: AuthSession, organization_id: Optional[str]) -> Optional[CRMActor]:
    user = session.user or db.query(User).filter_by(id=session.user_id).one_or_none()
    if not user:
        return None
    actor = CRMActor(
        user_id=user.id,
        email=user.email,
        name=user.name,
        session_id=session.id,
        organization_id=organization_id or None,
    )
    if not organization_id:
        return actor
    member = get_member(db, user.id, organization_id)
    if member and member.role:
        actor.member_id = member.id
        actor.role_id = member.role.id
        actor.role_name = member.role.name
        actor.is_system_role = bool(member.role.is_system_role)
        actor.permissions = sorted(p.slug for p in member.role.permissions)
        actor.stage_grants = stage_grants_for_role(member.role)
    return actor


def resolve_actor(
    db,
    req: func.HttpRequest,
    body: Optional[dict] = None,
    organization_id: Optional[str] = None,
) -> Optional[CRMActor]:
    session = resolve_session(db, req, body)
    if not session:
        return None
    org_id = organization_id or extract_organization_id(req, body) or session.active_organization_id
    return build_actor(db, session, org_id)


def resolve_actor_or_error(
    db,
    req: func.HttpRequest,
    body: Dict[str, Any],
    cors: Dict[str, str],
    *,
    organization_id: Optional[str] = None,
    require_member: bool = True,
) -> Tuple[Optional[CRMActor], Optional[func.HttpResponse]]:
    actor = resolve_actor(db, req, body, organization_id)
    if not actor:
        return None, error_response(
            cors=cors,
            status_code=401,
            message="Authentication required",
            code="auth_required",
        )
    if not require_member:
        return actor, None
    if not actor.organization_id:
        return None, error_response(
            cors=cors,
            status_code=400,
            message="No active organization",
            code="no_active_organization",
        )
    if not actor.member_id:
        return None, error_response(
            cors=cors,
            status_code=403,
            message="You are not a member of this organization",
            code="forbidden",
        )
    return actor, None


def permission_error(actor: CRMActor, slug: str, cors: Dict[str, str]) -> Optional[func.HttpResponse]:
    if actor.can(slug):
        return None
    return error_response(
        cors=cors,
        status_code=403,
        message=f"Missing permission: {slug}",
        code="forbidden",
    )
