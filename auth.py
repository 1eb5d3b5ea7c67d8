import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from config import Settings
from database import USERS, DocumentStore, now_utc
from errors import Forbidden, NotFound, Unauthenticated, ValidationError
from schemas import MIN_PASSWORD_LENGTH, ProfileUpdate, RegisterRequest, User, Visit

logger = logging.getLogger(__name__)

JWT_ALGO = "HS256"
HOST_ROLES = ("host", "admin")
SECURITY_ROLES = ("security", "admin")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer = HTTPBearer(auto_error=False)


# --------------- Helpers ---------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def names_host(user: User, visit: Visit) -> bool:
    email = user.email.lower()
    targets = (visit.whom_to_meet, visit.whom_to_meet_email)
    return any(t and t.strip().lower() == email for t in targets)


def ensure_can_approve(user: User, visit: Visit) -> None:
    """Admins may act on any visit, hosts only on visits that name them."""
    if user.role == "admin":
        return
    if user.role != "host" or not names_host(user, visit):
        raise Forbidden("Visit is not addressed to you")


class IdentityService:
    def __init__(self, store: DocumentStore, settings: Settings, clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.settings = settings
        self.clock = clock

    # ---- users ----
    def get_user(self, user_id: str) -> User:
        return User.model_validate(self.store.get(USERS, user_id))

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        found = self.store.query(USERS, [("email", "==", email.strip().lower())], limit=1)
        return found[0] if found else None

    def register_user(self, req: RegisterRequest, role: Optional[str] = None) -> User:
        email = str(req.email).strip().lower()
        if self.find_by_email(email):
            raise ValidationError("Email already registered")
        user = User(
            email=email,
            name=req.name,
            role=role or req.role,
            department=req.department,
            photo_url=req.photo_url,
            created_at=self.clock(),
        )
        doc = user.to_document()
        doc["passwordHash"] = hash_password(req.password)
        user.id = self.store.insert(USERS, doc)
        logger.info("Registered %s user %s", user.role, user.id)
        return user

    def authenticate(self, email: str, password: str) -> User:
        doc = self.find_by_email(email)
        if not doc or not verify_password(password, doc.get("passwordHash", "")):
            logger.info("Failed login attempt")
            raise Unauthenticated("Invalid credentials")
        doc = self.store.update(USERS, doc["id"], {"lastLogin": self.clock()})
        return User.model_validate(doc)

    def update_profile(self, user: User, changes: ProfileUpdate) -> User:
        fields = changes.model_dump(by_alias=True, exclude_none=True)
        if not fields:
            return user
        return User.model_validate(self.store.update(USERS, user.id, fields))

    def ensure_admin(self) -> Optional[User]:
        s = self.settings
        if not (s.admin_email and s.admin_password):
            return None
        existing = self.find_by_email(s.admin_email)
        if existing:
            logger.info("[startup] Admin user exists")
            return User.model_validate(existing)
        if len(s.admin_password) < MIN_PASSWORD_LENGTH:
            logger.error(
                "[startup] ADMIN_PASSWORD must be at least %d characters; admin user not created",
                MIN_PASSWORD_LENGTH,
            )
            return None
        req = RegisterRequest(name=s.admin_name, email=s.admin_email, password=s.admin_password)
        admin = self.register_user(req, role="admin")
        logger.info("[startup] Default admin created: %s", admin.email)
        return admin

    # ---- tokens ----
    def issue_token(self, user: User, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.settings.access_token_expire_minutes)
        )
        payload = {"sub": user.id, "role": user.role, "email": user.email, "exp": expire}
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=JWT_ALGO)

    def decode_token(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.settings.jwt_secret, algorithms=[JWT_ALGO])
        except jwt.PyJWTError as e:
            logger.info("Rejected bearer token: %s", type(e).__name__)
            raise Forbidden("Invalid or expired token")

    def resolve(self, token: str) -> User:
        payload = self.decode_token(token)
        user_id = payload.get("sub")
        if not user_id:
            raise Forbidden("Invalid or expired token")
        try:
            return self.get_user(user_id)
        except NotFound:
            raise Forbidden("Invalid or expired token")


# --------------- Dependencies ---------------

def get_identity(request: Request) -> IdentityService:
    return request.app.state.identity


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    identity: IdentityService = Depends(get_identity),
) -> User:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated()
    return identity.resolve(credentials.credentials)


def require_roles(*roles):
    def role_checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise Forbidden()
        return user
    return role_checker
