from fastapi import Depends, HTTPException, Request
from fastapi.responses import Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from models import User

serializer = URLSafeTimedSerializer(settings.SECRET_KEY, salt="flight-network-session")
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    try:
        return pwd_context.verify(password, stored)
    except ValueError:
        # passlib raises UnknownHashError (a ValueError) for unrecognised hashes.
        return False


def login_user(response: Response, user: User):
    """Issue a signed, time-limited session cookie for ``user``."""
    token = serializer.dumps({"uid": user.id, "role": user.role})
    response.set_cookie(
        key=settings.SESSION_COOKIE,
        value=token,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
    )


def logout_user(response: Response):
    response.delete_cookie(key=settings.SESSION_COOKIE)


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User | None:
    """Resolve the signed-in user, or None for anonymous, forged or expired cookies."""
    token = request.cookies.get(settings.SESSION_COOKIE)
    if not token:
        return None
    try:
        claims = serializer.loads(token, max_age=settings.SESSION_MAX_AGE_SECONDS)
    except BadSignature:
        # SignatureExpired is a BadSignature too
        return None
    user_id = claims.get("uid")
    if user_id is None:
        return None
    user = db.get(User, user_id)
    # A role change invalidates sessions issued under the old role.
    if user is None or user.role != claims.get("role"):
        return None
    return user


def require_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return current_user


def require_admin(current_user: User = Depends(require_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user
