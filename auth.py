import os
import logging
from datetime import datetime, timedelta, timezone

import jwt
from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

DEV_SECRET = "octopus-development-secret-change-me"
JWT_SECRET = os.getenv("JWT_SECRET") or DEV_SECRET
TOKEN_TTL_DAYS = int(os.getenv("TOKEN_TTL_DAYS", "7"))
ALGORITHM = "HS256"

if JWT_SECRET == DEV_SECRET:
    logger.warning("JWT_SECRET is not set; using the development secret")


class AuthError(Exception):
    pass


def create_token(user):
    payload = {
        "sub": str(user["id"]),
        "email": user["email"],
        "role": user["role"],
        "name": user["name"],
        "teacherId": user.get("teacher_id"),
        "exp": datetime.now(timezone.utc) + timedelta(days=TOKEN_TTL_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)

def decode_token(token):
    """Claims of a valid token, with `id` as an int. Raises AuthError otherwise."""
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")
    try:
        claims["id"] = int(claims["sub"])
    except (KeyError, ValueError):
        raise AuthError("Invalid token")
    return claims

def bearer_token(request):
    auth = request.headers.get("authorization", "")
    if not auth.lower().startswith("bearer "):
        raise AuthError("Unauthorized")
    return auth.split(" ", 1)[1].strip()

def current_user(request):
    return decode_token(bearer_token(request))

def public_user(user):
    """Shape a db user row the way the client expects it."""
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "role": user["role"],
        "teacherCode": user.get("teacher_code"),
        "teacherId": user.get("teacher_id"),
        "teacherName": user.get("teacher_name"),
    }
