import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import jwt
from jose.exceptions import JOSEError

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

PRIVILEGED_ROLES = {"admin", "partner"}


@dataclass
class CurrentUser:
    id: str
    role: str = "buyer"
    email: str = None

    @property
    def is_privileged(self):
        return self.role in PRIVILEGED_ROLES


def verify_token(authorization: str = Header(None)) -> CurrentUser:
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
        if not claims.get("sub"):
            raise ValueError("token has no subject")
    except (ValueError, JOSEError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return CurrentUser(id=str(claims["sub"]), role=claims.get("role", "buyer"), email=claims.get("email"))


def require_privileged(user: CurrentUser):
    if not user.is_privileged:
        raise HTTPException(status_code=403, detail="Forbidden")
