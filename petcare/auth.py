import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import Header, HTTPException
from jose import JWTError, jwt

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


def verify_token(authorization: str = Header(...)) -> dict:
    """Decode the bearer token and return its claims."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_doctor(claims: dict) -> str:
    """Email of the doctor behind ``claims``; 403 for anyone else."""
    if claims.get("role") != "doctor" or not claims.get("email"):
        raise HTTPException(status_code=403, detail="Doctor access required")
    return claims["email"]
