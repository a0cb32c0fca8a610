from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import bcrypt
from sqlalchemy.engine import Engine

from db import exec_sql, fetch_one

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    """Who did it. Used only as the author on change-log and activity entries."""

    email: str
    name: str
    initials: str

    @property
    def author(self) -> str:
        return self.name or self.email


def make_initials(name: str, email: str = "") -> str:
    parts = [p for p in (name or "").split() if p]
    if parts:
        return "".join(p[0] for p in parts[:2]).upper()
    return (email or "?")[:1].upper()


def _pw_bytes(password: str) -> bytes:
    # avoids bcrypt 72-byte limit by hashing to fixed length
    return hashlib.sha256(password.encode("utf-8")).hexdigest().encode("utf-8")


def get_user_by_email(engine: Engine, email: str):
    return fetch_one(engine, "SELECT * FROM users WHERE email=:e", {"e": email.strip().lower()})


def create_user(engine: Engine, email: str, password: str, name: str = "") -> UserIdentity:
    email = email.strip().lower()
    if not email or "@" not in email:
        raise ValueError("Please enter a valid email address.")
    if not password:
        raise ValueError("Password cannot be empty.")
    if get_user_by_email(engine, email):
        raise ValueError("This email already exists. Please login instead.")
    name = name.strip()
    initials = make_initials(name, email)
    hashed = bcrypt.hashpw(_pw_bytes(password), bcrypt.gensalt()).decode("utf-8")
    exec_sql(
        engine,
        "INSERT INTO users(email,name,initials,password_hash,created_at) VALUES(:e,:n,:i,:p,:t)",
        {"e": email, "n": name, "i": initials, "p": hashed, "t": datetime.utcnow().isoformat()},
    )
    logger.info("created account %s", email)
    return UserIdentity(email=email, name=name, initials=initials)


def verify_user(engine: Engine, email: str, password: str) -> Optional[UserIdentity]:
    u = get_user_by_email(engine, email)
    if not u:
        return None
    stored = str(u["password_hash"]).encode("utf-8")
    if not bcrypt.checkpw(_pw_bytes(password), stored):
        return None
    name = u.get("name") or ""
    return UserIdentity(email=u["email"], name=name, initials=u.get("initials") or make_initials(name, u["email"]))
