"""
Fixed-list credential check for the UI login form.

Users come from environment variables user1_email/user1_pass through
user5_email/user5_pass. Slots with either value missing are skipped.
"""

import hmac
from typing import Optional

from pydantic import BaseModel

from workflow_relay.config import get_env_var

MAX_USERS = 5


class User(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


def load_users() -> list[User]:
    """Read the configured user slots from the environment."""
    users = []
    for i in range(1, MAX_USERS + 1):
        email = get_env_var(f"user{i}_email")
        password = get_env_var(f"user{i}_pass")
        if email and password:
            users.append(User(email=email, password=password))
    return users


def check_credentials(users: list[User], email: Optional[str], password: Optional[str]) -> bool:
    if not email or not password:
        return False
    for user in users:
        if _equal(user.email, email) and _equal(user.password, password):
            return True
    return False


def _equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
