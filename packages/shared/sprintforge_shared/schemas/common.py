from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


def normalize_email(email: str) -> str:
    """Canonical stored/compared form of an email address."""
    return email.strip().lower()
