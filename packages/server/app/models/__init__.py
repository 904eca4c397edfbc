# SQLModel definitions — imported here to ensure metadata is populated for Alembic.
from .base import CreatedAtMixin, SoftDeleteMixin, UUIDMixin  # noqa: F401
from .organization import Organization  # noqa: F401
from .member import Member  # noqa: F401
