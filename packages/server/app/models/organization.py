"""Organization model."""

from sqlmodel import Field, SQLModel

from .base import CreatedAtMixin, JSONType, SoftDeleteMixin, UUIDMixin


class Organization(UUIDMixin, CreatedAtMixin, SoftDeleteMixin, SQLModel, table=True):
    __tablename__ = "organizations"

    name: str = Field(nullable=False)
    settings: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)
