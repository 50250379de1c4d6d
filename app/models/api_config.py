import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, LargeBinary, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class ApiConfig(Base):
    """A provider configuration. ``owner_id`` NULL marks a global (admin-managed) config."""

    __tablename__ = "provider_configs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)  # google / fal / openai / stability / custom
    endpoint: Mapped[str | None] = mapped_column(String(500), nullable=True)
    model_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    options: Mapped[dict] = mapped_column(JSONB, default=dict, server_default="{}")

    # Encrypted API credential
    api_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    # Global config visibility: public / authenticated / restricted
    access_level: Mapped[str] = mapped_column(String(20), default="authenticated", server_default="authenticated")
    allowed_users: Mapped[list] = mapped_column(JSONB, default=list, server_default="[]")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
