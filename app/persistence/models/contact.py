"""Contact model."""

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from app.core.clock import utcnow
from app.persistence.database import Base


class Contact(Base):
    """A deduplicated external identity.

    ``address`` is the normalized sender address (E.164 phone or a
    channel-prefixed handle) and never changes after creation.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("address", name="uq_contact_address"),
    )

    id = Column(Integer, primary_key=True, index=True)
    address = Column(String(320), nullable=False)
    phone = Column(String(50), nullable=True, index=True)
    wa_id = Column(String(50), nullable=True, index=True)
    email = Column(String(320), nullable=True, index=True)
    display_name = Column(String(255), nullable=True)
    source = Column(String(50), nullable=True)  # channel that created the contact
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Contact(id={self.id}, address={self.address})>"
