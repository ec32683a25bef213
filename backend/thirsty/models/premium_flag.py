"""
ProfilePremiumFlag model - denormalized premium marker for list rendering.

The flag is a cache of the resolver's computation. It is always written as
a value derived from ledger state, never toggled relative to its previous
value, so replays and reorderings converge.
"""

from sqlalchemy import Boolean, Column, String

from thirsty.db_base import Base
from thirsty.models.base import UTCDateTime, utcnow


class ProfilePremiumFlag(Base):
    """Per-user premium marker read by profile listings."""

    __tablename__ = "profile_premium_flags"

    user_id = Column(String(255), primary_key=True)
    is_premium = Column(Boolean, nullable=False, default=False)
    premium_expires_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of the entitling window; null when not premium"
    )
    refreshed_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<ProfilePremiumFlag(user_id={self.user_id}, is_premium={self.is_premium}, "
            f"premium_expires_at={self.premium_expires_at})>"
        )
