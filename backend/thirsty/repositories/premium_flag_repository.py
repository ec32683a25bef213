"""
Repository for the denormalized profile premium flag.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from thirsty.models.premium_flag import ProfilePremiumFlag


class PremiumFlagRepository:
    """Set-only access to profile_premium_flags."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, user_id: str, for_update: bool = False) -> Optional[ProfilePremiumFlag]:
        if not for_update:
            return self.db.get(ProfilePremiumFlag, user_id)
        # Locked reads refresh whatever the session already holds
        return self.db.query(ProfilePremiumFlag).filter(
            ProfilePremiumFlag.user_id == user_id
        ).with_for_update().populate_existing().first()

    def set(
        self,
        user_id: str,
        is_premium: bool,
        premium_expires_at: Optional[datetime],
        now: datetime,
    ) -> ProfilePremiumFlag:
        """Write the computed flag value for a user."""
        flag = self.get(user_id)
        if flag is None:
            flag = ProfilePremiumFlag(user_id=user_id)
            self.db.add(flag)
        flag.is_premium = is_premium
        flag.premium_expires_at = premium_expires_at if is_premium else None
        flag.refreshed_at = now
        self.db.flush()
        return flag

    def list_lapsed(self, now: datetime, limit: int = 500) -> List[ProfilePremiumFlag]:
        """Flags still marked premium whose window has passed."""
        return self.db.query(ProfilePremiumFlag).filter(
            ProfilePremiumFlag.is_premium.is_(True),
            ProfilePremiumFlag.premium_expires_at.isnot(None),
            ProfilePremiumFlag.premium_expires_at <= now,
        ).order_by(ProfilePremiumFlag.premium_expires_at).limit(limit).all()
