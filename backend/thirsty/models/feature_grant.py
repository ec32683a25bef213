"""
FeatureGrant model - per-user administrative feature overrides.

A grant beats the subscription plan for its feature key. Grants are written
by the admin collaborator and by identity verification (verified_badge);
they never expire on their own.
"""

from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, String, Text, UniqueConstraint

from thirsty.models.base import Base, TimestampMixin, generate_uuid


class FeatureGrant(Base, TimestampMixin):
    """
    Per-user override for a single catalog feature.

    config layout:
        {"enabled": true, "limits": {"max_photos": 12}}

    A grant with enabled=false is stored but ignored by resolution.
    """

    __tablename__ = "feature_grants"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    user_id = Column(String(255), nullable=False, index=True)
    feature_key = Column(String(100), nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    granted_by = Column(
        String(255),
        nullable=True,
        comment="Admin or system actor that created the grant"
    )
    reason = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "feature_key", name="uq_feature_grants_user_feature"),
    )

    @property
    def enabled(self) -> bool:
        return bool((self.config or {}).get("enabled", False))

    @property
    def limit_overrides(self) -> Optional[Dict[str, Any]]:
        """Limits from config, or None when the grant is unlimited."""
        limits = (self.config or {}).get("limits")
        if not limits:
            return None
        return dict(limits)

    def __repr__(self) -> str:
        return (
            f"<FeatureGrant(user_id={self.user_id}, feature_key={self.feature_key}, "
            f"enabled={self.enabled})>"
        )
