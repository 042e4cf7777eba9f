from typing import Optional

from sqlalchemy.orm import Session

from models import Template, UserProfile
from services.errors import ConfigurationError


def template_for(db: Session, user_id: str) -> Optional[Template]:
    profile = db.query(UserProfile).filter(UserProfile.user_id == user_id).first()
    if profile is None or profile.template_id is None:
        return None
    return db.query(Template).filter(Template.id == profile.template_id).first()


def resolve_engine_key(
    explicit: Optional[str],
    template_key: Optional[str],
    fallback: Optional[str],
    engine: str,
) -> str:
    """Request key, then the user's template, then the process-wide setting."""
    key = explicit or template_key or fallback
    if not key:
        raise ConfigurationError(f"{engine} API key is required")
    return key
