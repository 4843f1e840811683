# SQLModel tables, imported so Alembic sees the full metadata.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .organization import Organization, OrgDid, OrgNotificationEndpoint  # noqa: F401
from .user import User  # noqa: F401
from .role import OrgRole, UserOrgRole  # noqa: F401
from .invitation import OrgInvitation  # noqa: F401
from .activity import UserActivity, OrgDeletionRecord  # noqa: F401
from .platform import PlatformConfig, PasswordResetToken  # noqa: F401
