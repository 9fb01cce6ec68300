# SQLModel definitions; imported here to ensure metadata is populated for Alembic.
from .base import UUIDMixin, TimestampMixin  # noqa: F401
from .account import Account  # noqa: F401
from .user import User  # noqa: F401
from .user_account import UserAccount  # noqa: F401
from .login import Login  # noqa: F401
from .communication_channel import CommunicationChannel  # noqa: F401
from .notification_policy import NotificationPolicy  # noqa: F401
