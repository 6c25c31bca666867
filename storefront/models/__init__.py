from .account import ROLES, Account
from .db import Base
from .log import AUTH_ACTIONS, AuthEventLog, ImmutableLogMixin

__all__ = [
	"AUTH_ACTIONS",
	"Account",
	"AuthEventLog",
	"Base",
	"ImmutableLogMixin",
	"ROLES",
]
