"""
Actor resolution - maps an authenticated request to the identity the
order services authorize against.
"""
from dataclasses import dataclass
from typing import Optional

from core.exceptions import UnauthorizedError

CUSTOMER = 'customer'
DELIVERY = 'delivery'
ADMIN = 'admin'
SYSTEM = 'system'


@dataclass(frozen=True)
class Actor:
    id: Optional[int]
    role: str

    @property
    def is_admin(self) -> bool:
        # Webhooks and scheduled jobs act with admin authority.
        return self.role in (ADMIN, SYSTEM)

    @property
    def user_id(self) -> Optional[int]:
        """Id to record on history entries; None for the system actor."""
        return None if self.role == SYSTEM else self.id

    @classmethod
    def system(cls) -> 'Actor':
        return cls(id=None, role=SYSTEM)

    @classmethod
    def from_user(cls, user) -> 'Actor':
        if user is None or not user.is_authenticated:
            raise UnauthorizedError("Authentication required")
        role = ADMIN if user.is_admin_role else user.role
        return cls(id=user.pk, role=role)


def actor_from_request(request) -> Actor:
    return Actor.from_user(getattr(request, 'user', None))
