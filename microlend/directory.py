"""Admin directory lookups used to broadcast escrow approval requests."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from .storage import StorageInterface
from .clock import Clock, SystemClock


ADMIN_ROLE = "admin"


class AdminDirectory(ABC):
    """Source of admin user ids"""

    @abstractmethod
    def list_admin_user_ids(self) -> List[str]:
        pass


class StaticAdminDirectory(AdminDirectory):
    """Fixed list of admins, for tests and single-operator deployments"""

    def __init__(self, admin_ids: Iterable[str] = ()):
        self.admin_ids = list(admin_ids)

    def list_admin_user_ids(self) -> List[str]:
        return list(self.admin_ids)


class StorageAdminDirectory(AdminDirectory):
    """Reads admins from the users table (role == "admin")"""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()

        self.users_table = "users"

    def register_user(self, user_id: str, role: str, name: str = "") -> None:
        now: datetime = self.clock.now()
        self.storage.save(self.users_table, user_id, {
            "id": user_id,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "role": role,
            "name": name,
        })

    def list_admin_user_ids(self) -> List[str]:
        return sorted(user["id"] for user in self.storage.find(self.users_table, {"role": ADMIN_ROLE}))
