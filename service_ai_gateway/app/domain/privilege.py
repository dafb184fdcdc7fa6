"""
Privilege oracle.

Single answer to "is this caller exempt from quota and billing", consulted
by both the admission controller and the metering ledger.
"""

from typing import Iterable, Optional

from shared.logging import get_logger
from ..storage.base import DocumentStore

USERS_COLLECTION = "users"

# Identities that never map to an account record.
SENTINEL_IDENTITIES = frozenset({"", "unknown", "anonymous", "system", "public"})


def is_sentinel(identity: Optional[str]) -> bool:
    return identity is None or identity.strip().lower() in SENTINEL_IDENTITIES


class PrivilegeOracle:
    """Checks direct identity matches first, then the account's role field."""

    def __init__(
        self,
        store: DocumentStore,
        privileged_identities: Iterable[str] = (),
        privileged_roles: Iterable[str] = ("owner", "superadmin"),
    ):
        self.store = store
        self.privileged_identities = {identity.strip().lower() for identity in privileged_identities}
        self.privileged_roles = {role.lower() for role in privileged_roles}
        self.logger = get_logger("gateway.privilege")

    def is_direct_match(self, caller_id: Optional[str]) -> bool:
        if not caller_id:
            return False
        return caller_id.strip().lower() in self.privileged_identities

    async def is_privileged(self, caller_id: Optional[str]) -> bool:
        """Return True if the caller bypasses admission and billing.

        A failed account lookup is treated as not privileged.
        """
        if self.is_direct_match(caller_id):
            return True
        if is_sentinel(caller_id):
            return False

        try:
            account = await self.store.get(USERS_COLLECTION, caller_id)
        except Exception as e:
            self.logger.warning("Privilege lookup failed", caller_id=caller_id, error=str(e))
            return False

        role = (account or {}).get("role")
        if isinstance(role, str) and role.lower() in self.privileged_roles:
            self.logger.debug("Privileged caller", caller_id=caller_id, role=role)
            return True
        return False
