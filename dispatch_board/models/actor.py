"""
Acting user and role capabilities.

Role lookup is done by the upstream auth layer; the dispatch core only
needs the role to derive what the actor may do.
"""
import enum
from dataclasses import dataclass
from typing import Optional


class UserRole(str, enum.Enum):
    """Roles known to the ERP."""

    CEO = "ceo"
    SUPERVISOR = "supervisor"
    FRONTDESK = "frontdesk"  # agent administratif
    OPERATIONS_DIRECTOR = "directeur_operationnel"
    TECHNICAL_MANAGER = "resp_technique"
    CENTRALISTE = "centraliste"  # batching plant operator
    COMMERCIAL = "commercial"
    ACCOUNTING = "accounting"
    AUDITOR = "auditeur"


class Capability(str, enum.Enum):
    """What a role is allowed to do on the dispatch board."""

    WRITE = "write"
    CREDIT_OVERRIDE = "credit_override"
    APPROVE_OVERRIDES = "approve_overrides"


READ_ONLY_ROLES = frozenset({UserRole.AUDITOR})

MANAGEMENT_ROLES = frozenset({UserRole.CEO, UserRole.SUPERVISOR})

ROLE_CAPABILITIES: dict[UserRole, frozenset[Capability]] = {
    UserRole.CEO: frozenset(Capability),
    UserRole.SUPERVISOR: frozenset(Capability),
    UserRole.FRONTDESK: frozenset({Capability.WRITE, Capability.CREDIT_OVERRIDE}),
    UserRole.OPERATIONS_DIRECTOR: frozenset({Capability.WRITE}),
    UserRole.TECHNICAL_MANAGER: frozenset({Capability.WRITE}),
    UserRole.CENTRALISTE: frozenset({Capability.WRITE}),
    UserRole.COMMERCIAL: frozenset({Capability.WRITE}),
    UserRole.ACCOUNTING: frozenset({Capability.WRITE}),
    UserRole.AUDITOR: frozenset(),
}


@dataclass(frozen=True)
class Actor:
    """The user performing a board action."""

    id: str
    role: UserRole
    display_name: Optional[str] = None

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    @property
    def is_read_only(self) -> bool:
        return self.role in READ_ONLY_ROLES or not self.can(Capability.WRITE)

    @property
    def can_override_credit(self) -> bool:
        return self.can(Capability.CREDIT_OVERRIDE)
