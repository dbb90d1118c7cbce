from enum import Enum

from skillmint.core.enum import UserRole
from skillmint.core.errors import Forbidden


class Capability(str, Enum):
    CREDIT_WALLET = "CREDIT_WALLET"
    DEBIT_WALLET = "DEBIT_WALLET"
    APPROVE_COMMISSION = "APPROVE_COMMISSION"
    APPROVE_WITHDRAWAL = "APPROVE_WITHDRAWAL"
    PROCESS_WITHDRAWAL = "PROCESS_WITHDRAWAL"
    FREEZE_WALLET = "FREEZE_WALLET"
    PROCESS_REFUND = "PROCESS_REFUND"


ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    UserRole.ADMIN.value: frozenset(Capability),
    UserRole.INSTRUCTOR.value: frozenset(),
    UserRole.AFFILIATE.value: frozenset(),
    UserRole.STUDENT.value: frozenset(),
    UserRole.SYSTEM.value: frozenset(),
}


def capabilities_of(user) -> frozenset[Capability]:
    if user is None or not user.is_active:
        return frozenset()
    return ROLE_CAPABILITIES.get(user.role, frozenset())


def has_capability(user, capability: Capability) -> bool:
    return capability in capabilities_of(user)


def ensure_capability(user, capability: Capability) -> None:
    if not has_capability(user, capability):
        raise Forbidden(
            "Permission denied", errors={"capability": capability.value}
        )
