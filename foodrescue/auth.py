from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from foodrescue.gateway import BackendGateway


@dataclass(frozen=True)
class AccountSession:
    account_id: str
    role: str
    full_name: str = ""

    @property
    def is_partner(self) -> bool:
        return self.role == "partner"


def resolve_session(gateway: BackendGateway, account_id: Optional[str]) -> Optional[AccountSession]:
    """Map the authenticated account id to its profile; ``None`` means signed out."""
    if not account_id:
        return None
    profile = gateway.get_profile(account_id)
    if profile is None:
        return None
    return AccountSession(account_id=profile["id"], role=profile["role"], full_name=profile["full_name"])
