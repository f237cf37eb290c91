from pathlib import Path
from typing import Dict, Iterable, List, Protocol, Union

from pydantic import TypeAdapter

_OWNER_TABLE = TypeAdapter(Dict[str, List[str]])


class AccessResolver(Protocol):
    async def accessible_accounts(self, owner: str) -> List[str]:
        """Accounts the owner may back up, looked up fresh on every call."""
        ...


class StaticAccessResolver(AccessResolver):
    """
    Ownership table held in memory. The root user can access every account.
    """

    def __init__(self, owners: Dict[str, Iterable[str]] = None, root_user: str = "root"):
        self.root_user = root_user
        self._owners: Dict[str, List[str]] = {owner: list(accounts) for owner, accounts in (owners or {}).items()}

    @classmethod
    def from_file(cls, path: Union[str, Path], root_user: str = "root") -> "StaticAccessResolver":
        path = Path(path)
        if not path.exists():
            return cls(root_user=root_user)
        return cls(_OWNER_TABLE.validate_json(path.read_bytes()), root_user=root_user)

    def add_account(self, owner: str, account: str) -> None:
        accounts = self._owners.setdefault(owner, [])
        if account not in accounts:
            accounts.append(account)

    def remove_account(self, owner: str, account: str) -> None:
        if account in self._owners.get(owner, []):
            self._owners[owner].remove(account)

    async def accessible_accounts(self, owner: str) -> List[str]:
        if owner == self.root_user:
            accounts: List[str] = []
            for owned in self._owners.values():
                accounts.extend(a for a in owned if a not in accounts)
            return accounts
        return list(self._owners.get(owner, []))
