from typing import Annotated, Any, List, Literal, Union

from pydantic import BaseModel, Field, field_validator

WILDCARD = "*"


class ExplicitAccounts(BaseModel):
    """
    A fixed, ordered set of account identifiers.
    """
    kind: Literal["explicit"] = "explicit"
    accounts: List[str] = Field(..., description="Target account identifiers, in processing order")

    @field_validator("accounts")
    def dedupe_accounts(cls, v: List[str]) -> List[str]:
        seen = []
        for account in v:
            account = account.strip()
            if not account:
                raise ValueError("Account identifiers must not be empty")
            if account == WILDCARD:
                raise ValueError("Use AllAccessibleAccounts instead of the '*' wildcard")
            if account not in seen:
                seen.append(account)
        if not seen:
            raise ValueError("At least one account is required")
        return seen

    def describe(self) -> str:
        return ", ".join(self.accounts)


class AllAccessibleAccounts(BaseModel):
    """
    Every account the owner can access, resolved freshly each time it is used.
    """
    kind: Literal["all"] = "all"

    @property
    def accounts(self) -> List[str]:
        return [WILDCARD]

    def describe(self) -> str:
        return "All Accounts"


AccountSelection = Annotated[Union[ExplicitAccounts, AllAccessibleAccounts], Field(discriminator="kind")]


def parse_accounts(value: Any) -> Union[ExplicitAccounts, AllAccessibleAccounts, dict]:
    """
    Normalise the accepted spellings of an account selection.

    ``"*"``, ``["*"]`` and any list containing ``"*"`` select all accessible
    accounts; any other list is an explicit selection. Already-built variants
    and their dict forms pass through untouched.
    """
    if isinstance(value, (ExplicitAccounts, AllAccessibleAccounts, dict)):
        return value
    if isinstance(value, str):
        value = [value]
    if isinstance(value, (list, tuple)):
        if WILDCARD in value:
            return AllAccessibleAccounts()
        return ExplicitAccounts(accounts=list(value))
    raise ValueError(f"Unsupported account selection: {value!r}")
