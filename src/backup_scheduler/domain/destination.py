from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DestinationType(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class Destination(BaseModel):
    id: str
    name: str = ""
    type: DestinationType = DestinationType.LOCAL
    path: str = Field("/backup", description="Root directory for local destinations")
    url: Optional[str] = Field(None, description="Base URL for remote destinations")
    auth_token: Optional[str] = Field(None, description="Bearer token sent to remote destinations")
    enabled: bool = True

    @property
    def display_name(self) -> str:
        return self.name or self.id
