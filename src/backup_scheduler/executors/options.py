from typing import List

from pydantic import BaseModel, Field


class BackupOptions(BaseModel):
    exclude_paths: List[str] = Field(default=[], description="Paths left out of the account package")
    skip_databases: bool = Field(default=False, description="Package files only, without database dumps")


class RestoreOptions(BaseModel):
    backup_file: str = Field(..., description="Artifact to restore from, relative to the destination root")
    force: bool = Field(default=False, description="Overwrite an existing account")
