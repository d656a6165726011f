from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class FileClass(StrEnum):
    MD = "md"
    SCRIPTS = "scripts"
    CONFIG = "config"
    OTHER = "other"
    BINARY = "binary"


class PackageFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    content: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]
