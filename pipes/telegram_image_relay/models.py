"""Values owned by the workflow: source image, result, status and phase."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class RequestPhase(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    SENDING = "sending"


class SourceImage(BaseModel):
    """An uploaded image held as a data URI until the next Generate."""

    model_config = ConfigDict(frozen=True)

    encoded: str = Field(description="data:<mime>;base64,<payload>")
    display_name: str = ""
    mime_type: str


class GeneratedArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    encoded: str


class OperationStatus(BaseModel):
    """Outcome of the last user action, shown until replaced or dismissed."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["success", "failure"]
    message: str

    @classmethod
    def success(cls, message: str) -> "OperationStatus":
        return cls(kind="success", message=message)

    @classmethod
    def failure(cls, message: str) -> "OperationStatus":
        return cls(kind="failure", message=message)

    @property
    def is_failure(self) -> bool:
        return self.kind == "failure"


class Credentials(BaseModel):
    bot_token: str = ""
    chat_id: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.bot_token and self.chat_id)
