from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from typing import Annotated, Any, Literal, Optional, Union

NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class Message(WireModel):
    id: str
    content: str
    sender: str
    room: Optional[str] = None
    to: Optional[str] = None
    is_private: bool = Field(False, alias="isPrivate")
    system: bool = False
    created_at: int = Field(..., alias="createdAt")
    read_by: list[str] = Field(default_factory=list, alias="readBy")
    metadata: Optional[dict[str, Any]] = None


# Inbound event payloads

class ChatMessageIn(WireModel):
    room: NonBlank
    content: NonBlank

class PrivateMessageIn(WireModel):
    to: NonBlank
    content: NonBlank

class TypingIn(WireModel):
    room: NonBlank
    is_typing: bool = Field(False, alias="isTyping")

class MessageReadIn(WireModel):
    message_id: NonBlank = Field(..., alias="messageId")

    @field_validator("message_id", mode="before")
    @classmethod
    def _stringify(cls, value: Union[str, int]):
        return str(value) if isinstance(value, int) else value

class CallUserIn(WireModel):
    to: NonBlank
    offer: Any
    is_video: bool = Field(False, alias="isVideo")

class AnswerCallIn(WireModel):
    to: NonBlank
    answer: Any

class IceCandidateIn(WireModel):
    to: NonBlank
    candidate: Any

class RejectCallIn(WireModel):
    to: NonBlank
    reason: Optional[str] = None

class EndCallIn(WireModel):
    to: NonBlank

class FileMessageIn(WireModel):
    room: NonBlank
    filename: NonBlank
    url: NonBlank
    size: int = Field(0, ge=0)

class RoomCallInviteIn(WireModel):
    room: NonBlank
    is_video: bool = Field(False, alias="isVideo")

class RoomIn(WireModel):
    room: NonBlank

class RoomCallSignalIn(WireModel):
    room: NonBlank
    to: NonBlank
    type: Literal["offer", "answer", "candidate"]
    data: Any = None


# HTTP responses

class UploadResponse(BaseModel):
    ok: bool
    url: str
    filename: str
    original: str
    size: int
    timestamp: int
