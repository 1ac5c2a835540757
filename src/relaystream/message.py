from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class MessageStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETED, MessageStatus.FAILED)


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    url: str
    alt: str | None = None


class EmbeddedResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["embedded"] = "embedded"
    resource_type: str = Field(alias="resourceType")
    data: Any = None


# Unknown item types are kept as plain dicts.
ContentItem = Annotated[
    Union[TextContent, ImageContent, EmbeddedResource, dict[str, Any]],
    Field(union_mode="left_to_right"),
]


def content_text(content: str | list[ContentItem] | None) -> str:
    """Flatten string or structured content into plain text.

    Only text items contribute; images and embedded resources are
    skipped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for item in content:
        if isinstance(item, TextContent):
            parts.append(item.text)
        elif isinstance(item, dict) and item.get("type") == "text":
            parts.append(str(item.get("text", "")))
    return "".join(parts)


class Usage(BaseModel):
    """Token counts and cost reported for one completion.

    ``total_cost`` is derived from the input and output costs when the
    producer leaves it out.
    """

    model_config = ConfigDict(extra="allow")

    input_tokens: int = 0
    output_tokens: int = 0
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float | None = None

    @model_validator(mode="after")
    def _fill_total_cost(self):
        if self.total_cost is None:
            self.total_cost = self.input_cost + self.output_cost
        return self


class FinalMessage(BaseModel):
    """Authoritative message record carried by the ``done`` event."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    content: str | list[ContentItem] | None = None
    status: str | None = None
    usage: Usage | None = None
    error_message: str | None = None
    error_code: str | None = None
    extra_data: dict[str, Any] | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StreamingMessage(BaseModel):
    """Assistant message as seen by consumers of a streaming session.

    While ``status`` is ``processing`` the ``aggregate`` field holds a
    snapshot of the live :class:`~relaystream.aggregator.AggregateState`
    and ``content`` holds the text assembled so far.  Once the status is
    terminal, ``content`` and ``usage`` are authoritative.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    session_id: str
    role: MessageRole = MessageRole.ASSISTANT
    content: str | list[ContentItem] = ""
    status: MessageStatus = MessageStatus.PENDING
    usage: Usage | None = None
    error_message: str | None = None
    error_code: str | None = None
    parent_id: str | None = None
    created_at: datetime = Field(default_factory=_now)
    extra_data: dict[str, Any] = Field(default_factory=dict)
    aggregate: Any = Field(default=None, exclude=True)

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @field_serializer("status")
    def serialize_status(self, status: MessageStatus, _info) -> str:
        return status.value

    @property
    def text(self) -> str:
        return content_text(self.content)
