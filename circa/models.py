"""
Subjects (Order, Item), the Order<->Item membership, and the immutable Transition record.
Subjects carry no state field: current state is always derived from transition history.
"""
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field


class SubjectKind(str, Enum):
    ORDER = "order"
    ITEM = "item"


class OrderVariant(str, Enum):
    STANDARD = "standard"
    REPRODUCTION = "reproduction"


class RequestContext(BaseModel):
    """Request-scoped context passed through to the work-complete notification."""
    model_config = ConfigDict(frozen=True)

    host_with_port: str


class TransitionMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    order_id: int | None = None
    location_id: int | None = None
    request: RequestContext | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, value: "TransitionMetadata | dict[str, Any]") -> "TransitionMetadata":
        if isinstance(value, cls):
            return value
        return cls.model_validate(value)

    def scoped_to(self, order_id: int) -> "TransitionMetadata":
        return self.model_copy(update={"order_id": order_id})


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    subject_kind: SubjectKind
    subject_id: int
    event: str
    to_state: str
    metadata: TransitionMetadata
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> int:
        return self.metadata.user_id

    @property
    def order_id(self) -> int | None:
        return self.metadata.order_id


class Order(BaseModel):
    kind: ClassVar[SubjectKind] = SubjectKind.ORDER

    id: int
    variant: OrderVariant = OrderVariant.STANDARD
    open: bool = True
    confirmed: bool = False
    access_date_start: date | None = None
    location_id: int | None = None
    assignees: list[str] = Field(default_factory=list)

    @property
    def reproduction(self) -> bool:
        return self.variant is OrderVariant.REPRODUCTION


class Item(BaseModel):
    kind: ClassVar[SubjectKind] = SubjectKind.ITEM

    id: int
    uri: str | None = None
    source: Literal["archivesspace", "catalog", "unknown"] = "unknown"
    obsolete: bool = False
    is_digital: bool = False
    permanent_location_id: int | None = None
    current_location_id: int | None = None


class ItemMembership(BaseModel):
    order_id: int
    item_id: int
    active: bool = True


Subject = Order | Item
