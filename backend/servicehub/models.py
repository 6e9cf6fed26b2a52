from datetime import datetime, time
from datetime import date as date_type
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

AccountRole = Literal["customer", "provider"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "refunded"]


class Document(BaseModel):
    """Base for records persisted through the gateway (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})


class Patch(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_changes(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


def _parse_iso_date(value: str) -> str:
    try:
        date_type.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("expected YYYY-MM-DD") from exc
    return value


def _parse_time_slot(value: str) -> str:
    try:
        time.fromisoformat(value)
    except ValueError as exc:
        raise ValueError("expected HH:MM") from exc
    return value


class Principal(BaseModel):
    uid: str
    email: str = ""
    display_name: str = ""
    photo_url: str = ""


class ImageUpload(BaseModel):
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class Account(Document):
    id: str
    email: str = ""
    display_name: str = ""
    photo_url: str = Field(default="", alias="photoURL")
    user_type: AccountRole = "customer"
    created_at: datetime


class AccountUpdate(Patch):
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(default=None, alias="photoURL")


class ServiceListing(Document):
    id: str
    provider_id: str
    title: str
    description: str = ""
    category: str
    price: float = Field(ge=0)
    image_url: str = ""
    location: str = ""
    rating: float = Field(default=0.0, ge=0, le=5)
    review_count: int = Field(default=0, ge=0)
    created_at: datetime


class ServiceListingCreate(Patch):
    provider_id: str
    title: str = Field(min_length=1)
    description: str = ""
    category: str = Field(min_length=1)
    price: float = Field(ge=0)
    location: str = ""
    image_url: str = ""


class ServiceListingUpdate(Patch):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, min_length=1)
    price: Optional[float] = Field(default=None, ge=0)
    location: Optional[str] = None
    image_url: Optional[str] = None


class Booking(Document):
    id: str
    service_id: str
    customer_id: str
    provider_id: str
    date: str
    start_time: str
    end_time: str
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    total_amount: float = Field(default=0.0, ge=0)
    note: Optional[str] = None
    created_at: datetime


class BookingCreate(Patch):
    service_id: str
    customer_id: str
    provider_id: str
    date: str
    start_time: str
    end_time: str
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    total_amount: float = Field(default=0.0, ge=0)
    note: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: str) -> str:
        return _parse_iso_date(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_times(cls, value: str) -> str:
        return _parse_time_slot(value)

    @model_validator(mode="after")
    def _window_is_ordered(self) -> "BookingCreate":
        if time.fromisoformat(self.end_time) < time.fromisoformat(self.start_time):
            raise ValueError("endTime must not be before startTime")
        return self


class BookingUpdate(Patch):
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    total_amount: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _check_date(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _parse_iso_date(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_times(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _parse_time_slot(value)


class Conversation(Document):
    id: str
    participants: List[str]
    pair_key: str = ""
    last_message: str = ""
    last_message_timestamp: datetime
    unread_count: int = Field(default=0, ge=0)


class Message(Document):
    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: datetime
    is_read: bool = False


class Review(Document):
    id: str
    service_id: str
    booking_id: str
    customer_id: str
    provider_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    created_at: datetime


class ReviewCreate(Patch):
    service_id: str
    booking_id: str
    customer_id: str
    provider_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""


class Action(BaseModel):
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class Settlement(BaseModel):
    operation: str
    status: Literal["fulfilled", "rejected"]
    payload: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


class SliceState(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    is_loading: bool = False
    error: Optional[str] = None


class AuthState(SliceState):
    user: Optional[Account] = None


class ServicesState(SliceState):
    services: List[ServiceListing] = Field(default_factory=list)
    current_service: Optional[ServiceListing] = None
    reviews: List[Review] = Field(default_factory=list)


class BookingsState(SliceState):
    bookings: List[Booking] = Field(default_factory=list)
    current_booking: Optional[Booking] = None


class ChatState(SliceState):
    conversations: List[Conversation] = Field(default_factory=list)
    current_conversation: Optional[Conversation] = None
    messages: List[Message] = Field(default_factory=list)


class RootState(BaseModel):
    model_config = ConfigDict(frozen=True)

    auth: AuthState
    services: ServicesState
    bookings: BookingsState
    chat: ChatState


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str = Field(alias="displayName")
    user_type: AccountRole = Field(default="customer", alias="userType")


class LoginRequest(BaseModel):
    email: str
    password: str


class FederatedLoginRequest(BaseModel):
    id_token: str = Field(alias="idToken")
    provider_id: str = Field(default="google.com", alias="providerId")


class SessionResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_at: str
    user: Optional[Account] = None


class ListingCreateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str = Field(min_length=1)
    description: str = ""
    category: str = Field(min_length=1)
    price: float = Field(ge=0)
    location: str = ""


class BookingCreateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    service_id: str
    date: str
    start_time: str
    end_time: str
    total_amount: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None


class BookingScheduleChange(Patch):
    """Fields either party may change on an open booking."""

    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    note: Optional[str] = None


class BookingChargeChange(BookingScheduleChange):
    payment_status: Optional[PaymentStatus] = None
    total_amount: Optional[float] = Field(default=None, ge=0)


class ReviewCreateRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""


class ConversationOpenRequest(BaseModel):
    other_user_id: str = Field(alias="otherUserId")


class MessageSendRequest(BaseModel):
    content: str = Field(min_length=1)
