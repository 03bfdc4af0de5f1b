"""Shared Pydantic data models for the service desk sync core.

These models mirror the rows of the remote tables (profiles,
service_requests, service_notes, notifications, inventory). All modules
import from here.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# === Enums ===

class Role(str, Enum):
    """Closed set of actor roles."""
    ADMIN = "admin"
    CUSTOMER = "customer"


class RequestStatus(str, Enum):
    """Workflow status of a service request."""
    PENDING = "pending"
    DIAGNOSING = "diagnosing"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    WAITING_PARTS = "waiting_parts"
    RESOLVED = "resolved"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    REJECTED = "rejected"


class MediaType(str, Enum):
    """Kind of attached media."""
    IMAGE = "image"
    VIDEO = "video"


class NotificationType(str, Enum):
    """Severity of a feed notification."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class FailureCategory(str, Enum):
    """Failure categories a customer can pick when filing a request."""
    MOTOR = "Motor fault (heat/noise)"
    CONNECTION = "Connection/socket issue"
    BATTERY = "Battery/power issue"
    STROKE = "Stroke/speed irregularity"
    MECHANICAL = "Housing/mechanical damage"
    INK_INGRESS = "Ink ingress"
    OTHER = "Other"


class InventoryStatus(str, Enum):
    """Condition of a stocked part."""
    NEW = "new"
    USED = "used"
    REFURBISHED = "refurbished"
    DEFECTIVE = "defective"
    SCRAP = "scrap"


class _Row(BaseModel):
    """Base for gateway rows: ids may arrive as ints or UUID strings."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    def to_row(self, exclude: set[str] | None = None) -> dict[str, Any]:
        """Serialize for a gateway insert/update, omitting None values."""
        return self.model_dump(mode="json", exclude_none=True, exclude=exclude)


# === Identity ===

class Profile(_Row):
    """One row per identity in the ``profiles`` table."""
    id: str
    full_name: str = ""
    email: str = ""
    phone: str = ""
    role: Role = Role.CUSTOMER
    has_seen_guide: bool = False
    created_at: Optional[datetime] = None

    @field_validator("full_name", "email", "phone", "has_seen_guide", mode="before")
    @classmethod
    def _none_to_default(cls, value: Any, info) -> Any:
        if value is None:
            return False if info.field_name == "has_seen_guide" else ""
        return value


class ProfileWithStats(Profile):
    """Profile enriched with its request count (admin CRM listing)."""
    request_count: int = 0


class Actor(BaseModel):
    """The authenticated identity performing an operation."""
    id: str
    role: Role
    full_name: str = ""
    email: str = ""
    phone: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @classmethod
    def from_profile(cls, profile: Profile) -> Actor:
        return cls(
            id=profile.id,
            role=profile.role,
            full_name=profile.full_name,
            email=profile.email,
            phone=profile.phone,
        )


# === Requests ===

class MediaItem(BaseModel):
    """A single uploaded photo or video attached to a request."""
    type: MediaType
    url: str
    path: str


class RequestDraft(BaseModel):
    """Customer-entered fields for a new service request."""
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)
    category: FailureCategory
    product_date: str = Field(min_length=1)
    description: str = Field(min_length=1)


class ServiceRequest(_Row):
    """A customer's repair request."""
    id: str
    created_at: datetime
    user_id: str
    full_name: str = ""
    email: str = ""
    phone: str = ""
    brand: str = ""
    model: str = ""
    category: str = ""
    product_date: str = ""
    description: str = ""
    media_urls: list[MediaItem] = Field(default_factory=list)
    status: RequestStatus = RequestStatus.PENDING
    rejection_reason: Optional[str] = None
    estimated_cost: Optional[float] = None
    currency: Optional[str] = None
    approved_by_customer: bool = False
    shipping_company: Optional[str] = None
    shipping_tracking_code: Optional[str] = None

    @field_validator("media_urls", mode="before")
    @classmethod
    def _media_none(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("approved_by_customer", mode="before")
    @classmethod
    def _approved_none(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("full_name", "email", "phone", "brand", "model",
                     "category", "product_date", "description", mode="before")
    @classmethod
    def _text_none(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def short_id(self) -> str:
        return self.id[:6]

    @property
    def device(self) -> str:
        return f"{self.brand} {self.model}".strip()


# === Notes ===

class NoteAuthor(BaseModel):
    """Author display info, resolved at read time."""
    role: Role = Role.CUSTOMER
    full_name: str = "Unknown"


UNKNOWN_AUTHOR = NoteAuthor(role=Role.CUSTOMER, full_name="Unknown")


class ServiceNote(_Row):
    """An immutable entry in a request's thread."""
    id: str
    created_at: datetime
    request_id: str
    note: str = ""
    media_url: Optional[str] = None
    media_type: Optional[MediaType] = None
    author_id: Optional[str] = None
    author: Optional[NoteAuthor] = None

    @field_validator("note", mode="before")
    @classmethod
    def _note_none(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def has_content(self) -> bool:
        return bool(self.note.strip()) or self.media_url is not None


# === Notifications ===

class Notification(_Row):
    """A row in the recipient's notification feed."""
    id: str
    user_id: str
    title: str
    message: str = ""
    type: NotificationType = NotificationType.INFO
    link: Optional[str] = None
    is_read: bool = False
    created_at: Optional[datetime] = None

    @field_validator("is_read", mode="before")
    @classmethod
    def _read_none(cls, value: Any) -> Any:
        return False if value is None else value


# === Inventory ===

class InventoryItem(_Row):
    """A stocked part on the shelf."""
    id: str
    created_at: Optional[datetime] = None
    name: str
    category: str = ""
    sku: Optional[str] = None
    quantity: int = Field(default=0, ge=0)
    critical_level: int = Field(default=0, ge=0)
    buy_price: float = Field(default=0, ge=0)
    sell_price: float = Field(default=0, ge=0)
    shelf_location: Optional[str] = None
    status: InventoryStatus = InventoryStatus.NEW
    notes: Optional[str] = None

    @property
    def is_critical(self) -> bool:
        """Stock at or below its reorder threshold."""
        return self.quantity <= self.critical_level
