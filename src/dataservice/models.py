# provide dataclass models shared by both backends

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, is_dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

ROLES = ("admin", "customer")
THEMES = ("light", "dark", "system")
ORDER_STATUSES = (
    "Pending",
    "Processing",
    "Shipped",
    "Delivered",
    "Cancelled",
    "Completed",
)
JOB_STATUSES = ("open", "accepted", "completed", "expired")
NOTIFICATION_TYPES = (
    "job_accepted",
    "new_message",
    "job_completed",
    "job_expired",
    "review_received",
    "generic",
)


@dataclass(frozen=True)
class Actor:
    id: str
    email: str
    role: str = "customer"  # "admin" or "customer"


@dataclass(frozen=True)
class Address:
    id: str = ""
    user_id: str = ""
    recipient_name: str = ""
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    state_or_province: str = ""
    postal_code: str = ""
    country: str = ""
    phone_number: Optional[str] = None
    is_default: bool = False


@dataclass(frozen=True)
class User:
    id: str = ""
    email: str = ""
    role: str = "customer"  # "admin" or "customer"
    name: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    last_login: Optional[str] = None
    theme_preference: str = "system"
    addresses: Tuple[Address, ...] = ()
    skills: Tuple[str, ...] = ()
    is_active: bool = True
    # derived, see engine.compute_job_stats
    jobs_created_count: int = 0
    jobs_completed_count: int = 0
    average_job_rating: float = 0.0
    job_review_count: int = 0
    badges: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Category:
    id: str = ""
    name: str = ""
    slug: str = ""
    description: str = ""
    parent_id: Optional[str] = None
    image_id: Optional[str] = None
    display_order: int = 0
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class JobCategory:
    id: str = ""
    name: str = ""
    slug: str = ""
    description: str = ""
    display_order: int = 0
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class Product:
    id: str = ""
    name: str = ""
    description: str = ""
    price: float = 0.0
    stock: int = 0
    category_id: str = ""
    primary_image_id: Optional[str] = None
    additional_image_ids: Tuple[str, ...] = ()
    created_at: str = ""
    updated_at: str = ""
    # derived
    views: int = 0
    purchases: int = 0
    average_rating: float = 0.0
    review_count: int = 0

    @property
    def image_ids(self) -> Tuple[str, ...]:
        ids = [self.primary_image_id] if self.primary_image_id else []
        ids.extend(i for i in self.additional_image_ids if i and i not in ids)
        return tuple(ids)


@dataclass(frozen=True)
class CartItem:
    product_id: str
    quantity: int = 1
    price: float = 0.0  # unit price frozen when the item was added
    name: str = ""
    primary_image_id: Optional[str] = None


@dataclass(frozen=True)
class Cart:
    user_id: str
    items: Tuple[CartItem, ...] = ()
    saved_for_later: Tuple[CartItem, ...] = ()
    updated_at: str = ""


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    quantity: int = 1
    price_at_purchase: float = 0.0
    name: str = ""
    primary_image_id: Optional[str] = None


@dataclass(frozen=True)
class Order:
    id: str = ""
    user_id: str = ""
    items: Tuple[OrderItem, ...] = ()
    total_amount: float = 0.0
    status: str = "Pending"
    shipping_address: Optional[Address] = None
    order_date: str = ""


@dataclass(frozen=True)
class Review:
    id: str = ""
    product_id: str = ""
    user_id: str = ""
    user_name: str = ""
    rating: int = 0
    comment: str = ""
    created_at: str = ""


@dataclass(frozen=True)
class WishlistItem:
    user_id: str
    product_id: str
    added_at: str = ""


@dataclass(frozen=True)
class SavedJobItem:
    user_id: str
    job_id: str
    added_at: str = ""


@dataclass(frozen=True)
class RecentlyViewedItem:
    product_id: str
    viewed_at: str = ""


@dataclass(frozen=True)
class Job:
    id: str = ""
    title: str = ""
    description: str = ""
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    status: str = "open"
    created_by_id: str = ""
    created_by_name: str = ""
    accepted_by_id: Optional[str] = None
    accepted_by_name: Optional[str] = None
    created_at: str = ""
    expires_at: str = ""
    accepted_at: Optional[str] = None
    compensation_amount: float = 0.0
    location: Optional[str] = None
    preferred_date: Optional[str] = None
    estimated_duration_hours: Optional[float] = None
    is_urgent: bool = False
    is_verified: bool = False
    creator_has_reviewed: bool = False
    acceptor_has_reviewed: bool = False

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.created_by_id, self.accepted_by_id)

    def counterpart_of(self, user_id: str) -> Optional[str]:
        if user_id == self.created_by_id:
            return self.accepted_by_id
        if user_id == self.accepted_by_id:
            return self.created_by_id
        return None


@dataclass(frozen=True)
class JobReview:
    id: str = ""
    job_id: str = ""
    reviewer_id: str = ""
    reviewer_name: str = ""
    reviewee_id: str = ""
    reviewee_name: str = ""
    rating: int = 0
    comment: str = ""
    created_at: str = ""


@dataclass(frozen=True)
class ChatMessage:
    id: str = ""
    job_id: str = ""
    sender_id: str = ""
    sender_name: str = ""
    text: str = ""
    timestamp: str = ""


@dataclass(frozen=True)
class Notification:
    id: str = ""
    user_id: str = ""
    message: str = ""
    link: str = ""
    type: str = "generic"
    is_read: bool = False
    created_at: str = ""


@dataclass(frozen=True)
class ActivityLog:
    id: str = ""
    actor_id: str = ""
    actor_email: str = ""
    actor_role: str = "customer"
    action_type: str = ""
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    description: str = ""
    details: Optional[Dict[str, Any]] = None
    timestamp: str = ""


@dataclass(frozen=True)
class JobSettings:
    max_jobs_per_user: int = 5
    max_timer_duration_days: int = 10


# nested record types, used by from_dict to rebuild children
_NESTED: Dict[Tuple[type, str], type] = {
    (User, "addresses"): Address,
    (Cart, "items"): CartItem,
    (Cart, "saved_for_later"): CartItem,
    (Order, "items"): OrderItem,
    (Order, "shipping_address"): Address,
}


def _plain(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


def to_dict(entity: Any) -> Dict[str, Any]:
    """Dataclass -> plain dict with lists instead of tuples (JSON and BSON ready)."""
    if not is_dataclass(entity):
        raise TypeError(f"Expected a dataclass instance, got {type(entity).__name__}")
    return _plain(asdict(entity))


def from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
    """Build ``cls`` from a stored record, ignoring keys the model does not know."""
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        nested = _NESTED.get((cls, f.name))
        if nested is not None and value is not None:
            if isinstance(value, (list, tuple)):
                value = tuple(from_dict(nested, v) for v in value)
            else:
                value = from_dict(nested, value)
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[f.name] = value
    return cls(**kwargs)
