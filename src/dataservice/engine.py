# consistency / derivation rules applied identically by every backend
#
# Nothing in here touches storage. Backends load the affected rows, call into
# this module and persist whatever comes back.
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

from dataservice import models
from dataservice.errors import Conflict, NotFound, ValidationFailed
from utils.clock import canonical_instant, new_id, now_iso, parse_instant, shift_iso

FIRST_JOB_DONE = "first-job-done"
COMMUNITY_STAR = "community-star"
TOP_RATED = "top-rated"

MAX_RECENTLY_VIEWED = 5
SYSTEM_ACTOR = models.Actor(id="system", email="system@localcommerce.com", role="admin")


class ActionType:
    AUTH_LOGIN = "AUTH_LOGIN"
    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_DEACTIVATE = "USER_DEACTIVATE"
    PRODUCT_CREATE = "PRODUCT_CREATE"
    PRODUCT_UPDATE = "PRODUCT_UPDATE"
    PRODUCT_DELETE = "PRODUCT_DELETE"
    CATEGORY_CREATE = "CATEGORY_CREATE"
    CATEGORY_UPDATE = "CATEGORY_UPDATE"
    CATEGORY_DELETE = "CATEGORY_DELETE"
    JOB_CATEGORY_CREATE = "JOB_CATEGORY_CREATE"
    JOB_CATEGORY_UPDATE = "JOB_CATEGORY_UPDATE"
    JOB_CATEGORY_DELETE = "JOB_CATEGORY_DELETE"
    JOB_CREATE = "JOB_CREATE"
    JOB_UPDATE = "JOB_UPDATE"
    JOB_DELETE = "JOB_DELETE"
    JOB_ACCEPT = "JOB_ACCEPT"
    JOB_COMPLETE = "JOB_COMPLETE"
    JOB_VERIFICATION = "JOB_VERIFICATION"
    JOB_SETTINGS_UPDATE = "JOB_SETTINGS_UPDATE"
    ORDER_CREATE = "ORDER_CREATE"
    ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
    REVIEW_DELETE = "REVIEW_DELETE"
    WISHLIST_ADD = "WISHLIST_ADD"
    WISHLIST_REMOVE = "WISHLIST_REMOVE"
    SAVED_JOB_ADD = "SAVED_JOB_ADD"
    SAVED_JOB_REMOVE = "SAVED_JOB_REMOVE"


# ---------------------------
# Rating aggregation
# ---------------------------


def round1(value: float) -> float:
    """Half-up rounding to one decimal (4.25 -> 4.3, unlike round())."""
    return float(Decimal(repr(float(value))).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


class RatingSummary(NamedTuple):
    average_rating: float
    review_count: int


def recompute_rating(ratings: Iterable[int]) -> RatingSummary:
    """Mean of the current review ratings, rounded to one decimal; 0 when empty."""
    values = list(ratings)
    if not values:
        return RatingSummary(0.0, 0)
    return RatingSummary(round1(sum(values) / len(values)), len(values))


def fold_rating(summary: RatingSummary, rating: int) -> RatingSummary:
    """Incremental form of recompute_rating for one added review."""
    count = summary.review_count + 1
    return RatingSummary(round1((summary.average_rating * summary.review_count + rating) / count), count)


def unfold_rating(summary: RatingSummary, rating: int) -> RatingSummary:
    """Incremental form of recompute_rating for one removed review."""
    count = summary.review_count - 1
    if count <= 0:
        return RatingSummary(0.0, 0)
    return RatingSummary(round1((summary.average_rating * summary.review_count - rating) / count), count)


def rating_of(product: models.Product) -> RatingSummary:
    return RatingSummary(product.average_rating, product.review_count)


def apply_rating(product: models.Product, summary: RatingSummary) -> models.Product:
    return replace(
        product,
        average_rating=summary.average_rating,
        review_count=summary.review_count,
    )


def validate_rating(rating) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationFailed(f"Rating must be an integer between 1 and 5, got {rating!r}")
    return rating


# ---------------------------
# Job statistics & badges
# ---------------------------


@dataclass(frozen=True)
class JobStats:
    jobs_created_count: int = 0
    jobs_completed_count: int = 0
    average_job_rating: float = 0.0
    job_review_count: int = 0
    badges: Tuple[str, ...] = ()


def derive_badges(
    jobs_completed_count: int, job_review_count: int, average_job_rating: float
) -> Tuple[str, ...]:
    badges = []
    if jobs_completed_count >= 1:
        badges.append(FIRST_JOB_DONE)
    if jobs_completed_count >= 5:
        badges.append(COMMUNITY_STAR)
    if job_review_count >= 1 and average_job_rating >= 4.5:
        badges.append(TOP_RATED)
    return tuple(badges)


def compute_job_stats(
    user_id: str,
    jobs: Iterable[models.Job],
    job_reviews: Iterable[models.JobReview],
) -> JobStats:
    created = completed = 0
    for job in jobs:
        if job.created_by_id == user_id:
            created += 1
        if job.status == "completed" and job.is_participant(user_id):
            completed += 1
    ratings = [r.rating for r in job_reviews if r.reviewee_id == user_id]
    average, count = recompute_rating(ratings)
    return JobStats(
        jobs_created_count=created,
        jobs_completed_count=completed,
        average_job_rating=average,
        job_review_count=count,
        badges=derive_badges(completed, count, average),
    )


def apply_job_stats(user: models.User, stats: JobStats) -> models.User:
    return replace(
        user,
        jobs_created_count=stats.jobs_created_count,
        jobs_completed_count=stats.jobs_completed_count,
        average_job_rating=stats.average_job_rating,
        job_review_count=stats.job_review_count,
        badges=stats.badges,
    )


def stats_of(user: models.User) -> JobStats:
    return JobStats(
        jobs_created_count=user.jobs_created_count,
        jobs_completed_count=user.jobs_completed_count,
        average_job_rating=user.average_job_rating,
        job_review_count=user.job_review_count,
        badges=tuple(user.badges),
    )


# ---------------------------
# Notification fan-out
# ---------------------------


@dataclass(frozen=True)
class FanOutContext:
    job: models.Job
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    rating: Optional[int] = None
    reviewee_id: Optional[str] = None


class NotificationRule(NamedTuple):
    recipient: Callable[[FanOutContext], Optional[str]]
    message: Callable[[FanOutContext], str]
    link: Callable[[FanOutContext], str]


def _chat_link(ctx: FanOutContext) -> str:
    return f"/jobs/{ctx.job.id}/chat"


def _my_jobs_link(ctx: FanOutContext) -> str:
    return "/profile/jobs"


NOTIFICATION_RULES: Dict[str, NotificationRule] = {
    "job_accepted": NotificationRule(
        recipient=lambda c: c.job.created_by_id,
        message=lambda c: f'{c.job.accepted_by_name or "Someone"} accepted your job "{c.job.title}".',
        link=_chat_link,
    ),
    "job_completed": NotificationRule(
        recipient=lambda c: c.job.accepted_by_id,
        message=lambda c: f'The job "{c.job.title}" was marked as completed. You can now leave a review.',
        link=_my_jobs_link,
    ),
    "new_message": NotificationRule(
        recipient=lambda c: c.job.counterpart_of(c.actor_id) if c.actor_id else None,
        message=lambda c: f'New message from {c.actor_name or "your job partner"} about "{c.job.title}".',
        link=_chat_link,
    ),
    "review_received": NotificationRule(
        recipient=lambda c: c.reviewee_id,
        message=lambda c: f'{c.actor_name or "Someone"} left you a {c.rating}-star review for "{c.job.title}".',
        link=lambda c: f"/users/{c.reviewee_id}",
    ),
    "job_expired": NotificationRule(
        recipient=lambda c: c.job.created_by_id,
        message=lambda c: f'Your job "{c.job.title}" has expired without being accepted.',
        link=_my_jobs_link,
    ),
}


def fan_out(kind: str, ctx: FanOutContext) -> List[models.Notification]:
    """Notifications produced by one triggering mutation. Never addressed to the actor."""
    rule = NOTIFICATION_RULES[kind]
    recipient = rule.recipient(ctx)
    if not recipient or recipient == ctx.actor_id:
        return []
    return [
        models.Notification(
            id=new_id(),
            user_id=recipient,
            message=rule.message(ctx),
            link=rule.link(ctx),
            type=kind,
            is_read=False,
            created_at=now_iso(),
        )
    ]


def stamp_notification(notification: models.Notification) -> models.Notification:
    if notification.type not in models.NOTIFICATION_TYPES:
        raise ValidationFailed(f"Unknown notification type {notification.type!r}")
    if not notification.user_id:
        raise ValidationFailed("A notification needs a recipient")
    return replace(notification, id=new_id(), created_at=now_iso(), is_read=False)


# ---------------------------
# Activity log emission
# ---------------------------


def actor_for(user: Optional[models.User]) -> models.Actor:
    if user is None:
        return SYSTEM_ACTOR
    return models.Actor(id=user.id, email=user.email, role=user.role)


def build_log(
    actor: Optional[models.Actor],
    action_type: str,
    description: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> models.ActivityLog:
    actor = actor or SYSTEM_ACTOR
    return models.ActivityLog(
        id=new_id(),
        actor_id=actor.id,
        actor_email=actor.email,
        actor_role=actor.role,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        details=details,
        timestamp=now_iso(),
    )


def stamp_log(log: models.ActivityLog) -> models.ActivityLog:
    return replace(log, id=new_id(), timestamp=now_iso())


def _short(entity_id: str) -> str:
    return f"{entity_id[:8]}..."


def _summarize(kind: str, name: str, changes: List[str]) -> str:
    if not changes:
        return f'No significant changes detected for {kind} "{name}".'
    return f'Updated {kind} "{name}": {" ".join(changes)}'


def describe_product_update(
    old: models.Product,
    new: models.Product,
    category_names: Mapping[str, str],
) -> str:
    changes = []
    if old.name != new.name:
        changes.append(f'Name changed from "{old.name}" to "{new.name}".')
    if old.description != new.description:
        changes.append("Description updated.")
    if old.price != new.price:
        changes.append(f"Price changed from ${old.price:.2f} to ${new.price:.2f}.")
    if old.stock != new.stock:
        changes.append(f"Stock changed from {old.stock} to {new.stock}.")
    if old.category_id != new.category_id:
        before = category_names.get(old.category_id, "N/A")
        after = category_names.get(new.category_id, "N/A")
        changes.append(f'Category changed from "{before}" to "{after}".')
    if old.primary_image_id != new.primary_image_id:
        changes.append("Primary image replaced." if new.primary_image_id else "Primary image removed.")
    added = set(new.additional_image_ids) - set(old.additional_image_ids)
    removed = set(old.additional_image_ids) - set(new.additional_image_ids)
    if added:
        changes.append(f"{len(added)} additional image(s) added.")
    if removed:
        changes.append(f"{len(removed)} additional image(s) removed.")
    return _summarize("product", new.name, changes)


def describe_user_update(old: models.User, new: models.User) -> str:
    changes = []
    if old.name != new.name:
        changes.append(f'Name changed from "{old.name or "N/A"}" to "{new.name or "N/A"}".')
    if old.email != new.email:
        changes.append(f'Email changed from "{old.email}" to "{new.email}".')
    if old.role != new.role:
        changes.append(f'Role changed from "{old.role}" to "{new.role}".')
    if old.theme_preference != new.theme_preference:
        changes.append(f'Theme changed from "{old.theme_preference}" to "{new.theme_preference}".')
    if len(old.addresses) != len(new.addresses) or old.addresses != new.addresses:
        changes.append("Addresses updated.")
    return _summarize("user", new.name or new.email, changes)


def describe_category_update(old, new) -> str:
    """Works for both Category and JobCategory."""
    kind = "job category" if isinstance(new, models.JobCategory) else "category"
    changes = []
    if old.name != new.name:
        changes.append(f'Name changed from "{old.name}" to "{new.name}".')
    if old.slug != new.slug:
        changes.append(f'Slug changed from "{old.slug}" to "{new.slug}".')
    if old.description != new.description:
        changes.append("Description updated.")
    if old.display_order != new.display_order:
        changes.append(f"Display order changed from {old.display_order} to {new.display_order}.")
    if old.is_active != new.is_active:
        changes.append("Activated." if new.is_active else "Deactivated.")
    return _summarize(kind, new.name, changes)


def describe_job_update(old: models.Job, new: models.Job) -> Tuple[str, str]:
    """(action type, description). A pure verification flip gets its own action type."""
    changes = []
    if old.title != new.title:
        changes.append(f'Title changed from "{old.title}" to "{new.title}".')
    if old.description != new.description:
        changes.append("Description updated.")
    if old.status != new.status:
        changes.append(f'Status changed from "{old.status}" to "{new.status}".')
    if old.compensation_amount != new.compensation_amount:
        changes.append(
            f"Compensation changed from ${old.compensation_amount:.2f} to ${new.compensation_amount:.2f}."
        )
    if old.category_id != new.category_id:
        changes.append(
            f'Category changed from "{old.category_name or "N/A"}" to "{new.category_name or "N/A"}".'
        )
    if old.location != new.location:
        changes.append(f'Location changed from "{old.location or "N/A"}" to "{new.location or "N/A"}".')
    if old.is_urgent != new.is_urgent:
        changes.append("Marked urgent." if new.is_urgent else "Urgent flag cleared.")
    if old.expires_at != new.expires_at:
        changes.append("Expiry changed.")
    if old.is_verified != new.is_verified:
        if not changes:
            verb = "Verified" if new.is_verified else "Un-verified"
            return ActionType.JOB_VERIFICATION, f'{verb} job: "{new.title}".'
        changes.append("Verified." if new.is_verified else "Verification removed.")
    return ActionType.JOB_UPDATE, _summarize("job", new.title, changes)


def describe_deletion(kind: str, name: str, entity_id: str) -> str:
    return f'Deleted {kind} "{name}" (ID: {_short(entity_id)}).'


def describe_job_settings(settings: models.JobSettings) -> str:
    return (
        f"Updated job settings: Max jobs/user to {settings.max_jobs_per_user}, "
        f"max duration to {settings.max_timer_duration_days} days."
    )


# ---------------------------
# Entity rules shared by the backends
# ---------------------------


def slugify(text: str) -> str:
    slug = re.sub(r"\s+", "-", text.strip().lower())
    return re.sub(r"[^\w-]+", "", slug)


def validate_user(user: models.User) -> None:
    if not user.email or "@" not in user.email:
        raise ValidationFailed(f"Invalid email {user.email!r}")
    if user.role not in models.ROLES:
        raise ValidationFailed(f"Unknown role {user.role!r}")
    if user.theme_preference not in models.THEMES:
        raise ValidationFailed(f"Unknown theme {user.theme_preference!r}")


def prepare_category(category):
    if not category.name.strip():
        raise ValidationFailed("Category name is required")
    return replace(category, slug=slugify(category.slug or category.name))


def check_slug(existing: Iterable, category) -> None:
    if any(c.slug == category.slug and c.id != category.id for c in existing):
        raise Conflict(f"Slug {category.slug!r} is already taken", slug=category.slug)


def validate_product(product: models.Product) -> None:
    if not product.name.strip():
        raise ValidationFailed("Product name is required")
    if product.price < 0:
        raise ValidationFailed(f"Price cannot be negative, got {product.price}")
    if isinstance(product.stock, bool) or not isinstance(product.stock, int) or product.stock < 0:
        raise ValidationFailed(f"Stock must be a non-negative integer, got {product.stock!r}")


def normalize_image_ids(product: models.Product) -> models.Product:
    """Drop blanks, duplicates and the primary id from the additional image list."""
    seen = {product.primary_image_id} if product.primary_image_id else set()
    extra = []
    for image_id in product.additional_image_ids:
        if image_id and image_id not in seen:
            seen.add(image_id)
            extra.append(image_id)
    return replace(
        product,
        primary_image_id=product.primary_image_id or None,
        additional_image_ids=tuple(extra),
    )


def released_image_ids(old: models.Product, new: Optional[models.Product]) -> List[str]:
    """Image ids owned by ``old`` that ``new`` (None on delete) no longer references."""
    keep = set(new.image_ids) if new is not None else set()
    return [i for i in old.image_ids if i not in keep]


def validate_job(job: models.Job) -> None:
    if not job.title.strip():
        raise ValidationFailed("Job title is required")
    if job.compensation_amount is not None and job.compensation_amount < 0:
        raise ValidationFailed("Compensation cannot be negative")
    if job.status not in models.JOB_STATUSES:
        raise ValidationFailed(f"Unknown job status {job.status!r}")


def validate_job_settings(settings: models.JobSettings) -> None:
    if settings.max_jobs_per_user < 1 or settings.max_timer_duration_days < 1:
        raise ValidationFailed("Job limits must be at least 1")


def normalize_expiry(expires_at: Optional[str]) -> Optional[str]:
    if expires_at is None or expires_at == "":
        return None
    try:
        return canonical_instant(expires_at)
    except ValueError:
        raise ValidationFailed(f"Job expiry {expires_at!r} is not a valid date") from None


def check_expiry(expires_at: str, settings: models.JobSettings, now: Optional[str] = None) -> None:
    """Expiry must lie in the future and within the maximum timer length from ``now``."""
    now = now or now_iso()
    if parse_instant(expires_at) <= parse_instant(now):
        raise ValidationFailed("Job expiry must be in the future")
    if parse_instant(expires_at) > parse_instant(shift_iso(now, days=settings.max_timer_duration_days)):
        raise ValidationFailed(
            f"Job timer cannot exceed {settings.max_timer_duration_days} days"
        )


def open_job(
    job: models.Job,
    creator: models.User,
    category: models.JobCategory,
    jobs: Iterable[models.Job],
    settings: models.JobSettings,
) -> models.Job:
    """
    Stamps a new open job for ``creator``.

    Enforces the open-job quota and the maximum timer length; the expiry
    defaults to the longest allowed duration.
    """
    open_count = sum(1 for j in jobs if j.created_by_id == creator.id and j.status == "open")
    if open_count >= settings.max_jobs_per_user:
        raise ValidationFailed(
            f"You can have at most {settings.max_jobs_per_user} open jobs at a time"
        )
    now = now_iso()
    expires_at = normalize_expiry(job.expires_at) or shift_iso(now, days=settings.max_timer_duration_days)
    check_expiry(expires_at, settings, now)
    return replace(
        job,
        id=new_id(),
        status="open",
        created_at=now,
        expires_at=expires_at,
        created_by_name=creator.name or creator.email,
        category_name=category.name,
        accepted_by_id=None,
        accepted_by_name=None,
        accepted_at=None,
        creator_has_reviewed=False,
        acceptor_has_reviewed=False,
    )


def merge_job_update(
    old: models.Job,
    new: models.Job,
    category: Optional[models.JobCategory] = None,
    settings: Optional[models.JobSettings] = None,
) -> models.Job:
    """
    Applies caller-editable fields of ``new`` onto ``old``; ownership and review flags stay.

    A changed expiry is stored in canonical form and, while the job is open,
    held to the same limits as a new job. A missing expiry keeps the old one.
    """
    expires_at = normalize_expiry(new.expires_at) or old.expires_at
    merged = replace(
        new,
        created_by_id=old.created_by_id,
        created_by_name=old.created_by_name,
        created_at=old.created_at,
        creator_has_reviewed=old.creator_has_reviewed,
        acceptor_has_reviewed=old.acceptor_has_reviewed,
        category_name=category.name if category is not None else old.category_name,
        expires_at=expires_at,
    )
    if merged.status == "open" and expires_at and expires_at != old.expires_at:
        check_expiry(expires_at, settings or models.JobSettings())
    if merged.status == "open":
        merged = replace(merged, accepted_by_id=None, accepted_by_name=None, accepted_at=None)
    elif merged.status in ("accepted", "completed") and not merged.accepted_by_id:
        raise ValidationFailed(f"A {merged.status} job needs an acceptor")
    return merged


def check_chat_access(job: models.Job, user_id: str) -> None:
    if not job.is_participant(user_id):
        raise ValidationFailed("Only the job's creator and acceptor can use its chat")


def new_chat_message(
    job: models.Job, sender_id: str, sender_name: Optional[str], text: str
) -> models.ChatMessage:
    if job.status not in ("accepted", "completed"):
        raise ValidationFailed("Chat opens once the job has been accepted")
    check_chat_access(job, sender_id)
    text = (text or "").strip()
    if not text:
        raise ValidationFailed("Message text is required")
    if not sender_name:
        sender_name = job.created_by_name if sender_id == job.created_by_id else job.accepted_by_name
    return models.ChatMessage(
        id=new_id(),
        job_id=job.id,
        sender_id=sender_id,
        sender_name=sender_name or "",
        text=text,
        timestamp=now_iso(),
    )


def _readable_instant(text: Optional[str]):
    # rows written before expiries were normalized may hold naive or odd text
    if not text:
        return None
    try:
        return parse_instant(canonical_instant(text))
    except ValueError:
        return None


def expire_due_jobs(
    jobs: Sequence[models.Job], now: str
) -> Tuple[List[models.Job], List[models.Job]]:
    """(all jobs with due ones expired, the jobs that just expired)."""
    moment = parse_instant(now)
    result, expired = [], []
    for job in jobs:
        due = _readable_instant(job.expires_at) if job.status == "open" else None
        if due is not None and due < moment:
            job = replace(job, status="expired")
            expired.append(job)
        result.append(job)
    return result, expired


def filter_jobs(
    jobs: Iterable[models.Job],
    status: Optional[str] = None,
    created_by_id: Optional[str] = None,
    accepted_by_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[models.Job]:
    selected = []
    for job in jobs:
        if status and job.status != status:
            continue
        if created_by_id and job.created_by_id != created_by_id:
            continue
        if accepted_by_id and job.accepted_by_id != accepted_by_id:
            continue
        if user_id and not job.is_participant(user_id):
            continue
        selected.append(job)
    return newest_first(selected, lambda j: j.created_at)


def newest_first(items: Iterable, key: Callable) -> list:
    """Descending by timestamp; ties keep the most recently inserted first."""
    return sorted(reversed(list(items)), key=key, reverse=True)


def mark_reviewed(job: models.Job, reviewer_id: str) -> models.Job:
    if reviewer_id == job.created_by_id:
        return replace(job, creator_has_reviewed=True)
    return replace(job, acceptor_has_reviewed=True)


def check_job_review(
    job: Optional[models.Job],
    review: models.JobReview,
    existing: Iterable[models.JobReview],
) -> models.JobReview:
    """Validates a new job review against its job and returns it with the reviewee resolved."""
    if job is None:
        raise NotFound(f"Job {review.job_id} not found")
    if job.status != "completed":
        raise ValidationFailed("Only completed jobs can be reviewed")
    if not job.accepted_by_id or not job.is_participant(review.reviewer_id):
        raise ValidationFailed("Only the job's creator and acceptor can review it")
    validate_rating(review.rating)
    for other in existing:
        if other.job_id == review.job_id and other.reviewer_id == review.reviewer_id:
            raise Conflict("This job was already reviewed by this user")
    reviewee_id = job.counterpart_of(review.reviewer_id)
    if review.reviewer_id == job.created_by_id:
        reviewee_name = job.accepted_by_name or ""
        reviewer_name = review.reviewer_name or job.created_by_name
    else:
        reviewee_name = job.created_by_name
        reviewer_name = review.reviewer_name or job.accepted_by_name or ""
    return replace(
        review,
        id=new_id(),
        created_at=now_iso(),
        reviewee_id=reviewee_id,
        reviewee_name=review.reviewee_name or reviewee_name,
        reviewer_name=reviewer_name,
    )


# ---------------------------
# Cart rules
# ---------------------------


def _cart_line(product: models.Product, quantity: int) -> models.CartItem:
    return models.CartItem(
        product_id=product.id,
        quantity=quantity,
        price=product.price,
        name=product.name,
        primary_image_id=product.primary_image_id,
    )


def add_cart_item(
    cart: models.Cart, product: models.Product, quantity: int
) -> Tuple[models.Cart, bool]:
    """
    Adds ``quantity`` of ``product``, clamped to current stock.

    Returns (cart, stock_limited). The unit price of an existing line stays
    the price captured when it was first added.
    """
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    items = list(cart.items)
    index = next((i for i, it in enumerate(items) if it.product_id == product.id), None)
    current = items[index].quantity if index is not None else 0
    wanted = current + quantity
    allowed = min(wanted, max(product.stock, 0))
    limited = wanted > allowed
    if allowed <= 0:
        if index is not None:
            items.pop(index)
    elif index is None:
        items.append(_cart_line(product, allowed))
    else:
        items[index] = replace(
            items[index],
            quantity=allowed,
            name=product.name,
            primary_image_id=product.primary_image_id,
        )
    return replace(cart, items=tuple(items), updated_at=now_iso()), limited


def set_cart_item_quantity(
    cart: models.Cart, product: Optional[models.Product], product_id: str, quantity: int
) -> Tuple[models.Cart, bool]:
    """Sets a line's quantity (0 removes it), clamped to stock. Returns (cart, stock_limited)."""
    if quantity < 0:
        raise ValidationFailed("Quantity cannot be negative.")
    items = [it for it in cart.items if it.product_id != product_id]
    limited = False
    if quantity > 0 and product is not None:
        existing = next((it for it in cart.items if it.product_id == product_id), None)
        allowed = min(quantity, max(product.stock, 0))
        limited = allowed < quantity
        if allowed > 0:
            line = replace(existing, quantity=allowed) if existing else _cart_line(product, allowed)
            position = [it.product_id for it in cart.items].index(product_id) if existing else len(items)
            items.insert(position, line)
    return replace(cart, items=tuple(items), updated_at=now_iso()), limited


def reconcile_cart(
    cart: models.Cart, products: Mapping[str, models.Product]
) -> Tuple[models.Cart, bool]:
    """
    Checks a caller-built cart against the catalogue before it is stored.

    Every line must name an existing product. Cart lines are clamped to
    current stock and dropped at zero; saved-for-later lines keep their
    quantity. Returns (cart, stock_limited).
    """
    lines = cart.items + cart.saved_for_later
    if any(it.quantity < 1 for it in lines):
        raise ValidationFailed("Cart quantities must be at least 1")
    missing = sorted({it.product_id for it in lines if it.product_id not in products})
    if missing:
        raise NotFound(f"Product {missing[0]} not found")
    items, limited = [], False
    for it in cart.items:
        allowed = min(it.quantity, max(products[it.product_id].stock, 0))
        limited = limited or allowed < it.quantity
        if allowed > 0:
            items.append(replace(it, quantity=allowed))
    return replace(cart, items=tuple(items), updated_at=now_iso()), limited


def drop_product_from_cart(cart: models.Cart, product_id: str) -> models.Cart:
    return replace(
        cart,
        items=tuple(it for it in cart.items if it.product_id != product_id),
        saved_for_later=tuple(it for it in cart.saved_for_later if it.product_id != product_id),
        updated_at=now_iso(),
    )


def move_to_saved(cart: models.Cart, product_id: str) -> models.Cart:
    line = next((it for it in cart.items if it.product_id == product_id), None)
    if line is None:
        return cart
    saved = list(cart.saved_for_later)
    index = next((i for i, it in enumerate(saved) if it.product_id == product_id), None)
    if index is None:
        saved.append(line)
    else:
        saved[index] = replace(saved[index], quantity=saved[index].quantity + line.quantity)
    return replace(
        cart,
        items=tuple(it for it in cart.items if it.product_id != product_id),
        saved_for_later=tuple(saved),
        updated_at=now_iso(),
    )


def move_to_cart(
    cart: models.Cart, product: Optional[models.Product], product_id: str
) -> Tuple[models.Cart, bool]:
    """Moves a saved line back into the cart if stock allows. Returns (cart, moved)."""
    line = next((it for it in cart.saved_for_later if it.product_id == product_id), None)
    if line is None or product is None:
        return cart, False
    items = list(cart.items)
    index = next((i for i, it in enumerate(items) if it.product_id == product_id), None)
    total = line.quantity + (items[index].quantity if index is not None else 0)
    if total > product.stock:
        return cart, False
    if index is None:
        items.append(line)
    else:
        items[index] = replace(items[index], quantity=total)
    return (
        replace(
            cart,
            items=tuple(items),
            saved_for_later=tuple(it for it in cart.saved_for_later if it.product_id != product_id),
            updated_at=now_iso(),
        ),
        True,
    )


# ---------------------------
# Orders
# ---------------------------


def freeze_order(
    order: models.Order, products: Mapping[str, models.Product]
) -> models.Order:
    """
    Stamps a new order: id, instant, denormalized item names/images and the
    total. Prices already on the items are kept as the price at purchase.
    """
    if not order.items:
        raise ValidationFailed("An order needs at least one item")
    if order.status not in models.ORDER_STATUSES:
        raise ValidationFailed(f"Unknown order status {order.status!r}")
    items = []
    for item in order.items:
        product = products.get(item.product_id)
        if product is None:
            raise NotFound(f"Product {item.product_id} not found")
        if item.quantity < 1:
            raise ValidationFailed("Order item quantity must be at least 1")
        items.append(
            replace(
                item,
                name=product.name,
                primary_image_id=product.primary_image_id,
            )
        )
    for product_id, quantity in order_quantities(items).items():
        product = products[product_id]
        if quantity > product.stock:
            raise ValidationFailed(
                f"Not enough stock for {product.name}. Available: {product.stock}, Requested: {quantity}"
            )
    total = sum(Decimal(repr(it.price_at_purchase)) * it.quantity for it in items)
    return replace(
        order,
        id=new_id(),
        order_date=now_iso(),
        items=tuple(items),
        total_amount=float(total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)),
    )


def order_quantities(items: Iterable[models.OrderItem]) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for item in items:
        totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


def apply_purchase(product: models.Product, quantity: int) -> models.Product:
    return replace(
        product,
        stock=product.stock - quantity,
        purchases=product.purchases + quantity,
        updated_at=now_iso(),
    )


# ---------------------------
# Addresses
# ---------------------------


def add_address(user: models.User, address: models.Address) -> Tuple[models.User, models.Address]:
    addresses = list(user.addresses)
    address = replace(address, id=new_id(), user_id=user.id)
    if address.is_default:
        addresses = [replace(a, is_default=False) for a in addresses]
    elif not addresses:
        address = replace(address, is_default=True)
    addresses.append(address)
    return replace(user, addresses=tuple(addresses), updated_at=now_iso()), address


def update_address(
    user: models.User, address: models.Address
) -> Tuple[models.User, Optional[models.Address]]:
    addresses = list(user.addresses)
    index = next((i for i, a in enumerate(addresses) if a.id == address.id), None)
    if index is None:
        return user, None
    address = replace(address, user_id=user.id)
    if address.is_default:
        addresses = [replace(a, is_default=False) for a in addresses]
    addresses[index] = address
    if not any(a.is_default for a in addresses):
        addresses[0] = replace(addresses[0], is_default=True)
    return replace(user, addresses=tuple(addresses), updated_at=now_iso()), addresses[index]


def remove_address(user: models.User, address_id: str) -> Tuple[models.User, bool]:
    target = next((a for a in user.addresses if a.id == address_id), None)
    if target is None:
        return user, False
    addresses = [a for a in user.addresses if a.id != address_id]
    if target.is_default and addresses:
        addresses[0] = replace(addresses[0], is_default=True)
    return replace(user, addresses=tuple(addresses), updated_at=now_iso()), True


def set_default_address(user: models.User, address_id: str) -> models.User:
    if not any(a.id == address_id for a in user.addresses):
        return user
    return replace(
        user,
        addresses=tuple(replace(a, is_default=a.id == address_id) for a in user.addresses),
        updated_at=now_iso(),
    )


# ---------------------------
# Recently viewed
# ---------------------------


def push_recently_viewed(
    items: Sequence[models.RecentlyViewedItem], product_id: str
) -> Tuple[models.RecentlyViewedItem, ...]:
    kept = [it for it in items if it.product_id != product_id]
    kept.insert(0, models.RecentlyViewedItem(product_id=product_id, viewed_at=now_iso()))
    return tuple(kept[:MAX_RECENTLY_VIEWED])
