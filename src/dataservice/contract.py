# the async contract both backends satisfy
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence, Tuple

from dataservice import models

Actor = Optional[models.Actor]


class DataService(ABC):
    """
    One coroutine per entity-lifecycle action.

    "find" methods return None for an unknown id and list methods return a
    fresh list. Mutations raise the kinds from ``dataservice.errors`` and
    never leak driver exceptions. Every create assigns the id and the creation
    instant itself; whatever the caller put there is overwritten.

    ``actor`` identifies who is acting for the activity log. When omitted the
    entry is attributed to the system actor.
    """

    kind: str = ""

    # lifecycle

    @abstractmethod
    async def initialize_data(self) -> bool:
        """Seeds baseline data when the store is empty. True if seeding ran."""

    async def close(self) -> None:
        return None

    # users

    @abstractmethod
    async def get_users(self) -> List[models.User]: ...

    @abstractmethod
    async def find_user_by_id(self, user_id: str) -> Optional[models.User]:
        """Returns the user with job statistics and badges recomputed from jobs and job reviews."""

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[models.User]: ...

    @abstractmethod
    async def add_user(self, user: models.User, actor: Actor = None) -> models.User: ...

    @abstractmethod
    async def update_user(self, user: models.User, actor: Actor = None) -> models.User: ...

    @abstractmethod
    async def delete_user(self, user_id: str, actor: Actor = None) -> bool:
        """
        Removes the user and everything only they own. A user referenced by
        orders is deactivated instead. Returns True on removal, False on
        deactivation.
        """

    @abstractmethod
    async def record_login(self, user_id: str) -> models.User: ...

    # addresses

    @abstractmethod
    async def get_user_addresses(self, user_id: str) -> List[models.Address]: ...

    @abstractmethod
    async def find_user_address_by_id(
        self, user_id: str, address_id: str
    ) -> Optional[models.Address]: ...

    @abstractmethod
    async def add_address_to_user(
        self, user_id: str, address: models.Address
    ) -> models.Address: ...

    @abstractmethod
    async def update_user_address(
        self, user_id: str, address: models.Address
    ) -> models.Address: ...

    @abstractmethod
    async def delete_user_address(self, user_id: str, address_id: str) -> bool: ...

    @abstractmethod
    async def set_default_user_address(self, user_id: str, address_id: str) -> bool: ...

    # categories

    @abstractmethod
    async def get_categories(self) -> List[models.Category]: ...

    @abstractmethod
    async def find_category_by_id(self, category_id: str) -> Optional[models.Category]: ...

    @abstractmethod
    async def find_category_by_slug(self, slug: str) -> Optional[models.Category]: ...

    @abstractmethod
    async def get_child_categories(self, parent_id: str) -> List[models.Category]: ...

    @abstractmethod
    async def add_category(
        self, category: models.Category, actor: Actor = None
    ) -> models.Category: ...

    @abstractmethod
    async def update_category(
        self, category: models.Category, actor: Actor = None
    ) -> models.Category: ...

    @abstractmethod
    async def delete_category(self, category_id: str, actor: Actor = None) -> None: ...

    # job categories

    @abstractmethod
    async def get_job_categories(self) -> List[models.JobCategory]: ...

    @abstractmethod
    async def find_job_category_by_id(
        self, category_id: str
    ) -> Optional[models.JobCategory]: ...

    @abstractmethod
    async def find_job_category_by_slug(self, slug: str) -> Optional[models.JobCategory]: ...

    @abstractmethod
    async def add_job_category(
        self, category: models.JobCategory, actor: Actor = None
    ) -> models.JobCategory: ...

    @abstractmethod
    async def update_job_category(
        self, category: models.JobCategory, actor: Actor = None
    ) -> models.JobCategory: ...

    @abstractmethod
    async def delete_job_category(self, category_id: str, actor: Actor = None) -> None: ...

    # products

    @abstractmethod
    async def get_products(self, category_id: Optional[str] = None) -> List[models.Product]: ...

    @abstractmethod
    async def find_product_by_id(self, product_id: str) -> Optional[models.Product]:
        """Returns the product with its rating aggregate recomputed from its reviews."""

    @abstractmethod
    async def add_product(self, product: models.Product, actor: Actor = None) -> models.Product: ...

    @abstractmethod
    async def update_product(
        self, product: models.Product, actor: Actor = None
    ) -> models.Product: ...

    @abstractmethod
    async def delete_product(
        self,
        product_id: str,
        actor: Actor = None,
        skip_image_ids: Iterable[str] = (),
    ) -> None:
        """
        Releases the product's images except ``skip_image_ids`` (already
        removed by the caller), then removes the product together with its
        reviews, cart and saved-for-later lines, wishlist rows and
        recently-viewed entries.
        """

    # images

    @abstractmethod
    async def save_image(
        self, entity_id: str, image_type: str, data: bytes, filename: str = "image"
    ) -> str: ...

    @abstractmethod
    async def get_image(self, image_id: str) -> Optional[bytes]: ...

    @abstractmethod
    async def delete_image(self, image_id: str) -> None: ...

    @abstractmethod
    async def delete_images(self, image_ids: Iterable[str]) -> None: ...

    # cart

    @abstractmethod
    async def get_cart(self, user_id: str) -> models.Cart: ...

    @abstractmethod
    async def add_to_cart(
        self, user_id: str, product_id: str, quantity: int = 1
    ) -> Tuple[models.Cart, bool]:
        """Returns the cart and whether the quantity had to be clamped to stock."""

    @abstractmethod
    async def update_cart_item_quantity(
        self, user_id: str, product_id: str, quantity: int
    ) -> Tuple[models.Cart, bool]: ...

    @abstractmethod
    async def remove_from_cart(self, user_id: str, product_id: str) -> models.Cart: ...

    @abstractmethod
    async def update_cart(self, cart: models.Cart) -> models.Cart: ...

    @abstractmethod
    async def clear_cart(self, user_id: str) -> None: ...

    @abstractmethod
    async def move_to_saved_for_later(self, user_id: str, product_id: str) -> models.Cart: ...

    @abstractmethod
    async def move_to_cart_from_saved(self, user_id: str, product_id: str) -> bool: ...

    @abstractmethod
    async def remove_from_saved_for_later(self, user_id: str, product_id: str) -> models.Cart: ...

    # orders

    @abstractmethod
    async def get_orders(self, user_id: Optional[str] = None) -> List[models.Order]: ...

    @abstractmethod
    async def find_order_by_id(self, order_id: str) -> Optional[models.Order]: ...

    @abstractmethod
    async def add_order(self, order: models.Order, actor: Actor = None) -> models.Order: ...

    @abstractmethod
    async def update_order_status(
        self, order_id: str, status: str, actor: Actor = None
    ) -> models.Order: ...

    # reviews

    @abstractmethod
    async def get_reviews_for_product(self, product_id: str) -> List[models.Review]: ...

    @abstractmethod
    async def add_review(self, review: models.Review) -> models.Review: ...

    @abstractmethod
    async def delete_review(self, review_id: str, actor: Actor = None) -> bool: ...

    # wishlist

    @abstractmethod
    async def get_wishlist(self, user_id: str) -> List[models.Product]: ...

    @abstractmethod
    async def add_to_wishlist(self, user_id: str, product_id: str, actor: Actor = None) -> bool:
        """True when the product was not in the wishlist before."""

    @abstractmethod
    async def remove_from_wishlist(
        self, user_id: str, product_id: str, actor: Actor = None
    ) -> bool: ...

    @abstractmethod
    async def is_in_wishlist(self, user_id: str, product_id: str) -> bool: ...

    async def toggle_wishlist(self, user_id: str, product_id: str, actor: Actor = None) -> bool:
        """Flips membership and returns whether the product is now in the wishlist."""
        if await self.is_in_wishlist(user_id, product_id):
            await self.remove_from_wishlist(user_id, product_id, actor)
            return False
        await self.add_to_wishlist(user_id, product_id, actor)
        return True

    # saved jobs

    @abstractmethod
    async def get_saved_jobs(self, user_id: str) -> List[models.Job]: ...

    @abstractmethod
    async def add_to_saved_jobs(self, user_id: str, job_id: str, actor: Actor = None) -> bool: ...

    @abstractmethod
    async def remove_from_saved_jobs(
        self, user_id: str, job_id: str, actor: Actor = None
    ) -> bool: ...

    @abstractmethod
    async def is_job_saved(self, user_id: str, job_id: str) -> bool: ...

    async def toggle_saved_job(self, user_id: str, job_id: str, actor: Actor = None) -> bool:
        if await self.is_job_saved(user_id, job_id):
            await self.remove_from_saved_jobs(user_id, job_id, actor)
            return False
        await self.add_to_saved_jobs(user_id, job_id, actor)
        return True

    # recently viewed

    @abstractmethod
    async def get_recently_viewed(self, user_id: str) -> List[models.Product]: ...

    @abstractmethod
    async def add_recently_viewed(self, user_id: str, product_id: str) -> None: ...

    # theme

    @abstractmethod
    async def get_global_theme(self) -> str: ...

    @abstractmethod
    async def set_global_theme(self, theme: str) -> None: ...

    # jobs

    @abstractmethod
    async def get_jobs(
        self,
        status: Optional[str] = None,
        created_by_id: Optional[str] = None,
        accepted_by_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[models.Job]:
        """Newest first. Open jobs past their expiry are expired (and their creator notified) on the way."""

    @abstractmethod
    async def find_job_by_id(self, job_id: str) -> Optional[models.Job]: ...

    @abstractmethod
    async def add_job(self, job: models.Job, actor: Actor = None) -> models.Job: ...

    @abstractmethod
    async def update_job(self, job: models.Job, actor: Actor = None) -> models.Job: ...

    @abstractmethod
    async def accept_job(
        self, job_id: str, acceptor_id: str, actor: Actor = None
    ) -> Optional[models.Job]:
        """None when the job is unknown, no longer open, or owned by the acceptor."""

    @abstractmethod
    async def complete_job(
        self, job_id: str, user_id: str, actor: Actor = None
    ) -> Optional[models.Job]:
        """Creator marks an accepted job done. None when the job is not accepted."""

    @abstractmethod
    async def delete_job(self, job_id: str, actor: Actor = None) -> bool: ...

    # chat

    @abstractmethod
    async def get_chat_for_job(self, job_id: str, viewer_id: str) -> List[models.ChatMessage]: ...

    @abstractmethod
    async def send_message(self, job_id: str, sender_id: str, text: str) -> models.ChatMessage: ...

    # job reviews

    @abstractmethod
    async def add_job_review(self, review: models.JobReview) -> models.JobReview: ...

    @abstractmethod
    async def get_reviews_for_job(self, job_id: str) -> List[models.JobReview]: ...

    @abstractmethod
    async def get_reviews_for_jobs(self, job_ids: Sequence[str]) -> List[models.JobReview]: ...

    @abstractmethod
    async def get_reviews_about_user(self, user_id: str) -> List[models.JobReview]: ...

    # job settings

    @abstractmethod
    async def get_job_settings(self) -> models.JobSettings: ...

    @abstractmethod
    async def update_job_settings(
        self, settings: models.JobSettings, actor: Actor = None
    ) -> models.JobSettings: ...

    # notifications

    @abstractmethod
    async def add_notification(self, notification: models.Notification) -> models.Notification: ...

    @abstractmethod
    async def get_notifications(self, user_id: str) -> List[models.Notification]: ...

    @abstractmethod
    async def mark_notification_as_read(self, user_id: str, notification_id: str) -> bool: ...

    @abstractmethod
    async def mark_all_notifications_as_read(self, user_id: str) -> int: ...

    # activity log

    @abstractmethod
    async def add_activity_log(self, log: models.ActivityLog) -> models.ActivityLog: ...

    @abstractmethod
    async def get_activity_logs(
        self, actor_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[models.ActivityLog]: ...
