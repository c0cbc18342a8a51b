# data service over the local sqlite keyed store
from __future__ import annotations

from dataclasses import replace
from typing import Iterable, List, Optional, Sequence, Tuple

from dataservice import engine, models, seed
from dataservice.contract import Actor, DataService
from dataservice.database import BlobStore, LocalStore, StoreTransaction
from dataservice.engine import ActionType, FanOutContext
from dataservice.errors import Conflict, NotFound, ValidationFailed
from utils.clock import new_id, now_iso
from utils.logger import get_logger

_logger = get_logger(__name__)

USERS = "users"
PRODUCTS = "products"
CATEGORIES = "categories"
JOB_CATEGORIES = "jobCategories"
CARTS = "carts"
ORDERS = "orders"
REVIEWS = "reviews"
WISHLISTS = "wishlists"
SAVED_JOBS = "savedJobs"
JOBS = "jobs"
JOB_REVIEWS = "jobReviews"
CHAT_MESSAGES = "chatMessages"
NOTIFICATIONS = "notifications"
ACTIVITY_LOGS = "activityLogs"
RECENTLY_VIEWED = "recentlyViewed"
JOB_SETTINGS = "jobSettings"
THEME = "theme"
SEED_MARKER = "seedMarker"

_MODELS = {
    USERS: models.User,
    PRODUCTS: models.Product,
    CATEGORIES: models.Category,
    JOB_CATEGORIES: models.JobCategory,
    CARTS: models.Cart,
    ORDERS: models.Order,
    REVIEWS: models.Review,
    WISHLISTS: models.WishlistItem,
    SAVED_JOBS: models.SavedJobItem,
    JOBS: models.Job,
    JOB_REVIEWS: models.JobReview,
    CHAT_MESSAGES: models.ChatMessage,
    NOTIFICATIONS: models.Notification,
    ACTIVITY_LOGS: models.ActivityLog,
}


async def _load(tx: StoreTransaction, name: str) -> list:
    return [models.from_dict(_MODELS[name], row) for row in await tx.load(name)]


def _save(tx: StoreTransaction, name: str, items: Iterable) -> None:
    tx.save(name, [models.to_dict(item) for item in items])


async def _append(tx: StoreTransaction, name: str, *items) -> None:
    rows = await tx.load(name)
    rows.extend(models.to_dict(item) for item in items)
    tx.save(name, rows)


def _find(items: Iterable, entity_id: str):
    return next((item for item in items if item.id == entity_id), None)


def _swap(items: List, updated) -> List:
    return [updated if item.id == updated.id else item for item in items]


def _display_name(user: models.User) -> str:
    return user.name or user.email


class LocalBackend(DataService):
    """
    Every public coroutine runs as one store transaction: collections are read,
    changed in memory, derived aggregates recomputed through ``engine`` and
    everything written back together. Nothing is written when a step raises.
    """

    kind = "local"

    def __init__(self, store: LocalStore, blobs: Optional[BlobStore] = None) -> None:
        self.store = store
        self.blobs = blobs or BlobStore(store)

    @classmethod
    def from_settings(cls, settings) -> "LocalBackend":
        return cls(LocalStore(settings.local_db_path))

    async def _read(self, name: str) -> list:
        return [models.from_dict(_MODELS[name], row) for row in await self.store.read(name, [])]

    async def _log(self, tx: StoreTransaction, actor: Actor, action_type: str, description: str, **kw) -> None:
        await _append(tx, ACTIVITY_LOGS, engine.build_log(actor, action_type, description, **kw))

    async def _notify(self, tx: StoreTransaction, kind: str, ctx: FanOutContext) -> None:
        await _append(tx, NOTIFICATIONS, *engine.fan_out(kind, ctx))

    async def _refresh_user_stats(self, tx: StoreTransaction, user_ids: Iterable[Optional[str]]) -> None:
        users = await _load(tx, USERS)
        jobs = await _load(tx, JOBS)
        job_reviews = await _load(tx, JOB_REVIEWS)
        changed = False
        for user_id in {u for u in user_ids if u}:
            user = _find(users, user_id)
            if user is None:
                continue
            stats = engine.compute_job_stats(user_id, jobs, job_reviews)
            if stats != engine.stats_of(user):
                users = _swap(users, engine.apply_job_stats(user, stats))
                changed = True
        if changed:
            _save(tx, USERS, users)

    async def _refresh_product_rating(self, tx: StoreTransaction, product_id: str) -> Optional[models.Product]:
        products = await _load(tx, PRODUCTS)
        product = _find(products, product_id)
        if product is None:
            return None
        reviews = await _load(tx, REVIEWS)
        summary = engine.recompute_rating(r.rating for r in reviews if r.product_id == product_id)
        if summary != engine.rating_of(product):
            product = engine.apply_rating(product, summary)
            _save(tx, PRODUCTS, _swap(products, product))
        return product

    # ---------------------------
    # Lifecycle
    # ---------------------------

    async def initialize_data(self) -> bool:
        async with self.store.transaction() as tx:
            marker = await tx.load(SEED_MARKER, {})
            if marker.get("seeded"):
                return False
            _logger.info("Local store is empty, seeding baseline data...")
            users = await _load(tx, USERS)
            if not any(u.email == seed.ADMIN_EMAIL for u in users):
                _save(tx, USERS, users + [seed.admin_user()])
            if not await tx.load(CATEGORIES):
                _save(tx, CATEGORIES, seed.categories())
            if not await tx.load(JOB_CATEGORIES):
                _save(tx, JOB_CATEGORIES, seed.job_categories())
            if not await tx.load(JOB_SETTINGS, {}):
                tx.save(JOB_SETTINGS, models.to_dict(seed.DEFAULT_JOB_SETTINGS))
            if not await tx.load(THEME, ""):
                tx.save(THEME, seed.DEFAULT_THEME)
            tx.save(SEED_MARKER, {"seeded": True, "at": now_iso()})
        return True

    # ---------------------------
    # Users
    # ---------------------------

    async def get_users(self) -> List[models.User]:
        return await self._read(USERS)

    async def find_user_by_id(self, user_id: str) -> Optional[models.User]:
        async with self.store.transaction() as tx:
            await self._refresh_user_stats(tx, [user_id])
            return _find(await _load(tx, USERS), user_id)

    async def find_user_by_email(self, email: str) -> Optional[models.User]:
        wanted = email.strip().lower()
        return next((u for u in await self._read(USERS) if u.email.lower() == wanted), None)

    async def add_user(self, user: models.User, actor: Actor = None) -> models.User:
        engine.validate_user(user)
        async with self.store.transaction() as tx:
            users = await _load(tx, USERS)
            if any(u.email.lower() == user.email.lower() for u in users):
                raise Conflict(f"A user with email {user.email} already exists", email=user.email)
            now = now_iso()
            created = replace(
                user,
                id=new_id(),
                created_at=now,
                updated_at=now,
                last_login=None,
                addresses=(),
                is_active=True,
                jobs_created_count=0,
                jobs_completed_count=0,
                average_job_rating=0.0,
                job_review_count=0,
                badges=(),
            )
            _save(tx, USERS, users + [created])
            await self._log(
                tx, actor, ActionType.USER_CREATE,
                f'Created user "{created.email}" with role {created.role}.',
                entity_type="user", entity_id=created.id,
            )
        return created

    async def update_user(self, user: models.User, actor: Actor = None) -> models.User:
        engine.validate_user(user)
        async with self.store.transaction() as tx:
            users = await _load(tx, USERS)
            old = _find(users, user.id)
            if old is None:
                raise NotFound(f"User {user.id} not found")
            if any(u.id != user.id and u.email.lower() == user.email.lower() for u in users):
                raise Conflict(f"A user with email {user.email} already exists", email=user.email)
            updated = engine.apply_job_stats(
                replace(user, created_at=old.created_at, updated_at=now_iso()),
                engine.stats_of(old),
            )
            _save(tx, USERS, _swap(users, updated))
            await self._log(
                tx, actor, ActionType.USER_UPDATE,
                engine.describe_user_update(old, updated),
                entity_type="user", entity_id=updated.id,
            )
        return updated

    async def delete_user(self, user_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            users = await _load(tx, USERS)
            user = _find(users, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            if any(o.user_id == user_id for o in await _load(tx, ORDERS)):
                _save(tx, USERS, _swap(users, replace(user, is_active=False, updated_at=now_iso())))
                await self._log(
                    tx, actor, ActionType.USER_DEACTIVATE,
                    f'Deactivated user "{user.email}" because orders still reference it.',
                    entity_type="user", entity_id=user_id,
                )
                return False
            _save(tx, USERS, [u for u in users if u.id != user_id])
            for name in (CARTS, WISHLISTS, SAVED_JOBS, NOTIFICATIONS):
                rows = await _load(tx, name)
                _save(tx, name, [r for r in rows if r.user_id != user_id])
            viewed = await tx.load(RECENTLY_VIEWED, {})
            if viewed.pop(user_id, None) is not None:
                tx.save(RECENTLY_VIEWED, viewed)
            await self._log(
                tx, actor, ActionType.USER_DELETE,
                engine.describe_deletion("user", user.email, user_id),
                entity_type="user", entity_id=user_id,
            )
        return True

    async def record_login(self, user_id: str) -> models.User:
        async with self.store.transaction() as tx:
            users = await _load(tx, USERS)
            user = _find(users, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            user = replace(user, last_login=now_iso())
            _save(tx, USERS, _swap(users, user))
            await self._log(
                tx, engine.actor_for(user), ActionType.AUTH_LOGIN,
                f'User "{user.email}" logged in.',
                entity_type="user", entity_id=user_id,
            )
        return user

    # ---------------------------
    # Addresses
    # ---------------------------

    async def get_user_addresses(self, user_id: str) -> List[models.Address]:
        user = _find(await self._read(USERS), user_id)
        return list(user.addresses) if user else []

    async def find_user_address_by_id(self, user_id: str, address_id: str) -> Optional[models.Address]:
        return _find(await self.get_user_addresses(user_id), address_id)

    async def _edit_user(self, tx: StoreTransaction, user_id: str) -> Tuple[List[models.User], models.User]:
        users = await _load(tx, USERS)
        user = _find(users, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return users, user

    async def add_address_to_user(self, user_id: str, address: models.Address) -> models.Address:
        async with self.store.transaction() as tx:
            users, user = await self._edit_user(tx, user_id)
            user, created = engine.add_address(user, address)
            _save(tx, USERS, _swap(users, user))
        return created

    async def update_user_address(self, user_id: str, address: models.Address) -> models.Address:
        async with self.store.transaction() as tx:
            users, user = await self._edit_user(tx, user_id)
            user, updated = engine.update_address(user, address)
            if updated is None:
                raise NotFound(f"Address {address.id} not found")
            _save(tx, USERS, _swap(users, user))
        return updated

    async def delete_user_address(self, user_id: str, address_id: str) -> bool:
        async with self.store.transaction() as tx:
            users, user = await self._edit_user(tx, user_id)
            user, removed = engine.remove_address(user, address_id)
            if removed:
                _save(tx, USERS, _swap(users, user))
        return removed

    async def set_default_user_address(self, user_id: str, address_id: str) -> bool:
        async with self.store.transaction() as tx:
            users, user = await self._edit_user(tx, user_id)
            if _find(user.addresses, address_id) is None:
                return False
            _save(tx, USERS, _swap(users, engine.set_default_address(user, address_id)))
        return True

    # ---------------------------
    # Categories
    # ---------------------------

    async def get_categories(self) -> List[models.Category]:
        return sorted(await self._read(CATEGORIES), key=lambda c: (c.display_order, c.name))

    async def find_category_by_id(self, category_id: str) -> Optional[models.Category]:
        return _find(await self._read(CATEGORIES), category_id)

    async def find_category_by_slug(self, slug: str) -> Optional[models.Category]:
        return next((c for c in await self._read(CATEGORIES) if c.slug == slug), None)

    async def get_child_categories(self, parent_id: str) -> List[models.Category]:
        return [c for c in await self.get_categories() if c.parent_id == parent_id]

    async def add_category(self, category: models.Category, actor: Actor = None) -> models.Category:
        category = engine.prepare_category(category)
        async with self.store.transaction() as tx:
            categories = await _load(tx, CATEGORIES)
            engine.check_slug(categories, category)
            if category.parent_id and _find(categories, category.parent_id) is None:
                raise NotFound(f"Parent category {category.parent_id} not found")
            now = now_iso()
            created = replace(category, id=new_id(), created_at=now, updated_at=now)
            _save(tx, CATEGORIES, categories + [created])
            await self._log(
                tx, actor, ActionType.CATEGORY_CREATE,
                f'Created category "{created.name}".',
                entity_type="category", entity_id=created.id,
            )
        return created

    async def update_category(self, category: models.Category, actor: Actor = None) -> models.Category:
        category = engine.prepare_category(category)
        async with self.store.transaction() as tx:
            categories = await _load(tx, CATEGORIES)
            old = _find(categories, category.id)
            if old is None:
                raise NotFound(f"Category {category.id} not found")
            engine.check_slug(categories, category)
            if category.parent_id == category.id:
                raise ValidationFailed("A category cannot be its own parent")
            if category.parent_id and _find(categories, category.parent_id) is None:
                raise NotFound(f"Parent category {category.parent_id} not found")
            updated = replace(category, created_at=old.created_at, updated_at=now_iso())
            _save(tx, CATEGORIES, _swap(categories, updated))
            await self._log(
                tx, actor, ActionType.CATEGORY_UPDATE,
                engine.describe_category_update(old, updated),
                entity_type="category", entity_id=updated.id,
            )
        if old.image_id and old.image_id != updated.image_id:
            await self.blobs.delete(old.image_id)
        return updated

    async def delete_category(self, category_id: str, actor: Actor = None) -> None:
        async with self.store.transaction() as tx:
            categories = await _load(tx, CATEGORIES)
            category = _find(categories, category_id)
            if category is None:
                raise NotFound(f"Category {category_id} not found")
            if any(p.category_id == category_id for p in await _load(tx, PRODUCTS)):
                raise Conflict(f'Category "{category.name}" is still used by products')
            if any(c.parent_id == category_id for c in categories):
                raise Conflict(f'Category "{category.name}" still has child categories')
            await self.blobs.delete(category.image_id)
            _save(tx, CATEGORIES, [c for c in categories if c.id != category_id])
            await self._log(
                tx, actor, ActionType.CATEGORY_DELETE,
                engine.describe_deletion("category", category.name, category_id),
                entity_type="category", entity_id=category_id,
            )

    # ---------------------------
    # Job categories
    # ---------------------------

    async def get_job_categories(self) -> List[models.JobCategory]:
        return sorted(await self._read(JOB_CATEGORIES), key=lambda c: (c.display_order, c.name))

    async def find_job_category_by_id(self, category_id: str) -> Optional[models.JobCategory]:
        return _find(await self._read(JOB_CATEGORIES), category_id)

    async def find_job_category_by_slug(self, slug: str) -> Optional[models.JobCategory]:
        return next((c for c in await self._read(JOB_CATEGORIES) if c.slug == slug), None)

    async def add_job_category(self, category: models.JobCategory, actor: Actor = None) -> models.JobCategory:
        category = engine.prepare_category(category)
        async with self.store.transaction() as tx:
            categories = await _load(tx, JOB_CATEGORIES)
            engine.check_slug(categories, category)
            now = now_iso()
            created = replace(category, id=new_id(), created_at=now, updated_at=now)
            _save(tx, JOB_CATEGORIES, categories + [created])
            await self._log(
                tx, actor, ActionType.JOB_CATEGORY_CREATE,
                f'Created job category "{created.name}".',
                entity_type="jobCategory", entity_id=created.id,
            )
        return created

    async def update_job_category(self, category: models.JobCategory, actor: Actor = None) -> models.JobCategory:
        category = engine.prepare_category(category)
        async with self.store.transaction() as tx:
            categories = await _load(tx, JOB_CATEGORIES)
            old = _find(categories, category.id)
            if old is None:
                raise NotFound(f"Job category {category.id} not found")
            engine.check_slug(categories, category)
            updated = replace(category, created_at=old.created_at, updated_at=now_iso())
            _save(tx, JOB_CATEGORIES, _swap(categories, updated))
            if updated.name != old.name:
                jobs = await _load(tx, JOBS)
                _save(tx, JOBS, [
                    replace(j, category_name=updated.name) if j.category_id == updated.id else j
                    for j in jobs
                ])
            await self._log(
                tx, actor, ActionType.JOB_CATEGORY_UPDATE,
                engine.describe_category_update(old, updated),
                entity_type="jobCategory", entity_id=updated.id,
            )
        return updated

    async def delete_job_category(self, category_id: str, actor: Actor = None) -> None:
        async with self.store.transaction() as tx:
            categories = await _load(tx, JOB_CATEGORIES)
            category = _find(categories, category_id)
            if category is None:
                raise NotFound(f"Job category {category_id} not found")
            if any(j.category_id == category_id for j in await _load(tx, JOBS)):
                raise Conflict(f'Job category "{category.name}" is still used by jobs')
            _save(tx, JOB_CATEGORIES, [c for c in categories if c.id != category_id])
            await self._log(
                tx, actor, ActionType.JOB_CATEGORY_DELETE,
                engine.describe_deletion("job category", category.name, category_id),
                entity_type="jobCategory", entity_id=category_id,
            )

    # ---------------------------
    # Products
    # ---------------------------

    async def get_products(self, category_id: Optional[str] = None) -> List[models.Product]:
        products = await self._read(PRODUCTS)
        if category_id:
            products = [p for p in products if p.category_id == category_id]
        return products

    async def find_product_by_id(self, product_id: str) -> Optional[models.Product]:
        async with self.store.transaction() as tx:
            return await self._refresh_product_rating(tx, product_id)

    async def add_product(self, product: models.Product, actor: Actor = None) -> models.Product:
        product = engine.normalize_image_ids(product)
        engine.validate_product(product)
        async with self.store.transaction() as tx:
            await _require_category(tx, product.category_id)
            now = now_iso()
            created = replace(
                product,
                id=new_id(),
                created_at=now,
                updated_at=now,
                views=0,
                purchases=0,
                average_rating=0.0,
                review_count=0,
            )
            await _append(tx, PRODUCTS, created)
            await self._log(
                tx, actor, ActionType.PRODUCT_CREATE,
                f'Created product "{created.name}".',
                entity_type="product", entity_id=created.id,
            )
        return created

    async def update_product(self, product: models.Product, actor: Actor = None) -> models.Product:
        product = engine.normalize_image_ids(product)
        engine.validate_product(product)
        async with self.store.transaction() as tx:
            products = await _load(tx, PRODUCTS)
            old = _find(products, product.id)
            if old is None:
                raise NotFound(f"Product {product.id} not found")
            await _require_category(tx, product.category_id)
            updated = replace(
                product,
                created_at=old.created_at,
                updated_at=now_iso(),
                views=old.views,
                purchases=old.purchases,
                average_rating=old.average_rating,
                review_count=old.review_count,
            )
            _save(tx, PRODUCTS, _swap(products, updated))
            names = {c.id: c.name for c in await _load(tx, CATEGORIES)}
            await self._log(
                tx, actor, ActionType.PRODUCT_UPDATE,
                engine.describe_product_update(old, updated, names),
                entity_type="product", entity_id=updated.id,
            )
        await self.blobs.delete_many(engine.released_image_ids(old, updated))
        return updated

    async def delete_product(
        self,
        product_id: str,
        actor: Actor = None,
        skip_image_ids: Iterable[str] = (),
    ) -> None:
        async with self.store.transaction() as tx:
            products = await _load(tx, PRODUCTS)
            product = _find(products, product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            if any(
                item.product_id == product_id
                for order in await _load(tx, ORDERS)
                for item in order.items
            ):
                raise Conflict(f'Product "{product.name}" is referenced by orders')

            skip = set(skip_image_ids)
            await self.blobs.delete_many(i for i in product.image_ids if i not in skip)

            _save(tx, PRODUCTS, [p for p in products if p.id != product_id])
            _save(tx, REVIEWS, [r for r in await _load(tx, REVIEWS) if r.product_id != product_id])
            _save(tx, WISHLISTS, [w for w in await _load(tx, WISHLISTS) if w.product_id != product_id])
            carts = await _load(tx, CARTS)
            _save(tx, CARTS, [
                engine.drop_product_from_cart(c, product_id)
                if any(it.product_id == product_id for it in c.items + c.saved_for_later) else c
                for c in carts
            ])
            viewed = await tx.load(RECENTLY_VIEWED, {})
            for user_id, items in viewed.items():
                viewed[user_id] = [it for it in items if it["product_id"] != product_id]
            tx.save(RECENTLY_VIEWED, viewed)
            await self._log(
                tx, actor, ActionType.PRODUCT_DELETE,
                engine.describe_deletion("product", product.name, product_id),
                entity_type="product", entity_id=product_id,
            )
        _logger.debug(f"Deleted product {product_id}")

    # ---------------------------
    # Images
    # ---------------------------

    async def save_image(self, entity_id: str, image_type: str, data: bytes, filename: str = "image") -> str:
        return await self.blobs.put(entity_id, image_type, data, filename)

    async def get_image(self, image_id: str) -> Optional[bytes]:
        return await self.blobs.get(image_id)

    async def delete_image(self, image_id: str) -> None:
        await self.blobs.delete(image_id)

    async def delete_images(self, image_ids: Iterable[str]) -> None:
        await self.blobs.delete_many(image_ids)

    # ---------------------------
    # Cart
    # ---------------------------

    async def _edit_cart(self, tx: StoreTransaction, user_id: str) -> Tuple[List[models.Cart], models.Cart]:
        carts = await _load(tx, CARTS)
        cart = next((c for c in carts if c.user_id == user_id), None)
        if cart is None:
            cart = models.Cart(user_id=user_id, updated_at=now_iso())
            carts.append(cart)
        return carts, cart

    def _put_cart(self, tx: StoreTransaction, carts: List[models.Cart], cart: models.Cart) -> None:
        _save(tx, CARTS, [cart if c.user_id == cart.user_id else c for c in carts])

    async def get_cart(self, user_id: str) -> models.Cart:
        async with self.store.transaction() as tx:
            carts, cart = await self._edit_cart(tx, user_id)
            self._put_cart(tx, carts, cart)
        return cart

    async def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1) -> Tuple[models.Cart, bool]:
        async with self.store.transaction() as tx:
            product = _find(await _load(tx, PRODUCTS), product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            carts, cart = await self._edit_cart(tx, user_id)
            cart, limited = engine.add_cart_item(cart, product, quantity)
            self._put_cart(tx, carts, cart)
        if limited:
            _logger.debug(f"Cart of {user_id}: {product_id} clamped to stock {product.stock}")
        return cart, limited

    async def update_cart_item_quantity(
        self, user_id: str, product_id: str, quantity: int
    ) -> Tuple[models.Cart, bool]:
        async with self.store.transaction() as tx:
            product = _find(await _load(tx, PRODUCTS), product_id)
            carts, cart = await self._edit_cart(tx, user_id)
            cart, limited = engine.set_cart_item_quantity(cart, product, product_id, quantity)
            self._put_cart(tx, carts, cart)
        return cart, limited

    async def remove_from_cart(self, user_id: str, product_id: str) -> models.Cart:
        cart, _ = await self.update_cart_item_quantity(user_id, product_id, 0)
        return cart

    async def update_cart(self, cart: models.Cart) -> models.Cart:
        async with self.store.transaction() as tx:
            products = {p.id: p for p in await _load(tx, PRODUCTS)}
            cart, limited = engine.reconcile_cart(cart, products)
            carts, _ = await self._edit_cart(tx, cart.user_id)
            self._put_cart(tx, carts, cart)
        if limited:
            _logger.debug(f"Cart of {cart.user_id} clamped to stock on update")
        return cart

    async def clear_cart(self, user_id: str) -> None:
        async with self.store.transaction() as tx:
            carts, cart = await self._edit_cart(tx, user_id)
            self._put_cart(tx, carts, replace(cart, items=(), updated_at=now_iso()))

    async def move_to_saved_for_later(self, user_id: str, product_id: str) -> models.Cart:
        async with self.store.transaction() as tx:
            carts, cart = await self._edit_cart(tx, user_id)
            cart = engine.move_to_saved(cart, product_id)
            self._put_cart(tx, carts, cart)
        return cart

    async def move_to_cart_from_saved(self, user_id: str, product_id: str) -> bool:
        async with self.store.transaction() as tx:
            product = _find(await _load(tx, PRODUCTS), product_id)
            carts, cart = await self._edit_cart(tx, user_id)
            cart, moved = engine.move_to_cart(cart, product, product_id)
            if moved:
                self._put_cart(tx, carts, cart)
        return moved

    async def remove_from_saved_for_later(self, user_id: str, product_id: str) -> models.Cart:
        async with self.store.transaction() as tx:
            carts, cart = await self._edit_cart(tx, user_id)
            cart = replace(
                cart,
                saved_for_later=tuple(it for it in cart.saved_for_later if it.product_id != product_id),
                updated_at=now_iso(),
            )
            self._put_cart(tx, carts, cart)
        return cart

    # ---------------------------
    # Orders
    # ---------------------------

    async def get_orders(self, user_id: Optional[str] = None) -> List[models.Order]:
        orders = await self._read(ORDERS)
        if user_id:
            orders = [o for o in orders if o.user_id == user_id]
        return engine.newest_first(orders, lambda o: o.order_date)

    async def find_order_by_id(self, order_id: str) -> Optional[models.Order]:
        return _find(await self._read(ORDERS), order_id)

    async def add_order(self, order: models.Order, actor: Actor = None) -> models.Order:
        async with self.store.transaction() as tx:
            user = _find(await _load(tx, USERS), order.user_id)
            if user is None:
                raise NotFound(f"User {order.user_id} not found")
            products = await _load(tx, PRODUCTS)
            created = engine.freeze_order(order, {p.id: p for p in products})
            bought = engine.order_quantities(created.items)
            _save(tx, PRODUCTS, [
                engine.apply_purchase(p, bought[p.id]) if p.id in bought else p for p in products
            ])
            await _append(tx, ORDERS, created)
            carts, cart = await self._edit_cart(tx, order.user_id)
            self._put_cart(tx, carts, replace(cart, items=(), updated_at=now_iso()))
            await self._log(
                tx, actor or engine.actor_for(user), ActionType.ORDER_CREATE,
                f"Placed order {created.id[:8]}... totalling ${created.total_amount:.2f}.",
                entity_type="order", entity_id=created.id,
            )
        return created

    async def update_order_status(self, order_id: str, status: str, actor: Actor = None) -> models.Order:
        if status not in models.ORDER_STATUSES:
            raise ValidationFailed(f"Unknown order status {status!r}")
        async with self.store.transaction() as tx:
            orders = await _load(tx, ORDERS)
            order = _find(orders, order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found")
            updated = replace(order, status=status)
            _save(tx, ORDERS, _swap(orders, updated))
            await self._log(
                tx, actor, ActionType.ORDER_STATUS_UPDATE,
                f'Order {order_id[:8]}... status changed from "{order.status}" to "{status}".',
                entity_type="order", entity_id=order_id,
            )
        return updated

    # ---------------------------
    # Reviews
    # ---------------------------

    async def get_reviews_for_product(self, product_id: str) -> List[models.Review]:
        reviews = [r for r in await self._read(REVIEWS) if r.product_id == product_id]
        return engine.newest_first(reviews, lambda r: r.created_at)

    async def add_review(self, review: models.Review) -> models.Review:
        engine.validate_rating(review.rating)
        async with self.store.transaction() as tx:
            if _find(await _load(tx, PRODUCTS), review.product_id) is None:
                raise NotFound(f"Product {review.product_id} not found")
            author = _find(await _load(tx, USERS), review.user_id)
            created = replace(
                review,
                id=new_id(),
                created_at=now_iso(),
                user_name=review.user_name or (_display_name(author) if author else ""),
            )
            await _append(tx, REVIEWS, created)
            await self._refresh_product_rating(tx, review.product_id)
        return created

    async def delete_review(self, review_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            reviews = await _load(tx, REVIEWS)
            review = _find(reviews, review_id)
            if review is None:
                return False
            _save(tx, REVIEWS, [r for r in reviews if r.id != review_id])
            product = await self._refresh_product_rating(tx, review.product_id)
            await self._log(
                tx, actor, ActionType.REVIEW_DELETE,
                f'Deleted review by "{review.user_name}" on product '
                f'"{product.name if product else review.product_id}".',
                entity_type="review", entity_id=review_id,
            )
        return True

    # ---------------------------
    # Wishlist & saved jobs
    # ---------------------------

    async def get_wishlist(self, user_id: str) -> List[models.Product]:
        rows = [w for w in await self._read(WISHLISTS) if w.user_id == user_id]
        products = {p.id: p for p in await self._read(PRODUCTS)}
        rows = engine.newest_first(rows, lambda w: w.added_at)
        return [products[w.product_id] for w in rows if w.product_id in products]

    async def add_to_wishlist(self, user_id: str, product_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            product = _find(await _load(tx, PRODUCTS), product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            rows = await _load(tx, WISHLISTS)
            if any(w.user_id == user_id and w.product_id == product_id for w in rows):
                _save(tx, WISHLISTS, rows)
                return False
            await _append(tx, WISHLISTS, models.WishlistItem(user_id, product_id, now_iso()))
            await self._log(
                tx, await self._actor(tx, actor, user_id), ActionType.WISHLIST_ADD,
                f'Added "{product.name}" to wishlist.',
                entity_type="product", entity_id=product_id,
            )
        return True

    async def remove_from_wishlist(self, user_id: str, product_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            rows = await _load(tx, WISHLISTS)
            kept = [w for w in rows if not (w.user_id == user_id and w.product_id == product_id)]
            _save(tx, WISHLISTS, kept)
            if len(kept) == len(rows):
                return False
            product = _find(await _load(tx, PRODUCTS), product_id)
            await self._log(
                tx, await self._actor(tx, actor, user_id), ActionType.WISHLIST_REMOVE,
                f'Removed "{product.name if product else product_id}" from wishlist.',
                entity_type="product", entity_id=product_id,
            )
        return True

    async def is_in_wishlist(self, user_id: str, product_id: str) -> bool:
        return any(
            w.user_id == user_id and w.product_id == product_id for w in await self._read(WISHLISTS)
        )

    async def get_saved_jobs(self, user_id: str) -> List[models.Job]:
        rows = [s for s in await self._read(SAVED_JOBS) if s.user_id == user_id]
        jobs = {j.id: j for j in await self._read(JOBS)}
        rows = engine.newest_first(rows, lambda s: s.added_at)
        return [jobs[s.job_id] for s in rows if s.job_id in jobs]

    async def add_to_saved_jobs(self, user_id: str, job_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            job = _find(await _load(tx, JOBS), job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found")
            rows = await _load(tx, SAVED_JOBS)
            if any(s.user_id == user_id and s.job_id == job_id for s in rows):
                _save(tx, SAVED_JOBS, rows)
                return False
            await _append(tx, SAVED_JOBS, models.SavedJobItem(user_id, job_id, now_iso()))
            await self._log(
                tx, await self._actor(tx, actor, user_id), ActionType.SAVED_JOB_ADD,
                f'Saved job "{job.title}".',
                entity_type="job", entity_id=job_id,
            )
        return True

    async def remove_from_saved_jobs(self, user_id: str, job_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            rows = await _load(tx, SAVED_JOBS)
            kept = [s for s in rows if not (s.user_id == user_id and s.job_id == job_id)]
            _save(tx, SAVED_JOBS, kept)
            if len(kept) == len(rows):
                return False
            job = _find(await _load(tx, JOBS), job_id)
            await self._log(
                tx, await self._actor(tx, actor, user_id), ActionType.SAVED_JOB_REMOVE,
                f'Removed saved job "{job.title if job else job_id}".',
                entity_type="job", entity_id=job_id,
            )
        return True

    async def is_job_saved(self, user_id: str, job_id: str) -> bool:
        return any(s.user_id == user_id and s.job_id == job_id for s in await self._read(SAVED_JOBS))

    async def _actor(self, tx: StoreTransaction, actor: Actor, user_id: str) -> models.Actor:
        if actor is not None:
            return actor
        user = _find(await _load(tx, USERS), user_id)
        return engine.actor_for(user)

    # ---------------------------
    # Recently viewed & theme
    # ---------------------------

    async def get_recently_viewed(self, user_id: str) -> List[models.Product]:
        viewed = (await self.store.read(RECENTLY_VIEWED, {})).get(user_id, [])
        products = {p.id: p for p in await self._read(PRODUCTS)}
        return [products[it["product_id"]] for it in viewed if it["product_id"] in products]

    async def add_recently_viewed(self, user_id: str, product_id: str) -> None:
        async with self.store.transaction() as tx:
            products = await _load(tx, PRODUCTS)
            product = _find(products, product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found")
            viewed = await tx.load(RECENTLY_VIEWED, {})
            current = [models.from_dict(models.RecentlyViewedItem, it) for it in viewed.get(user_id, [])]
            viewed[user_id] = [models.to_dict(it) for it in engine.push_recently_viewed(current, product_id)]
            tx.save(RECENTLY_VIEWED, viewed)
            _save(tx, PRODUCTS, _swap(products, replace(product, views=product.views + 1)))

    async def get_global_theme(self) -> str:
        return await self.store.read(THEME, seed.DEFAULT_THEME) or seed.DEFAULT_THEME

    async def set_global_theme(self, theme: str) -> None:
        if theme not in models.THEMES:
            raise ValidationFailed(f"Unknown theme {theme!r}")
        async with self.store.transaction() as tx:
            tx.save(THEME, theme)

    # ---------------------------
    # Jobs
    # ---------------------------

    async def _current_jobs(self, tx: StoreTransaction) -> List[models.Job]:
        jobs, expired = engine.expire_due_jobs(await _load(tx, JOBS), now_iso())
        if expired:
            _save(tx, JOBS, jobs)
            for job in expired:
                await self._notify(tx, "job_expired", FanOutContext(job))
            _logger.info(f"Expired {len(expired)} job(s) past their deadline")
        return jobs

    async def get_jobs(
        self,
        status: Optional[str] = None,
        created_by_id: Optional[str] = None,
        accepted_by_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[models.Job]:
        async with self.store.transaction() as tx:
            jobs = await self._current_jobs(tx)
        return engine.filter_jobs(jobs, status, created_by_id, accepted_by_id, user_id)

    async def find_job_by_id(self, job_id: str) -> Optional[models.Job]:
        async with self.store.transaction() as tx:
            return _find(await self._current_jobs(tx), job_id)

    async def _job_settings(self, tx: StoreTransaction) -> models.JobSettings:
        raw = await tx.load(JOB_SETTINGS, {})
        return models.from_dict(models.JobSettings, raw) if raw else seed.DEFAULT_JOB_SETTINGS

    async def add_job(self, job: models.Job, actor: Actor = None) -> models.Job:
        engine.validate_job(replace(job, status="open"))
        async with self.store.transaction() as tx:
            creator = _find(await _load(tx, USERS), job.created_by_id)
            if creator is None:
                raise NotFound(f"User {job.created_by_id} not found")
            category = _find(await _load(tx, JOB_CATEGORIES), job.category_id or "")
            if category is None:
                raise NotFound(f"Job category {job.category_id} not found")
            jobs = await self._current_jobs(tx)
            settings = await self._job_settings(tx)
            created = engine.open_job(job, creator, category, jobs, settings)
            _save(tx, JOBS, jobs + [created])
            await self._refresh_user_stats(tx, [creator.id])
            await self._log(
                tx, actor or engine.actor_for(creator), ActionType.JOB_CREATE,
                f'Created job "{created.title}".',
                entity_type="job", entity_id=created.id,
            )
        return created

    async def update_job(self, job: models.Job, actor: Actor = None) -> models.Job:
        engine.validate_job(job)
        async with self.store.transaction() as tx:
            jobs = await self._current_jobs(tx)
            old = _find(jobs, job.id)
            if old is None:
                raise NotFound(f"Job {job.id} not found")
            category = None
            if job.category_id != old.category_id:
                category = _find(await _load(tx, JOB_CATEGORIES), job.category_id or "")
                if category is None:
                    raise NotFound(f"Job category {job.category_id} not found")
            updated = engine.merge_job_update(old, job, category, await self._job_settings(tx))
            _save(tx, JOBS, _swap(jobs, updated))
            await self._refresh_user_stats(
                tx, [old.created_by_id, old.accepted_by_id, updated.accepted_by_id]
            )
            if old.status != "completed" and updated.status == "completed":
                await self._notify(
                    tx, "job_completed", FanOutContext(updated, actor_id=actor.id if actor else None)
                )
            action, description = engine.describe_job_update(old, updated)
            await self._log(tx, actor, action, description, entity_type="job", entity_id=updated.id)
        return updated

    async def accept_job(self, job_id: str, acceptor_id: str, actor: Actor = None) -> Optional[models.Job]:
        async with self.store.transaction() as tx:
            jobs = await self._current_jobs(tx)
            job = _find(jobs, job_id)
            if job is None or job.status != "open" or job.created_by_id == acceptor_id:
                return None
            acceptor = _find(await _load(tx, USERS), acceptor_id)
            if acceptor is None:
                raise NotFound(f"User {acceptor_id} not found")
            accepted = replace(
                job,
                status="accepted",
                accepted_by_id=acceptor_id,
                accepted_by_name=_display_name(acceptor),
                accepted_at=now_iso(),
            )
            _save(tx, JOBS, _swap(jobs, accepted))
            await self._notify(tx, "job_accepted", FanOutContext(accepted, actor_id=acceptor_id))
            await self._log(
                tx, actor or engine.actor_for(acceptor), ActionType.JOB_ACCEPT,
                f'"{accepted.accepted_by_name}" accepted job "{accepted.title}".',
                entity_type="job", entity_id=job_id,
            )
        return accepted

    async def complete_job(self, job_id: str, user_id: str, actor: Actor = None) -> Optional[models.Job]:
        async with self.store.transaction() as tx:
            jobs = await _load(tx, JOBS)
            job = _find(jobs, job_id)
            if job is None or job.status != "accepted":
                return None
            if job.created_by_id != user_id:
                raise ValidationFailed("Only the job's creator can mark it completed")
            completed = replace(job, status="completed")
            _save(tx, JOBS, _swap(jobs, completed))
            await self._refresh_user_stats(tx, [completed.created_by_id, completed.accepted_by_id])
            await self._notify(tx, "job_completed", FanOutContext(completed, actor_id=user_id))
            await self._log(
                tx, await self._actor(tx, actor, user_id), ActionType.JOB_COMPLETE,
                f'Marked job "{completed.title}" as completed.',
                entity_type="job", entity_id=job_id,
            )
        return completed

    async def delete_job(self, job_id: str, actor: Actor = None) -> bool:
        async with self.store.transaction() as tx:
            jobs = await _load(tx, JOBS)
            job = _find(jobs, job_id)
            if job is None:
                return False
            _save(tx, JOBS, [j for j in jobs if j.id != job_id])
            _save(tx, CHAT_MESSAGES, [m for m in await _load(tx, CHAT_MESSAGES) if m.job_id != job_id])
            _save(tx, SAVED_JOBS, [s for s in await _load(tx, SAVED_JOBS) if s.job_id != job_id])
            await self._refresh_user_stats(tx, [job.created_by_id, job.accepted_by_id])
            await self._log(
                tx, actor, ActionType.JOB_DELETE,
                engine.describe_deletion("job", job.title, job_id),
                entity_type="job", entity_id=job_id,
            )
        return True

    # ---------------------------
    # Chat
    # ---------------------------

    async def get_chat_for_job(self, job_id: str, viewer_id: str) -> List[models.ChatMessage]:
        job = _find(await self._read(JOBS), job_id)
        if job is None:
            return []
        engine.check_chat_access(job, viewer_id)
        messages = [m for m in await self._read(CHAT_MESSAGES) if m.job_id == job_id]
        return sorted(messages, key=lambda m: m.timestamp)

    async def send_message(self, job_id: str, sender_id: str, text: str) -> models.ChatMessage:
        async with self.store.transaction() as tx:
            job = _find(await _load(tx, JOBS), job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found")
            sender = _find(await _load(tx, USERS), sender_id)
            message = engine.new_chat_message(job, sender_id, sender and _display_name(sender), text)
            await _append(tx, CHAT_MESSAGES, message)
            await self._notify(
                tx, "new_message",
                FanOutContext(job, actor_id=sender_id, actor_name=message.sender_name),
            )
        return message

    # ---------------------------
    # Job reviews
    # ---------------------------

    async def add_job_review(self, review: models.JobReview) -> models.JobReview:
        async with self.store.transaction() as tx:
            jobs = await _load(tx, JOBS)
            job = _find(jobs, review.job_id)
            created = engine.check_job_review(job, review, await _load(tx, JOB_REVIEWS))
            await _append(tx, JOB_REVIEWS, created)
            _save(tx, JOBS, _swap(jobs, engine.mark_reviewed(job, created.reviewer_id)))
            await self._refresh_user_stats(tx, [created.reviewee_id])
            await self._notify(
                tx, "review_received",
                FanOutContext(
                    job,
                    actor_id=created.reviewer_id,
                    actor_name=created.reviewer_name,
                    rating=created.rating,
                    reviewee_id=created.reviewee_id,
                ),
            )
        return created

    async def get_reviews_for_job(self, job_id: str) -> List[models.JobReview]:
        return await self.get_reviews_for_jobs([job_id])

    async def get_reviews_for_jobs(self, job_ids: Sequence[str]) -> List[models.JobReview]:
        wanted = set(job_ids)
        reviews = [r for r in await self._read(JOB_REVIEWS) if r.job_id in wanted]
        return engine.newest_first(reviews, lambda r: r.created_at)

    async def get_reviews_about_user(self, user_id: str) -> List[models.JobReview]:
        reviews = [r for r in await self._read(JOB_REVIEWS) if r.reviewee_id == user_id]
        return engine.newest_first(reviews, lambda r: r.created_at)

    # ---------------------------
    # Job settings
    # ---------------------------

    async def get_job_settings(self) -> models.JobSettings:
        raw = await self.store.read(JOB_SETTINGS, {})
        return models.from_dict(models.JobSettings, raw) if raw else seed.DEFAULT_JOB_SETTINGS

    async def update_job_settings(self, settings: models.JobSettings, actor: Actor = None) -> models.JobSettings:
        engine.validate_job_settings(settings)
        async with self.store.transaction() as tx:
            tx.save(JOB_SETTINGS, models.to_dict(settings))
            await self._log(
                tx, actor, ActionType.JOB_SETTINGS_UPDATE,
                engine.describe_job_settings(settings),
                entity_type="jobSettings",
            )
        return settings

    # ---------------------------
    # Notifications
    # ---------------------------

    async def add_notification(self, notification: models.Notification) -> models.Notification:
        created = engine.stamp_notification(notification)
        async with self.store.transaction() as tx:
            await _append(tx, NOTIFICATIONS, created)
        return created

    async def get_notifications(self, user_id: str) -> List[models.Notification]:
        rows = [n for n in await self._read(NOTIFICATIONS) if n.user_id == user_id]
        return engine.newest_first(rows, lambda n: n.created_at)

    async def mark_notification_as_read(self, user_id: str, notification_id: str) -> bool:
        async with self.store.transaction() as tx:
            rows = await _load(tx, NOTIFICATIONS)
            target = _find(rows, notification_id)
            if target is None or target.user_id != user_id:
                return False
            if not target.is_read:
                _save(tx, NOTIFICATIONS, _swap(rows, replace(target, is_read=True)))
        return True

    async def mark_all_notifications_as_read(self, user_id: str) -> int:
        async with self.store.transaction() as tx:
            rows = await _load(tx, NOTIFICATIONS)
            unread = {n.id for n in rows if n.user_id == user_id and not n.is_read}
            if unread:
                _save(tx, NOTIFICATIONS, [replace(n, is_read=True) if n.id in unread else n for n in rows])
        return len(unread)

    # ---------------------------
    # Activity log
    # ---------------------------

    async def add_activity_log(self, log: models.ActivityLog) -> models.ActivityLog:
        created = engine.stamp_log(log)
        async with self.store.transaction() as tx:
            await _append(tx, ACTIVITY_LOGS, created)
        return created

    async def get_activity_logs(
        self, actor_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[models.ActivityLog]:
        logs = await self._read(ACTIVITY_LOGS)
        if actor_id:
            logs = [entry for entry in logs if entry.actor_id == actor_id]
        logs = engine.newest_first(logs, lambda entry: entry.timestamp)
        return logs[:limit] if limit else logs


async def _require_category(tx: StoreTransaction, category_id: str) -> None:
    if category_id and _find(await _load(tx, CATEGORIES), category_id) is None:
        raise NotFound(f"Category {category_id} not found")
