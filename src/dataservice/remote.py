# data service over a MongoDB database (pymongo, calls pushed to worker threads)
from __future__ import annotations

import asyncio
import re
from dataclasses import replace
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from dataservice import engine, models, seed
from dataservice.contract import Actor, DataService
from dataservice.database import BlobStore
from dataservice.engine import ActionType, FanOutContext
from dataservice.errors import Conflict, NotFound, PartialAggregateFailure, StorageUnavailable, ValidationFailed
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
SETTINGS = "settings"

COLLECTIONS = (
    USERS, PRODUCTS, CATEGORIES, JOB_CATEGORIES, CARTS, ORDERS, REVIEWS,
    WISHLISTS, SAVED_JOBS, JOBS, JOB_REVIEWS, CHAT_MESSAGES, NOTIFICATIONS,
    ACTIVITY_LOGS, RECENTLY_VIEWED, SETTINGS,
)

SEED_MARKER_ID = "seed_marker"
JOB_SETTINGS_ID = "job_settings"
THEME_ID = "theme"

NEWEST = [("created_at", -1)]
OLDEST = [("created_at", 1)]


def _doc(entity, key: Optional[str] = None) -> Dict[str, Any]:
    doc = models.to_dict(entity)
    doc["_id"] = key if key is not None else doc["id"]
    return doc


def _entity(cls, doc: Optional[Dict[str, Any]]):
    return models.from_dict(cls, doc) if doc else None


def _pair_id(user_id: str, target_id: str) -> str:
    return f"{user_id}:{target_id}"


def _display_name(user: models.User) -> str:
    return user.name or user.email


class RemoteBackend(DataService):
    """
    Every request is independent; there are no multi-document transactions.

    When an action touches several documents the primary write goes first and
    the dependent writes (aggregates, notifications, activity log) follow. A
    failing dependent write is logged as a partial aggregate failure and the
    call still succeeds; the aggregates are rebuilt from source documents the
    next time the product or user is read through ``find_*_by_id``.
    """

    kind = "remote"

    def __init__(
        self,
        db: Database,
        blobs: BlobStore,
        client: Optional[MongoClient] = None,
    ) -> None:
        self._db = db
        self._client = client
        self.blobs = blobs
        self._cols = {name: db[name] for name in COLLECTIONS}
        self._seeded = False
        self._seed_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, blobs: BlobStore) -> "RemoteBackend":
        if not settings.remote_configured:
            raise StorageUnavailable("Remote data source is not configured (MONGODB_URL is empty)")
        try:
            client = MongoClient(
                settings.mongodb_url,
                serverSelectionTimeoutMS=settings.mongodb_timeout_ms,
                tz_aware=True,
            )
        except PyMongoError as exc:
            raise StorageUnavailable(f"Cannot create MongoDB client: {exc}") from exc
        return cls(client[settings.mongodb_database], blobs, client=client)

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None

    # ---------------------------
    # Request helpers
    # ---------------------------

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except PyMongoError as exc:
            raise StorageUnavailable(f"Remote store error: {exc}") from exc

    async def _get(self, name: str, cls, key: Optional[str]):
        if not key:
            return None
        return _entity(cls, await self._call(self._cols[name].find_one, {"_id": key}))

    async def _find_one(self, name: str, cls, query: Dict[str, Any]):
        return _entity(cls, await self._call(self._cols[name].find_one, query))

    async def _all(self, name: str, cls, query: Optional[Dict[str, Any]] = None, sort=None, limit: int = 0) -> list:
        col = self._cols[name]

        def run() -> list:
            cursor = col.find(query or {})
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

        return [models.from_dict(cls, doc) for doc in await self._call(run)]

    async def _exists(self, name: str, query: Dict[str, Any]) -> bool:
        return await self._call(self._cols[name].count_documents, query, limit=1) > 0

    async def _secondary(self, description: str, awaitable: Awaitable):
        try:
            return await awaitable
        except StorageUnavailable as exc:
            failure = PartialAggregateFailure(f"{description} did not complete", cause=str(exc))
            _logger.warning(f"{failure.message}: {exc}")
            return None

    async def _log(self, actor: Actor, action_type: str, description: str, **kw) -> None:
        entry = engine.build_log(actor, action_type, description, **kw)
        await self._secondary(
            f"activity log {action_type}",
            self._call(self._cols[ACTIVITY_LOGS].insert_one, _doc(entry)),
        )

    async def _notify(self, kind: str, ctx: FanOutContext) -> None:
        notifications = engine.fan_out(kind, ctx)
        if notifications:
            await self._secondary(
                f"{kind} notification",
                self._call(self._cols[NOTIFICATIONS].insert_many, [_doc(n) for n in notifications]),
            )

    async def _compute_user_stats(self, user_id: str) -> engine.JobStats:
        jobs = await self._all(
            JOBS, models.Job, {"$or": [{"created_by_id": user_id}, {"accepted_by_id": user_id}]}
        )
        reviews = await self._all(JOB_REVIEWS, models.JobReview, {"reviewee_id": user_id})
        return engine.compute_job_stats(user_id, jobs, reviews)

    async def _write_user_stats(self, user_id: str, stats: engine.JobStats) -> None:
        await self._call(
            self._cols[USERS].update_one,
            {"_id": user_id},
            {"$set": {
                "jobs_created_count": stats.jobs_created_count,
                "jobs_completed_count": stats.jobs_completed_count,
                "average_job_rating": stats.average_job_rating,
                "job_review_count": stats.job_review_count,
                "badges": list(stats.badges),
            }},
        )

    async def _refresh_user_stats(self, user_ids: Iterable[Optional[str]]) -> None:
        for user_id in {u for u in user_ids if u}:
            await self._secondary(
                f"job statistics of user {user_id}",
                self._recompute_and_write(user_id),
            )

    async def _recompute_and_write(self, user_id: str) -> None:
        await self._write_user_stats(user_id, await self._compute_user_stats(user_id))

    async def _product_summary(self, product_id: str) -> engine.RatingSummary:
        reviews = await self._all(REVIEWS, models.Review, {"product_id": product_id})
        return engine.recompute_rating(r.rating for r in reviews)

    async def _write_rating(self, product_id: str, summary: engine.RatingSummary) -> None:
        await self._call(
            self._cols[PRODUCTS].update_one,
            {"_id": product_id},
            {"$set": {"average_rating": summary.average_rating, "review_count": summary.review_count}},
        )

    async def _refresh_product_rating(self, product_id: str) -> None:
        async def run() -> None:
            await self._write_rating(product_id, await self._product_summary(product_id))

        await self._secondary(f"rating of product {product_id}", run())

    async def _actor(self, actor: Actor, user_id: Optional[str]) -> models.Actor:
        if actor is not None:
            return actor
        return engine.actor_for(await self._get(USERS, models.User, user_id))

    # ---------------------------
    # Lifecycle
    # ---------------------------

    async def initialize_data(self) -> bool:
        async with self._seed_lock:
            if self._seeded:
                return False
            settings = self._cols[SETTINGS]
            if await self._call(settings.find_one, {"_id": SEED_MARKER_ID}):
                self._seeded = True
                return False
            _logger.info("Remote database has no seed marker, seeding baseline data...")
            if not await self._exists(USERS, {"email": seed.ADMIN_EMAIL}):
                await self._call(self._cols[USERS].insert_one, _doc(seed.admin_user()))
            if not await self._exists(CATEGORIES, {}):
                await self._call(self._cols[CATEGORIES].insert_many, [_doc(c) for c in seed.categories()])
            if not await self._exists(JOB_CATEGORIES, {}):
                await self._call(
                    self._cols[JOB_CATEGORIES].insert_many, [_doc(c) for c in seed.job_categories()]
                )
            if not await self._exists(SETTINGS, {"_id": JOB_SETTINGS_ID}):
                await self._call(
                    settings.insert_one,
                    dict(models.to_dict(seed.DEFAULT_JOB_SETTINGS), _id=JOB_SETTINGS_ID),
                )
            if not await self._exists(SETTINGS, {"_id": THEME_ID}):
                await self._call(settings.insert_one, {"_id": THEME_ID, "value": seed.DEFAULT_THEME})
            # marker last so an interrupted seed is retried
            await self._call(settings.insert_one, {"_id": SEED_MARKER_ID, "at": now_iso()})
            self._seeded = True
        return True

    # ---------------------------
    # Users
    # ---------------------------

    async def get_users(self) -> List[models.User]:
        return await self._all(USERS, models.User, sort=OLDEST)

    async def find_user_by_id(self, user_id: str) -> Optional[models.User]:
        user = await self._get(USERS, models.User, user_id)
        if user is None:
            return None
        stats = await self._compute_user_stats(user_id)
        if stats != engine.stats_of(user):
            user = engine.apply_job_stats(user, stats)
            await self._secondary(f"job statistics of user {user_id}", self._write_user_stats(user_id, stats))
        return user

    async def find_user_by_email(self, email: str) -> Optional[models.User]:
        pattern = f"^{re.escape(email.strip())}$"
        return await self._find_one(USERS, models.User, {"email": {"$regex": pattern, "$options": "i"}})

    async def add_user(self, user: models.User, actor: Actor = None) -> models.User:
        engine.validate_user(user)
        if await self.find_user_by_email(user.email) is not None:
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
        await self._call(self._cols[USERS].insert_one, _doc(created))
        await self._log(
            actor, ActionType.USER_CREATE,
            f'Created user "{created.email}" with role {created.role}.',
            entity_type="user", entity_id=created.id,
        )
        return created

    async def update_user(self, user: models.User, actor: Actor = None) -> models.User:
        engine.validate_user(user)
        old = await self._get(USERS, models.User, user.id)
        if old is None:
            raise NotFound(f"User {user.id} not found")
        clash = await self.find_user_by_email(user.email)
        if clash is not None and clash.id != user.id:
            raise Conflict(f"A user with email {user.email} already exists", email=user.email)
        updated = engine.apply_job_stats(
            replace(user, created_at=old.created_at, updated_at=now_iso()),
            engine.stats_of(old),
        )
        await self._call(self._cols[USERS].replace_one, {"_id": user.id}, _doc(updated))
        await self._log(
            actor, ActionType.USER_UPDATE,
            engine.describe_user_update(old, updated),
            entity_type="user", entity_id=updated.id,
        )
        return updated

    async def delete_user(self, user_id: str, actor: Actor = None) -> bool:
        user = await self._get(USERS, models.User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        if await self._exists(ORDERS, {"user_id": user_id}):
            await self._call(
                self._cols[USERS].update_one,
                {"_id": user_id},
                {"$set": {"is_active": False, "updated_at": now_iso()}},
            )
            await self._log(
                actor, ActionType.USER_DEACTIVATE,
                f'Deactivated user "{user.email}" because orders still reference it.',
                entity_type="user", entity_id=user_id,
            )
            return False
        await self._call(self._cols[USERS].delete_one, {"_id": user_id})
        for name in (CARTS, WISHLISTS, SAVED_JOBS, NOTIFICATIONS):
            await self._call(self._cols[name].delete_many, {"user_id": user_id})
        await self._call(self._cols[RECENTLY_VIEWED].delete_one, {"_id": user_id})
        await self._log(
            actor, ActionType.USER_DELETE,
            engine.describe_deletion("user", user.email, user_id),
            entity_type="user", entity_id=user_id,
        )
        return True

    async def record_login(self, user_id: str) -> models.User:
        user = await self._get(USERS, models.User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        user = replace(user, last_login=now_iso())
        await self._call(self._cols[USERS].update_one, {"_id": user_id}, {"$set": {"last_login": user.last_login}})
        await self._log(
            engine.actor_for(user), ActionType.AUTH_LOGIN,
            f'User "{user.email}" logged in.',
            entity_type="user", entity_id=user_id,
        )
        return user

    # ---------------------------
    # Addresses
    # ---------------------------

    async def get_user_addresses(self, user_id: str) -> List[models.Address]:
        user = await self._get(USERS, models.User, user_id)
        return list(user.addresses) if user else []

    async def find_user_address_by_id(self, user_id: str, address_id: str) -> Optional[models.Address]:
        return next((a for a in await self.get_user_addresses(user_id) if a.id == address_id), None)

    async def _require_user(self, user_id: str) -> models.User:
        user = await self._get(USERS, models.User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    async def _write_addresses(self, user: models.User) -> None:
        await self._call(
            self._cols[USERS].update_one,
            {"_id": user.id},
            {"$set": {
                "addresses": [models.to_dict(a) for a in user.addresses],
                "updated_at": user.updated_at,
            }},
        )

    async def add_address_to_user(self, user_id: str, address: models.Address) -> models.Address:
        user, created = engine.add_address(await self._require_user(user_id), address)
        await self._write_addresses(user)
        return created

    async def update_user_address(self, user_id: str, address: models.Address) -> models.Address:
        user, updated = engine.update_address(await self._require_user(user_id), address)
        if updated is None:
            raise NotFound(f"Address {address.id} not found")
        await self._write_addresses(user)
        return updated

    async def delete_user_address(self, user_id: str, address_id: str) -> bool:
        user, removed = engine.remove_address(await self._require_user(user_id), address_id)
        if removed:
            await self._write_addresses(user)
        return removed

    async def set_default_user_address(self, user_id: str, address_id: str) -> bool:
        user = await self._require_user(user_id)
        if not any(a.id == address_id for a in user.addresses):
            return False
        await self._write_addresses(engine.set_default_address(user, address_id))
        return True

    # ---------------------------
    # Categories
    # ---------------------------

    async def get_categories(self) -> List[models.Category]:
        return await self._all(CATEGORIES, models.Category, sort=[("display_order", 1), ("name", 1)])

    async def find_category_by_id(self, category_id: str) -> Optional[models.Category]:
        return await self._get(CATEGORIES, models.Category, category_id)

    async def find_category_by_slug(self, slug: str) -> Optional[models.Category]:
        return await self._find_one(CATEGORIES, models.Category, {"slug": slug})

    async def get_child_categories(self, parent_id: str) -> List[models.Category]:
        return await self._all(
            CATEGORIES, models.Category, {"parent_id": parent_id}, sort=[("display_order", 1), ("name", 1)]
        )

    async def _check_slug(self, name: str, category) -> None:
        if await self._exists(name, {"slug": category.slug, "_id": {"$ne": category.id}}):
            raise Conflict(f"Slug {category.slug!r} is already taken", slug=category.slug)

    async def add_category(self, category: models.Category, actor: Actor = None) -> models.Category:
        category = engine.prepare_category(category)
        await self._check_slug(CATEGORIES, category)
        if category.parent_id and not await self._exists(CATEGORIES, {"_id": category.parent_id}):
            raise NotFound(f"Parent category {category.parent_id} not found")
        now = now_iso()
        created = replace(category, id=new_id(), created_at=now, updated_at=now)
        await self._call(self._cols[CATEGORIES].insert_one, _doc(created))
        await self._log(
            actor, ActionType.CATEGORY_CREATE,
            f'Created category "{created.name}".',
            entity_type="category", entity_id=created.id,
        )
        return created

    async def update_category(self, category: models.Category, actor: Actor = None) -> models.Category:
        category = engine.prepare_category(category)
        old = await self._get(CATEGORIES, models.Category, category.id)
        if old is None:
            raise NotFound(f"Category {category.id} not found")
        await self._check_slug(CATEGORIES, category)
        if category.parent_id == category.id:
            raise ValidationFailed("A category cannot be its own parent")
        if category.parent_id and not await self._exists(CATEGORIES, {"_id": category.parent_id}):
            raise NotFound(f"Parent category {category.parent_id} not found")
        updated = replace(category, created_at=old.created_at, updated_at=now_iso())
        await self._call(self._cols[CATEGORIES].replace_one, {"_id": updated.id}, _doc(updated))
        if old.image_id and old.image_id != updated.image_id:
            await self.blobs.delete(old.image_id)
        await self._log(
            actor, ActionType.CATEGORY_UPDATE,
            engine.describe_category_update(old, updated),
            entity_type="category", entity_id=updated.id,
        )
        return updated

    async def delete_category(self, category_id: str, actor: Actor = None) -> None:
        category = await self._get(CATEGORIES, models.Category, category_id)
        if category is None:
            raise NotFound(f"Category {category_id} not found")
        if await self._exists(PRODUCTS, {"category_id": category_id}):
            raise Conflict(f'Category "{category.name}" is still used by products')
        if await self._exists(CATEGORIES, {"parent_id": category_id}):
            raise Conflict(f'Category "{category.name}" still has child categories')
        await self.blobs.delete(category.image_id)
        await self._call(self._cols[CATEGORIES].delete_one, {"_id": category_id})
        await self._log(
            actor, ActionType.CATEGORY_DELETE,
            engine.describe_deletion("category", category.name, category_id),
            entity_type="category", entity_id=category_id,
        )

    # ---------------------------
    # Job categories
    # ---------------------------

    async def get_job_categories(self) -> List[models.JobCategory]:
        return await self._all(JOB_CATEGORIES, models.JobCategory, sort=[("display_order", 1), ("name", 1)])

    async def find_job_category_by_id(self, category_id: str) -> Optional[models.JobCategory]:
        return await self._get(JOB_CATEGORIES, models.JobCategory, category_id)

    async def find_job_category_by_slug(self, slug: str) -> Optional[models.JobCategory]:
        return await self._find_one(JOB_CATEGORIES, models.JobCategory, {"slug": slug})

    async def add_job_category(self, category: models.JobCategory, actor: Actor = None) -> models.JobCategory:
        category = engine.prepare_category(category)
        await self._check_slug(JOB_CATEGORIES, category)
        now = now_iso()
        created = replace(category, id=new_id(), created_at=now, updated_at=now)
        await self._call(self._cols[JOB_CATEGORIES].insert_one, _doc(created))
        await self._log(
            actor, ActionType.JOB_CATEGORY_CREATE,
            f'Created job category "{created.name}".',
            entity_type="jobCategory", entity_id=created.id,
        )
        return created

    async def update_job_category(self, category: models.JobCategory, actor: Actor = None) -> models.JobCategory:
        category = engine.prepare_category(category)
        old = await self._get(JOB_CATEGORIES, models.JobCategory, category.id)
        if old is None:
            raise NotFound(f"Job category {category.id} not found")
        await self._check_slug(JOB_CATEGORIES, category)
        updated = replace(category, created_at=old.created_at, updated_at=now_iso())
        await self._call(self._cols[JOB_CATEGORIES].replace_one, {"_id": updated.id}, _doc(updated))
        if updated.name != old.name:
            await self._secondary(
                f"category name on jobs of {updated.id}",
                self._call(
                    self._cols[JOBS].update_many,
                    {"category_id": updated.id},
                    {"$set": {"category_name": updated.name}},
                ),
            )
        await self._log(
            actor, ActionType.JOB_CATEGORY_UPDATE,
            engine.describe_category_update(old, updated),
            entity_type="jobCategory", entity_id=updated.id,
        )
        return updated

    async def delete_job_category(self, category_id: str, actor: Actor = None) -> None:
        category = await self._get(JOB_CATEGORIES, models.JobCategory, category_id)
        if category is None:
            raise NotFound(f"Job category {category_id} not found")
        if await self._exists(JOBS, {"category_id": category_id}):
            raise Conflict(f'Job category "{category.name}" is still used by jobs')
        await self._call(self._cols[JOB_CATEGORIES].delete_one, {"_id": category_id})
        await self._log(
            actor, ActionType.JOB_CATEGORY_DELETE,
            engine.describe_deletion("job category", category.name, category_id),
            entity_type="jobCategory", entity_id=category_id,
        )

    # ---------------------------
    # Products
    # ---------------------------

    async def get_products(self, category_id: Optional[str] = None) -> List[models.Product]:
        query = {"category_id": category_id} if category_id else {}
        return await self._all(PRODUCTS, models.Product, query, sort=OLDEST)

    async def find_product_by_id(self, product_id: str) -> Optional[models.Product]:
        product = await self._get(PRODUCTS, models.Product, product_id)
        if product is None:
            return None
        summary = await self._product_summary(product_id)
        if summary != engine.rating_of(product):
            product = engine.apply_rating(product, summary)
            await self._secondary(f"rating of product {product_id}", self._write_rating(product_id, summary))
        return product

    async def _require_category(self, category_id: str) -> None:
        if category_id and not await self._exists(CATEGORIES, {"_id": category_id}):
            raise NotFound(f"Category {category_id} not found")

    async def add_product(self, product: models.Product, actor: Actor = None) -> models.Product:
        product = engine.normalize_image_ids(product)
        engine.validate_product(product)
        await self._require_category(product.category_id)
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
        await self._call(self._cols[PRODUCTS].insert_one, _doc(created))
        await self._log(
            actor, ActionType.PRODUCT_CREATE,
            f'Created product "{created.name}".',
            entity_type="product", entity_id=created.id,
        )
        return created

    async def update_product(self, product: models.Product, actor: Actor = None) -> models.Product:
        product = engine.normalize_image_ids(product)
        engine.validate_product(product)
        old = await self._get(PRODUCTS, models.Product, product.id)
        if old is None:
            raise NotFound(f"Product {product.id} not found")
        await self._require_category(product.category_id)
        fields = models.to_dict(product)
        for derived in ("id", "created_at", "views", "purchases", "average_rating", "review_count"):
            fields.pop(derived)
        fields["updated_at"] = now_iso()
        # $set leaves the counters alone so concurrent purchases/views are kept
        await self._call(self._cols[PRODUCTS].update_one, {"_id": product.id}, {"$set": fields})
        updated = await self._get(PRODUCTS, models.Product, product.id) or old
        await self.blobs.delete_many(engine.released_image_ids(old, updated))
        names = {c.id: c.name for c in await self.get_categories()}
        await self._log(
            actor, ActionType.PRODUCT_UPDATE,
            engine.describe_product_update(old, updated, names),
            entity_type="product", entity_id=updated.id,
        )
        return updated

    async def delete_product(
        self,
        product_id: str,
        actor: Actor = None,
        skip_image_ids: Iterable[str] = (),
    ) -> None:
        product = await self._get(PRODUCTS, models.Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        if await self._exists(ORDERS, {"items.product_id": product_id}):
            raise Conflict(f'Product "{product.name}" is referenced by orders')

        skip = set(skip_image_ids)
        await self.blobs.delete_many(i for i in product.image_ids if i not in skip)

        await self._call(self._cols[PRODUCTS].delete_one, {"_id": product_id})
        await self._call(self._cols[REVIEWS].delete_many, {"product_id": product_id})
        await self._call(self._cols[WISHLISTS].delete_many, {"product_id": product_id})
        await self._call(
            self._cols[CARTS].update_many,
            {},
            {"$pull": {
                "items": {"product_id": product_id},
                "saved_for_later": {"product_id": product_id},
            }},
        )
        await self._call(
            self._cols[RECENTLY_VIEWED].update_many,
            {},
            {"$pull": {"items": {"product_id": product_id}}},
        )
        await self._log(
            actor, ActionType.PRODUCT_DELETE,
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

    async def _load_cart(self, user_id: str) -> Tuple[models.Cart, bool]:
        cart = await self._get(CARTS, models.Cart, user_id)
        if cart is None:
            return models.Cart(user_id=user_id, updated_at=now_iso()), False
        return cart, True

    async def _put_cart(self, cart: models.Cart) -> models.Cart:
        await self._call(self._cols[CARTS].replace_one, {"_id": cart.user_id}, _doc(cart, cart.user_id), upsert=True)
        return cart

    async def get_cart(self, user_id: str) -> models.Cart:
        cart, stored = await self._load_cart(user_id)
        if not stored:
            await self._put_cart(cart)
        return cart

    async def add_to_cart(self, user_id: str, product_id: str, quantity: int = 1) -> Tuple[models.Cart, bool]:
        product = await self._get(PRODUCTS, models.Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        cart, _ = await self._load_cart(user_id)
        cart, limited = engine.add_cart_item(cart, product, quantity)
        if limited:
            _logger.debug(f"Cart of {user_id}: {product_id} clamped to stock {product.stock}")
        return await self._put_cart(cart), limited

    async def update_cart_item_quantity(
        self, user_id: str, product_id: str, quantity: int
    ) -> Tuple[models.Cart, bool]:
        product = await self._get(PRODUCTS, models.Product, product_id)
        cart, _ = await self._load_cart(user_id)
        cart, limited = engine.set_cart_item_quantity(cart, product, product_id, quantity)
        return await self._put_cart(cart), limited

    async def remove_from_cart(self, user_id: str, product_id: str) -> models.Cart:
        cart, _ = await self.update_cart_item_quantity(user_id, product_id, 0)
        return cart

    async def update_cart(self, cart: models.Cart) -> models.Cart:
        ids = sorted({it.product_id for it in cart.items + cart.saved_for_later})
        products = await self._all(PRODUCTS, models.Product, {"_id": {"$in": ids}})
        cart, limited = engine.reconcile_cart(cart, {p.id: p for p in products})
        if limited:
            _logger.debug(f"Cart of {cart.user_id} clamped to stock on update")
        return await self._put_cart(cart)

    async def clear_cart(self, user_id: str) -> None:
        await self._call(
            self._cols[CARTS].update_one,
            {"_id": user_id},
            {"$set": {"items": [], "updated_at": now_iso()}},
        )

    async def move_to_saved_for_later(self, user_id: str, product_id: str) -> models.Cart:
        cart, _ = await self._load_cart(user_id)
        return await self._put_cart(engine.move_to_saved(cart, product_id))

    async def move_to_cart_from_saved(self, user_id: str, product_id: str) -> bool:
        product = await self._get(PRODUCTS, models.Product, product_id)
        cart, _ = await self._load_cart(user_id)
        cart, moved = engine.move_to_cart(cart, product, product_id)
        if moved:
            await self._put_cart(cart)
        return moved

    async def remove_from_saved_for_later(self, user_id: str, product_id: str) -> models.Cart:
        cart, _ = await self._load_cart(user_id)
        cart = replace(
            cart,
            saved_for_later=tuple(it for it in cart.saved_for_later if it.product_id != product_id),
            updated_at=now_iso(),
        )
        return await self._put_cart(cart)

    # ---------------------------
    # Orders
    # ---------------------------

    async def get_orders(self, user_id: Optional[str] = None) -> List[models.Order]:
        query = {"user_id": user_id} if user_id else {}
        return await self._all(ORDERS, models.Order, query, sort=[("order_date", -1)])

    async def find_order_by_id(self, order_id: str) -> Optional[models.Order]:
        return await self._get(ORDERS, models.Order, order_id)

    async def add_order(self, order: models.Order, actor: Actor = None) -> models.Order:
        user = await self._require_user(order.user_id)
        ids = sorted({it.product_id for it in order.items})
        products = await self._all(PRODUCTS, models.Product, {"_id": {"$in": ids}})
        created = engine.freeze_order(order, {p.id: p for p in products})
        await self._call(self._cols[ORDERS].insert_one, _doc(created))
        for product_id, quantity in engine.order_quantities(created.items).items():
            await self._secondary(
                f"stock of product {product_id}",
                self._call(
                    self._cols[PRODUCTS].update_one,
                    {"_id": product_id},
                    {"$inc": {"stock": -quantity, "purchases": quantity}, "$set": {"updated_at": now_iso()}},
                ),
            )
        await self._secondary(f"cart of user {order.user_id}", self.clear_cart(order.user_id))
        await self._log(
            actor or engine.actor_for(user), ActionType.ORDER_CREATE,
            f"Placed order {created.id[:8]}... totalling ${created.total_amount:.2f}.",
            entity_type="order", entity_id=created.id,
        )
        return created

    async def update_order_status(self, order_id: str, status: str, actor: Actor = None) -> models.Order:
        if status not in models.ORDER_STATUSES:
            raise ValidationFailed(f"Unknown order status {status!r}")
        order = await self._get(ORDERS, models.Order, order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        await self._call(self._cols[ORDERS].update_one, {"_id": order_id}, {"$set": {"status": status}})
        await self._log(
            actor, ActionType.ORDER_STATUS_UPDATE,
            f'Order {order_id[:8]}... status changed from "{order.status}" to "{status}".',
            entity_type="order", entity_id=order_id,
        )
        return replace(order, status=status)

    # ---------------------------
    # Reviews
    # ---------------------------

    async def get_reviews_for_product(self, product_id: str) -> List[models.Review]:
        return await self._all(REVIEWS, models.Review, {"product_id": product_id}, sort=NEWEST)

    async def add_review(self, review: models.Review) -> models.Review:
        engine.validate_rating(review.rating)
        if not await self._exists(PRODUCTS, {"_id": review.product_id}):
            raise NotFound(f"Product {review.product_id} not found")
        author = await self._get(USERS, models.User, review.user_id)
        created = replace(
            review,
            id=new_id(),
            created_at=now_iso(),
            user_name=review.user_name or (_display_name(author) if author else ""),
        )
        await self._call(self._cols[REVIEWS].insert_one, _doc(created))
        await self._refresh_product_rating(review.product_id)
        return created

    async def delete_review(self, review_id: str, actor: Actor = None) -> bool:
        review = await self._get(REVIEWS, models.Review, review_id)
        if review is None:
            return False
        await self._call(self._cols[REVIEWS].delete_one, {"_id": review_id})
        await self._refresh_product_rating(review.product_id)
        product = await self._get(PRODUCTS, models.Product, review.product_id)
        await self._log(
            actor, ActionType.REVIEW_DELETE,
            f'Deleted review by "{review.user_name}" on product '
            f'"{product.name if product else review.product_id}".',
            entity_type="review", entity_id=review_id,
        )
        return True

    # ---------------------------
    # Wishlist & saved jobs
    # ---------------------------

    async def get_wishlist(self, user_id: str) -> List[models.Product]:
        rows = await self._all(WISHLISTS, models.WishlistItem, {"user_id": user_id}, sort=[("added_at", -1)])
        products = await self._all(PRODUCTS, models.Product, {"_id": {"$in": [w.product_id for w in rows]}})
        by_id = {p.id: p for p in products}
        return [by_id[w.product_id] for w in rows if w.product_id in by_id]

    async def add_to_wishlist(self, user_id: str, product_id: str, actor: Actor = None) -> bool:
        product = await self._get(PRODUCTS, models.Product, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found")
        row = models.WishlistItem(user_id, product_id, now_iso())
        result = await self._call(
            self._cols[WISHLISTS].update_one,
            {"_id": _pair_id(user_id, product_id)},
            {"$setOnInsert": models.to_dict(row)},
            upsert=True,
        )
        if result.upserted_id is None:
            return False
        await self._log(
            await self._actor(actor, user_id), ActionType.WISHLIST_ADD,
            f'Added "{product.name}" to wishlist.',
            entity_type="product", entity_id=product_id,
        )
        return True

    async def remove_from_wishlist(self, user_id: str, product_id: str, actor: Actor = None) -> bool:
        result = await self._call(self._cols[WISHLISTS].delete_one, {"_id": _pair_id(user_id, product_id)})
        if not result.deleted_count:
            return False
        product = await self._get(PRODUCTS, models.Product, product_id)
        await self._log(
            await self._actor(actor, user_id), ActionType.WISHLIST_REMOVE,
            f'Removed "{product.name if product else product_id}" from wishlist.',
            entity_type="product", entity_id=product_id,
        )
        return True

    async def is_in_wishlist(self, user_id: str, product_id: str) -> bool:
        return await self._exists(WISHLISTS, {"_id": _pair_id(user_id, product_id)})

    async def get_saved_jobs(self, user_id: str) -> List[models.Job]:
        rows = await self._all(SAVED_JOBS, models.SavedJobItem, {"user_id": user_id}, sort=[("added_at", -1)])
        jobs = await self._all(JOBS, models.Job, {"_id": {"$in": [s.job_id for s in rows]}})
        by_id = {j.id: j for j in jobs}
        return [by_id[s.job_id] for s in rows if s.job_id in by_id]

    async def add_to_saved_jobs(self, user_id: str, job_id: str, actor: Actor = None) -> bool:
        job = await self._get(JOBS, models.Job, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        row = models.SavedJobItem(user_id, job_id, now_iso())
        result = await self._call(
            self._cols[SAVED_JOBS].update_one,
            {"_id": _pair_id(user_id, job_id)},
            {"$setOnInsert": models.to_dict(row)},
            upsert=True,
        )
        if result.upserted_id is None:
            return False
        await self._log(
            await self._actor(actor, user_id), ActionType.SAVED_JOB_ADD,
            f'Saved job "{job.title}".',
            entity_type="job", entity_id=job_id,
        )
        return True

    async def remove_from_saved_jobs(self, user_id: str, job_id: str, actor: Actor = None) -> bool:
        result = await self._call(self._cols[SAVED_JOBS].delete_one, {"_id": _pair_id(user_id, job_id)})
        if not result.deleted_count:
            return False
        job = await self._get(JOBS, models.Job, job_id)
        await self._log(
            await self._actor(actor, user_id), ActionType.SAVED_JOB_REMOVE,
            f'Removed saved job "{job.title if job else job_id}".',
            entity_type="job", entity_id=job_id,
        )
        return True

    async def is_job_saved(self, user_id: str, job_id: str) -> bool:
        return await self._exists(SAVED_JOBS, {"_id": _pair_id(user_id, job_id)})

    # ---------------------------
    # Recently viewed & theme
    # ---------------------------

    async def _viewed_items(self, user_id: str) -> List[models.RecentlyViewedItem]:
        doc = await self._call(self._cols[RECENTLY_VIEWED].find_one, {"_id": user_id})
        return [models.from_dict(models.RecentlyViewedItem, it) for it in (doc or {}).get("items", [])]

    async def get_recently_viewed(self, user_id: str) -> List[models.Product]:
        items = await self._viewed_items(user_id)
        products = await self._all(PRODUCTS, models.Product, {"_id": {"$in": [it.product_id for it in items]}})
        by_id = {p.id: p for p in products}
        return [by_id[it.product_id] for it in items if it.product_id in by_id]

    async def add_recently_viewed(self, user_id: str, product_id: str) -> None:
        if not await self._exists(PRODUCTS, {"_id": product_id}):
            raise NotFound(f"Product {product_id} not found")
        items = engine.push_recently_viewed(await self._viewed_items(user_id), product_id)
        await self._call(
            self._cols[RECENTLY_VIEWED].replace_one,
            {"_id": user_id},
            {"_id": user_id, "items": [models.to_dict(it) for it in items]},
            upsert=True,
        )
        await self._secondary(
            f"views of product {product_id}",
            self._call(self._cols[PRODUCTS].update_one, {"_id": product_id}, {"$inc": {"views": 1}}),
        )

    async def get_global_theme(self) -> str:
        doc = await self._call(self._cols[SETTINGS].find_one, {"_id": THEME_ID})
        return (doc or {}).get("value") or seed.DEFAULT_THEME

    async def set_global_theme(self, theme: str) -> None:
        if theme not in models.THEMES:
            raise ValidationFailed(f"Unknown theme {theme!r}")
        await self._call(
            self._cols[SETTINGS].replace_one,
            {"_id": THEME_ID},
            {"_id": THEME_ID, "value": theme},
            upsert=True,
        )

    # ---------------------------
    # Jobs
    # ---------------------------

    async def _expire_due_jobs(self) -> None:
        open_jobs = await self._all(JOBS, models.Job, {"status": "open"})
        _, expired = engine.expire_due_jobs(open_jobs, now_iso())
        for job in expired:
            # conditional so two readers racing on the same job notify once
            result = await self._call(
                self._cols[JOBS].update_one,
                {"_id": job.id, "status": "open"},
                {"$set": {"status": "expired"}},
            )
            if result.modified_count:
                await self._notify("job_expired", FanOutContext(job))
        if expired:
            _logger.info(f"Expired {len(expired)} job(s) past their deadline")

    async def get_jobs(
        self,
        status: Optional[str] = None,
        created_by_id: Optional[str] = None,
        accepted_by_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[models.Job]:
        await self._expire_due_jobs()
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if created_by_id:
            query["created_by_id"] = created_by_id
        if accepted_by_id:
            query["accepted_by_id"] = accepted_by_id
        if user_id:
            query["$or"] = [{"created_by_id": user_id}, {"accepted_by_id": user_id}]
        return await self._all(JOBS, models.Job, query, sort=NEWEST)

    async def find_job_by_id(self, job_id: str) -> Optional[models.Job]:
        await self._expire_due_jobs()
        return await self._get(JOBS, models.Job, job_id)

    async def add_job(self, job: models.Job, actor: Actor = None) -> models.Job:
        engine.validate_job(replace(job, status="open"))
        creator = await self._require_user(job.created_by_id)
        category = await self._get(JOB_CATEGORIES, models.JobCategory, job.category_id)
        if category is None:
            raise NotFound(f"Job category {job.category_id} not found")
        await self._expire_due_jobs()
        mine = await self._all(JOBS, models.Job, {"created_by_id": creator.id, "status": "open"})
        created = engine.open_job(job, creator, category, mine, await self.get_job_settings())
        await self._call(self._cols[JOBS].insert_one, _doc(created))
        await self._refresh_user_stats([creator.id])
        await self._log(
            actor or engine.actor_for(creator), ActionType.JOB_CREATE,
            f'Created job "{created.title}".',
            entity_type="job", entity_id=created.id,
        )
        return created

    async def update_job(self, job: models.Job, actor: Actor = None) -> models.Job:
        engine.validate_job(job)
        old = await self._get(JOBS, models.Job, job.id)
        if old is None:
            raise NotFound(f"Job {job.id} not found")
        category = None
        if job.category_id != old.category_id:
            category = await self._get(JOB_CATEGORIES, models.JobCategory, job.category_id)
            if category is None:
                raise NotFound(f"Job category {job.category_id} not found")
        updated = engine.merge_job_update(old, job, category, await self.get_job_settings())
        await self._call(self._cols[JOBS].replace_one, {"_id": updated.id}, _doc(updated))
        await self._refresh_user_stats([old.created_by_id, old.accepted_by_id, updated.accepted_by_id])
        if old.status != "completed" and updated.status == "completed":
            await self._notify("job_completed", FanOutContext(updated, actor_id=actor.id if actor else None))
        action, description = engine.describe_job_update(old, updated)
        await self._log(actor, action, description, entity_type="job", entity_id=updated.id)
        return updated

    async def accept_job(self, job_id: str, acceptor_id: str, actor: Actor = None) -> Optional[models.Job]:
        job = await self.find_job_by_id(job_id)
        if job is None or job.status != "open" or job.created_by_id == acceptor_id:
            return None
        acceptor = await self._require_user(acceptor_id)
        accepted = replace(
            job,
            status="accepted",
            accepted_by_id=acceptor_id,
            accepted_by_name=_display_name(acceptor),
            accepted_at=now_iso(),
        )
        result = await self._call(
            self._cols[JOBS].update_one,
            {"_id": job_id, "status": "open"},
            {"$set": {
                "status": accepted.status,
                "accepted_by_id": accepted.accepted_by_id,
                "accepted_by_name": accepted.accepted_by_name,
                "accepted_at": accepted.accepted_at,
            }},
        )
        if not result.modified_count:
            return None
        await self._notify("job_accepted", FanOutContext(accepted, actor_id=acceptor_id))
        await self._log(
            actor or engine.actor_for(acceptor), ActionType.JOB_ACCEPT,
            f'"{accepted.accepted_by_name}" accepted job "{accepted.title}".',
            entity_type="job", entity_id=job_id,
        )
        return accepted

    async def complete_job(self, job_id: str, user_id: str, actor: Actor = None) -> Optional[models.Job]:
        job = await self._get(JOBS, models.Job, job_id)
        if job is None or job.status != "accepted":
            return None
        if job.created_by_id != user_id:
            raise ValidationFailed("Only the job's creator can mark it completed")
        result = await self._call(
            self._cols[JOBS].update_one,
            {"_id": job_id, "status": "accepted"},
            {"$set": {"status": "completed"}},
        )
        if not result.modified_count:
            return None
        completed = replace(job, status="completed")
        await self._refresh_user_stats([completed.created_by_id, completed.accepted_by_id])
        await self._notify("job_completed", FanOutContext(completed, actor_id=user_id))
        await self._log(
            await self._actor(actor, user_id), ActionType.JOB_COMPLETE,
            f'Marked job "{completed.title}" as completed.',
            entity_type="job", entity_id=job_id,
        )
        return completed

    async def delete_job(self, job_id: str, actor: Actor = None) -> bool:
        job = await self._get(JOBS, models.Job, job_id)
        if job is None:
            return False
        await self._call(self._cols[JOBS].delete_one, {"_id": job_id})
        await self._call(self._cols[CHAT_MESSAGES].delete_many, {"job_id": job_id})
        await self._call(self._cols[SAVED_JOBS].delete_many, {"job_id": job_id})
        await self._refresh_user_stats([job.created_by_id, job.accepted_by_id])
        await self._log(
            actor, ActionType.JOB_DELETE,
            engine.describe_deletion("job", job.title, job_id),
            entity_type="job", entity_id=job_id,
        )
        return True

    # ---------------------------
    # Chat
    # ---------------------------

    async def get_chat_for_job(self, job_id: str, viewer_id: str) -> List[models.ChatMessage]:
        job = await self._get(JOBS, models.Job, job_id)
        if job is None:
            return []
        engine.check_chat_access(job, viewer_id)
        return await self._all(CHAT_MESSAGES, models.ChatMessage, {"job_id": job_id}, sort=[("timestamp", 1)])

    async def send_message(self, job_id: str, sender_id: str, text: str) -> models.ChatMessage:
        job = await self._get(JOBS, models.Job, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        sender = await self._get(USERS, models.User, sender_id)
        message = engine.new_chat_message(job, sender_id, sender and _display_name(sender), text)
        await self._call(self._cols[CHAT_MESSAGES].insert_one, _doc(message))
        await self._notify(
            "new_message", FanOutContext(job, actor_id=sender_id, actor_name=message.sender_name)
        )
        return message

    # ---------------------------
    # Job reviews
    # ---------------------------

    async def add_job_review(self, review: models.JobReview) -> models.JobReview:
        job = await self._get(JOBS, models.Job, review.job_id)
        existing = await self._all(
            JOB_REVIEWS, models.JobReview, {"job_id": review.job_id, "reviewer_id": review.reviewer_id}
        )
        created = engine.check_job_review(job, review, existing)
        await self._call(self._cols[JOB_REVIEWS].insert_one, _doc(created))
        flag = "creator_has_reviewed" if created.reviewer_id == job.created_by_id else "acceptor_has_reviewed"
        await self._secondary(
            f"review flag of job {job.id}",
            self._call(self._cols[JOBS].update_one, {"_id": job.id}, {"$set": {flag: True}}),
        )
        await self._refresh_user_stats([created.reviewee_id])
        await self._notify(
            "review_received",
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
        return await self._all(JOB_REVIEWS, models.JobReview, {"job_id": job_id}, sort=NEWEST)

    async def get_reviews_for_jobs(self, job_ids: Sequence[str]) -> List[models.JobReview]:
        return await self._all(JOB_REVIEWS, models.JobReview, {"job_id": {"$in": list(job_ids)}}, sort=NEWEST)

    async def get_reviews_about_user(self, user_id: str) -> List[models.JobReview]:
        return await self._all(JOB_REVIEWS, models.JobReview, {"reviewee_id": user_id}, sort=NEWEST)

    # ---------------------------
    # Job settings
    # ---------------------------

    async def get_job_settings(self) -> models.JobSettings:
        doc = await self._call(self._cols[SETTINGS].find_one, {"_id": JOB_SETTINGS_ID})
        return models.from_dict(models.JobSettings, doc) if doc else seed.DEFAULT_JOB_SETTINGS

    async def update_job_settings(self, settings: models.JobSettings, actor: Actor = None) -> models.JobSettings:
        engine.validate_job_settings(settings)
        await self._call(
            self._cols[SETTINGS].replace_one,
            {"_id": JOB_SETTINGS_ID},
            dict(models.to_dict(settings), _id=JOB_SETTINGS_ID),
            upsert=True,
        )
        await self._log(
            actor, ActionType.JOB_SETTINGS_UPDATE,
            engine.describe_job_settings(settings),
            entity_type="jobSettings",
        )
        return settings

    # ---------------------------
    # Notifications
    # ---------------------------

    async def add_notification(self, notification: models.Notification) -> models.Notification:
        created = engine.stamp_notification(notification)
        await self._call(self._cols[NOTIFICATIONS].insert_one, _doc(created))
        return created

    async def get_notifications(self, user_id: str) -> List[models.Notification]:
        return await self._all(NOTIFICATIONS, models.Notification, {"user_id": user_id}, sort=NEWEST)

    async def mark_notification_as_read(self, user_id: str, notification_id: str) -> bool:
        result = await self._call(
            self._cols[NOTIFICATIONS].update_one,
            {"_id": notification_id, "user_id": user_id},
            {"$set": {"is_read": True}},
        )
        return result.matched_count > 0

    async def mark_all_notifications_as_read(self, user_id: str) -> int:
        result = await self._call(
            self._cols[NOTIFICATIONS].update_many,
            {"user_id": user_id, "is_read": False},
            {"$set": {"is_read": True}},
        )
        return result.modified_count

    # ---------------------------
    # Activity log
    # ---------------------------

    async def add_activity_log(self, log: models.ActivityLog) -> models.ActivityLog:
        created = engine.stamp_log(log)
        await self._call(self._cols[ACTIVITY_LOGS].insert_one, _doc(created))
        return created

    async def get_activity_logs(
        self, actor_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[models.ActivityLog]:
        query = {"actor_id": actor_id} if actor_id else {}
        return await self._all(ACTIVITY_LOGS, models.ActivityLog, query, sort=[("timestamp", -1)], limit=limit or 0)
