# baseline records written into an empty backend
from __future__ import annotations

from dataclasses import replace
from typing import List

from dataservice import models
from utils.clock import new_id, now_iso

ADMIN_EMAIL = "admin@localcommerce.com"
DEFAULT_THEME = "system"
DEFAULT_JOB_SETTINGS = models.JobSettings(max_jobs_per_user=5, max_timer_duration_days=10)

_CATEGORIES = (
    models.Category(
        name="Electronics",
        slug="electronics",
        description="Gadgets, devices, and more.",
        display_order=1,
    ),
    models.Category(
        name="Books",
        slug="books",
        description="Fiction, non-fiction, and educational.",
        display_order=2,
    ),
)

_JOB_CATEGORIES = (
    models.JobCategory(
        name="Home Help",
        slug="home-help",
        description="Cleaning, repairs and errands around the house.",
        display_order=1,
    ),
    models.JobCategory(
        name="Tutoring",
        slug="tutoring",
        description="Lessons and homework help.",
        display_order=2,
    ),
)


def admin_user() -> models.User:
    now = now_iso()
    return models.User(
        id=new_id(),
        email=ADMIN_EMAIL,
        role="admin",
        name="Administrator",
        created_at=now,
        updated_at=now,
    )


def categories() -> List[models.Category]:
    result = []
    for category in _CATEGORIES:
        now = now_iso()
        result.append(replace(category, id=new_id(), created_at=now, updated_at=now))
    return result


def job_categories() -> List[models.JobCategory]:
    result = []
    for category in _JOB_CATEGORIES:
        now = now_iso()
        result.append(replace(category, id=new_id(), created_at=now, updated_at=now))
    return result
