import os
import sys
import unittest
from dataclasses import replace

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from dataservice import engine, models  # noqa: E402
from dataservice.errors import Conflict, NotFound, ValidationFailed  # noqa: E402
from utils.clock import canonical_instant, now_iso, shift_iso  # noqa: E402


def _job(**kw):
    base = dict(
        id="job-1",
        title="Paint the shed",
        status="completed",
        created_by_id="u1",
        created_by_name="Una",
        accepted_by_id="u2",
        accepted_by_name="Dev",
        category_id="c1",
    )
    base.update(kw)
    return models.Job(**base)


class RatingTestCase(unittest.TestCase):
    def test_round1_is_half_up(self):
        self.assertEqual(engine.round1(4.25), 4.3)
        self.assertEqual(engine.round1(4.24), 4.2)
        self.assertEqual(engine.round1(3.0), 3.0)

    def test_recompute_rating(self):
        self.assertEqual(engine.recompute_rating([]), (0.0, 0))
        self.assertEqual(engine.recompute_rating([5, 3]), (4.0, 2))
        self.assertEqual(engine.recompute_rating([5, 4, 4]), (4.3, 3))

    def test_fold_matches_recompute(self):
        ratings = [5, 3, 4, 1]
        summary = engine.RatingSummary(0.0, 0)
        for i, rating in enumerate(ratings, start=1):
            summary = engine.fold_rating(summary, rating)
            expected = engine.recompute_rating(ratings[:i])
            self.assertEqual(summary.review_count, expected.review_count)
            self.assertAlmostEqual(summary.average_rating, expected.average_rating, delta=0.05)

        summary = engine.unfold_rating(summary, 1)
        self.assertEqual(summary.review_count, 3)
        self.assertAlmostEqual(summary.average_rating, 4.0, delta=0.15)
        self.assertEqual(engine.unfold_rating(engine.RatingSummary(5.0, 1), 5), (0.0, 0))

    def test_validate_rating(self):
        self.assertEqual(engine.validate_rating(1), 1)
        for bad in (0, 6, 4.5, True, "5"):
            with self.assertRaises(ValidationFailed):
                engine.validate_rating(bad)


class JobStatsTestCase(unittest.TestCase):
    def test_badge_thresholds(self):
        self.assertEqual(engine.derive_badges(0, 0, 0.0), ())
        self.assertEqual(engine.derive_badges(1, 0, 0.0), (engine.FIRST_JOB_DONE,))
        self.assertNotIn(engine.COMMUNITY_STAR, engine.derive_badges(4, 0, 0.0))
        self.assertIn(engine.COMMUNITY_STAR, engine.derive_badges(5, 0, 0.0))
        self.assertIn(engine.TOP_RATED, engine.derive_badges(1, 1, 4.5))
        self.assertNotIn(engine.TOP_RATED, engine.derive_badges(1, 1, 4.4))
        self.assertNotIn(engine.TOP_RATED, engine.derive_badges(1, 0, 5.0))

    def test_compute_job_stats(self):
        jobs = [
            _job(id="a"),
            _job(id="b", status="open", accepted_by_id=None),
            _job(id="c", created_by_id="u3", accepted_by_id="u1"),
        ]
        reviews = [
            models.JobReview(job_id="a", reviewer_id="u2", reviewee_id="u1", rating=5),
            models.JobReview(job_id="c", reviewer_id="u3", reviewee_id="u1", rating=4),
            models.JobReview(job_id="a", reviewer_id="u1", reviewee_id="u2", rating=1),
        ]
        stats = engine.compute_job_stats("u1", jobs, reviews)
        self.assertEqual(stats.jobs_created_count, 2)
        self.assertEqual(stats.jobs_completed_count, 2)
        self.assertEqual(stats.job_review_count, 2)
        self.assertEqual(stats.average_job_rating, 4.5)
        self.assertEqual(stats.badges, (engine.FIRST_JOB_DONE, engine.TOP_RATED))

        user = engine.apply_job_stats(models.User(id="u1"), stats)
        self.assertEqual(engine.stats_of(user), stats)


class FanOutTestCase(unittest.TestCase):
    def test_actor_is_never_notified(self):
        job = _job(status="accepted")
        self.assertEqual(engine.fan_out("job_accepted", engine.FanOutContext(job, actor_id="u1")), [])
        notes = engine.fan_out("job_accepted", engine.FanOutContext(job, actor_id="u2"))
        self.assertEqual([(n.user_id, n.type, n.is_read) for n in notes], [("u1", "job_accepted", False)])

    def test_new_message_goes_to_counterpart(self):
        ctx = engine.FanOutContext(_job(status="accepted"), actor_id="u1", actor_name="Una")
        (note,) = engine.fan_out("new_message", ctx)
        self.assertEqual(note.user_id, "u2")
        self.assertIn("Una", note.message)
        self.assertEqual(note.link, "/jobs/job-1/chat")

    def test_review_received(self):
        ctx = engine.FanOutContext(_job(), actor_id="u1", actor_name="Una", rating=4, reviewee_id="u2")
        (note,) = engine.fan_out("review_received", ctx)
        self.assertEqual(note.user_id, "u2")
        self.assertIn("4-star", note.message)

    def test_stamp_notification_validates_type(self):
        stamped = engine.stamp_notification(models.Notification(user_id="u1", is_read=True))
        self.assertTrue(stamped.id)
        self.assertFalse(stamped.is_read)
        with self.assertRaises(ValidationFailed):
            engine.stamp_notification(models.Notification(user_id="u1", type="spam"))


class ActivityLogTestCase(unittest.TestCase):
    def test_build_log_defaults_to_system_actor(self):
        entry = engine.build_log(None, engine.ActionType.PRODUCT_CREATE, "Created.")
        self.assertEqual(entry.actor_id, engine.SYSTEM_ACTOR.id)
        self.assertEqual(entry.actor_role, "admin")
        self.assertTrue(entry.timestamp.endswith("Z"))

    def test_describe_job_update(self):
        job = _job(status="open", accepted_by_id=None)
        action, text = engine.describe_job_update(job, replace(job, is_verified=True))
        self.assertEqual(action, engine.ActionType.JOB_VERIFICATION)
        self.assertEqual(text, 'Verified job: "Paint the shed".')

        action, text = engine.describe_job_update(job, replace(job, title="Paint it", is_verified=True))
        self.assertEqual(action, engine.ActionType.JOB_UPDATE)
        self.assertIn("Verified.", text)

        action, text = engine.describe_job_update(job, job)
        self.assertEqual(text, 'No significant changes detected for job "Paint the shed".')

    def test_describe_product_update_names_categories(self):
        old = models.Product(id="p", name="Lamp", price=10.0, stock=1, category_id="c1")
        new = replace(old, price=12.5, category_id="c2")
        text = engine.describe_product_update(old, new, {"c1": "Lights", "c2": "Decor"})
        self.assertIn("Price changed from $10.00 to $12.50.", text)
        self.assertIn('Category changed from "Lights" to "Decor".', text)


class EntityRulesTestCase(unittest.TestCase):
    def test_slugify(self):
        self.assertEqual(engine.slugify("  Home & Garden "), "home--garden")
        self.assertEqual(engine.slugify("Books"), "books")

    def test_image_ids(self):
        product = engine.normalize_image_ids(
            models.Product(primary_image_id="a", additional_image_ids=("a", "", "b", "b", "c"))
        )
        self.assertEqual(product.additional_image_ids, ("b", "c"))
        self.assertEqual(product.image_ids, ("a", "b", "c"))
        self.assertEqual(
            engine.released_image_ids(product, replace(product, primary_image_id="d")), ["a"]
        )
        self.assertEqual(engine.released_image_ids(product, None), ["a", "b", "c"])

    def test_open_job_quota_and_expiry(self):
        creator = models.User(id="u1", email="una@example.com", name="Una")
        category = models.JobCategory(id="c1", name="Tutoring")
        settings = models.JobSettings(max_jobs_per_user=2, max_timer_duration_days=3)

        created = engine.open_job(models.Job(title="Maths"), creator, category, [], settings)
        self.assertEqual(created.status, "open")
        self.assertEqual(created.category_name, "Tutoring")
        self.assertEqual(created.created_by_name, "Una")
        self.assertEqual(created.expires_at, shift_iso(created.created_at, days=3))

        mine = [_job(status="open", accepted_by_id=None, created_by_id="u1")] * 2
        with self.assertRaises(ValidationFailed):
            engine.open_job(models.Job(title="Maths"), creator, category, mine, settings)
        with self.assertRaises(ValidationFailed):
            engine.open_job(
                models.Job(title="Maths", expires_at=shift_iso(now_iso(), days=-1)), creator, category, [], settings
            )
        with self.assertRaises(ValidationFailed):
            engine.open_job(
                models.Job(title="Maths", expires_at=shift_iso(now_iso(), days=4)), creator, category, [], settings
            )

    def test_merge_job_update_keeps_ownership(self):
        old = _job(status="accepted", creator_has_reviewed=True)
        merged = engine.merge_job_update(old, replace(old, created_by_id="intruder", creator_has_reviewed=False))
        self.assertEqual(merged.created_by_id, "u1")
        self.assertTrue(merged.creator_has_reviewed)

        reopened = engine.merge_job_update(old, replace(old, status="open"))
        self.assertIsNone(reopened.accepted_by_id)
        with self.assertRaises(ValidationFailed):
            engine.merge_job_update(old, replace(old, accepted_by_id=None))

    def test_expire_due_jobs(self):
        now = now_iso()
        due = _job(id="due", status="open", accepted_by_id=None, expires_at=shift_iso(now, seconds=-1))
        later = _job(id="later", status="open", accepted_by_id=None, expires_at=shift_iso(now, days=1))
        done = _job(id="done", expires_at=shift_iso(now, days=-2))
        jobs, expired = engine.expire_due_jobs([due, later, done], now)
        self.assertEqual([j.status for j in jobs], ["expired", "open", "completed"])
        self.assertEqual([j.id for j in expired], ["due"])

    def test_expiry_is_canonicalized(self):
        self.assertEqual(canonical_instant("2030-05-01"), "2030-05-01T00:00:00.000Z")
        self.assertEqual(canonical_instant("2030-05-01T10:30:00"), "2030-05-01T10:30:00.000Z")
        self.assertEqual(canonical_instant("2030-05-01T12:30:00+02:00"), "2030-05-01T10:30:00.000Z")
        self.assertEqual(canonical_instant("2030-05-01T10:30:00.250Z"), "2030-05-01T10:30:00.250Z")
        with self.assertRaises(ValueError):
            canonical_instant("tomorrow")

        self.assertIsNone(engine.normalize_expiry(""))
        with self.assertRaises(ValidationFailed):
            engine.normalize_expiry("tomorrow")

    def test_merge_job_update_checks_new_expiry(self):
        settings = models.JobSettings(max_timer_duration_days=3)
        old = _job(status="open", accepted_by_id=None, expires_at=shift_iso(now_iso(), days=1))
        kept = engine.merge_job_update(old, replace(old, expires_at=None), settings=settings)
        self.assertEqual(kept.expires_at, old.expires_at)

        later = shift_iso(now_iso(), days=2)
        moved = engine.merge_job_update(old, replace(old, expires_at=later[:19]), settings=settings)
        self.assertEqual(moved.expires_at, later[:19] + ".000Z")
        for bad in ("2025-12-01", "whenever", shift_iso(now_iso(), days=4)):
            with self.assertRaises(ValidationFailed):
                engine.merge_job_update(old, replace(old, expires_at=bad), settings=settings)

        # a finished job may carry a past expiry
        done = engine.merge_job_update(_job(), replace(_job(), expires_at="2025-12-01"))
        self.assertEqual(done.expires_at, "2025-12-01T00:00:00.000Z")

    def test_expire_due_jobs_reads_naive_and_skips_unreadable(self):
        now = now_iso()
        naive = _job(id="naive", status="open", accepted_by_id=None, expires_at="2000-01-01T00:00:00")
        odd = _job(id="odd", status="open", accepted_by_id=None, expires_at="soon")
        jobs, expired = engine.expire_due_jobs([naive, odd], now)
        self.assertEqual([j.status for j in jobs], ["expired", "open"])
        self.assertEqual([j.id for j in expired], ["naive"])

    def test_filter_jobs_newest_first(self):
        first = _job(id="a", created_at="2025-01-01T00:00:00.000Z")
        second = _job(id="b", created_at="2025-01-02T00:00:00.000Z", accepted_by_id="u9")
        self.assertEqual([j.id for j in engine.filter_jobs([first, second])], ["b", "a"])
        self.assertEqual([j.id for j in engine.filter_jobs([first, second], user_id="u2")], ["a"])
        self.assertEqual(engine.filter_jobs([first, second], status="open"), [])

    def test_chat_rules(self):
        with self.assertRaises(ValidationFailed):
            engine.new_chat_message(_job(status="open", accepted_by_id=None), "u1", "Una", "hi")
        with self.assertRaises(ValidationFailed):
            engine.new_chat_message(_job(status="accepted"), "u3", "Eve", "hi")
        with self.assertRaises(ValidationFailed):
            engine.new_chat_message(_job(status="accepted"), "u1", "Una", "   ")
        message = engine.new_chat_message(_job(status="accepted"), "u2", None, " hi ")
        self.assertEqual((message.sender_name, message.text), ("Dev", "hi"))

    def test_check_job_review(self):
        job = _job()
        review = engine.check_job_review(job, models.JobReview(job_id="job-1", reviewer_id="u2", rating=5), [])
        self.assertEqual((review.reviewee_id, review.reviewee_name, review.reviewer_name), ("u1", "Una", "Dev"))

        with self.assertRaises(Conflict):
            engine.check_job_review(job, models.JobReview(job_id="job-1", reviewer_id="u2", rating=4), [review])
        with self.assertRaises(NotFound):
            engine.check_job_review(None, models.JobReview(job_id="x", reviewer_id="u2", rating=4), [])
        with self.assertRaises(ValidationFailed):
            engine.check_job_review(job, models.JobReview(job_id="job-1", reviewer_id="u3", rating=4), [])
        with self.assertRaises(ValidationFailed):
            engine.check_job_review(
                _job(status="accepted"), models.JobReview(job_id="job-1", reviewer_id="u2", rating=4), []
            )


class CartAndOrderTestCase(unittest.TestCase):
    def setUp(self):
        self.product = models.Product(id="p1", name="Lamp", price=20.0, stock=1)
        self.cart = models.Cart(user_id="u1")

    def test_add_cart_item_clamps(self):
        cart, limited = engine.add_cart_item(self.cart, self.product, 1)
        self.assertFalse(limited)
        cart, limited = engine.add_cart_item(cart, self.product, 1)
        self.assertTrue(limited)
        self.assertEqual(cart.items[0].quantity, 1)

        cart, limited = engine.add_cart_item(cart, replace(self.product, stock=0), 1)
        self.assertTrue(limited)
        self.assertEqual(cart.items, ())
        with self.assertRaises(ValidationFailed):
            engine.add_cart_item(cart, self.product, 0)

    def test_existing_line_keeps_its_price(self):
        cart, _ = engine.add_cart_item(self.cart, replace(self.product, stock=5), 1)
        cart, _ = engine.add_cart_item(cart, replace(self.product, stock=5, price=99.0), 1)
        self.assertEqual((cart.items[0].quantity, cart.items[0].price), (2, 20.0))

    def test_set_quantity_keeps_position(self):
        other = models.Product(id="p2", name="Chair", price=5.0, stock=9)
        cart, _ = engine.add_cart_item(self.cart, replace(self.product, stock=9), 1)
        cart, _ = engine.add_cart_item(cart, other, 1)
        cart, limited = engine.set_cart_item_quantity(cart, replace(self.product, stock=9), "p1", 4)
        self.assertFalse(limited)
        self.assertEqual([(it.product_id, it.quantity) for it in cart.items], [("p1", 4), ("p2", 1)])
        cart, _ = engine.set_cart_item_quantity(cart, None, "p1", 0)
        self.assertEqual([it.product_id for it in cart.items], ["p2"])

    def test_reconcile_cart(self):
        products = {"p1": replace(self.product, stock=2)}
        cart = replace(
            self.cart,
            items=(models.CartItem("p1", 5, 20.0),),
            saved_for_later=(models.CartItem("p1", 4, 20.0),),
        )
        cart, limited = engine.reconcile_cart(cart, products)
        self.assertTrue(limited)
        self.assertEqual(cart.items[0].quantity, 2)
        self.assertEqual(cart.saved_for_later[0].quantity, 4)

        with self.assertRaises(NotFound):
            engine.reconcile_cart(replace(self.cart, saved_for_later=(models.CartItem("ghost", 1),)), products)
        with self.assertRaises(ValidationFailed):
            engine.reconcile_cart(replace(self.cart, items=(models.CartItem("p1", 0),)), products)

    def test_freeze_order(self):
        products = {"p1": replace(self.product, stock=5)}
        order = models.Order(
            user_id="u1",
            items=(models.OrderItem("p1", 2, 0.1), models.OrderItem("p1", 1, 0.2)),
        )
        frozen = engine.freeze_order(order, products)
        self.assertEqual(frozen.total_amount, 0.4)
        self.assertEqual(frozen.items[0].name, "Lamp")
        self.assertEqual(engine.order_quantities(frozen.items), {"p1": 3})

        with self.assertRaises(ValidationFailed):
            engine.freeze_order(replace(order, items=(models.OrderItem("p1", 6, 1.0),)), products)
        with self.assertRaises(NotFound):
            engine.freeze_order(replace(order, items=(models.OrderItem("nope", 1, 1.0),)), products)
        with self.assertRaises(ValidationFailed):
            engine.freeze_order(replace(order, items=()), products)


class AddressAndViewedTestCase(unittest.TestCase):
    def test_address_defaults(self):
        user = models.User(id="u1")
        user, first = engine.add_address(user, models.Address(city="Oslo"))
        user, second = engine.add_address(user, models.Address(city="Rome", is_default=True))
        self.assertEqual([a.is_default for a in user.addresses], [False, True])

        user, removed = engine.remove_address(user, second.id)
        self.assertTrue(removed)
        self.assertTrue(user.addresses[0].is_default)
        self.assertEqual(engine.set_default_address(user, "missing"), user)

    def test_push_recently_viewed(self):
        items = ()
        for product_id in "abcdef":
            items = engine.push_recently_viewed(items, product_id)
        items = engine.push_recently_viewed(items, "c")
        self.assertEqual([it.product_id for it in items], ["c", "f", "e", "d", "b"])


if __name__ == "__main__":
    unittest.main()
