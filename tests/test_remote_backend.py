import os
import tempfile
import unittest
from unittest.mock import patch

import mongomock
from backend_cases import BackendCases
from pymongo.errors import PyMongoError

from dataservice import models
from dataservice.config import Settings
from dataservice.database import BlobStore, LocalStore
from dataservice.errors import StorageUnavailable
from dataservice.remote import CARTS, JOBS, PRODUCTS, SETTINGS, USERS, WISHLISTS, RemoteBackend


class RemoteBackendTestCase(BackendCases, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        # Images still go to a local sqlite blob store
        self.temp_dir = tempfile.TemporaryDirectory()
        self.blobs = BlobStore(LocalStore(os.path.join(self.temp_dir.name, "blobs.sqlite")))
        self.client = mongomock.MongoClient()
        self.db = self.client["marketplace"]

    def tearDown(self):
        self.temp_dir.cleanup()

    async def make_service(self):
        return RemoteBackend(self.db, self.blobs, client=self.client)

    async def store_job_expiry(self, job_id, expires_at):
        self.db[JOBS].update_one({"_id": job_id}, {"$set": {"expires_at": expires_at}})

    # ---------- Remote only ----------

    async def test_from_settings_requires_url(self):
        with self.assertRaises(StorageUnavailable):
            RemoteBackend.from_settings(Settings(), self.blobs)

    async def test_seed_marker_is_shared_by_instances(self):
        self.assertIsNotNone(self.db[SETTINGS].find_one({"_id": "seed_marker"}))
        other = RemoteBackend(self.db, self.blobs)
        self.assertFalse(await other.initialize_data())
        self.assertEqual(self.db[USERS].count_documents({"role": "admin"}), 1)

    async def test_document_keys(self):
        product = await self._product()
        await self.service.add_to_cart(self.alice.id, product.id)
        await self.service.add_to_wishlist(self.alice.id, product.id)

        self.assertIsNotNone(self.db[PRODUCTS].find_one({"_id": product.id}))
        self.assertEqual(self.db[CARTS].find_one({"_id": self.alice.id})["user_id"], self.alice.id)
        pair = self.db[WISHLISTS].find_one({"_id": f"{self.alice.id}:{product.id}"})
        self.assertEqual(pair["product_id"], product.id)

    async def test_driver_error_on_primary_write_is_storage_unavailable(self):
        with patch.object(
            self.service._cols[PRODUCTS], "insert_one", side_effect=PyMongoError("connection reset")
        ):
            with self.assertRaises(StorageUnavailable):
                await self._product()
        self.assertEqual(await self.service.get_products(), [])

    async def test_failed_aggregate_write_is_logged_and_repaired_on_read(self):
        product = await self._product()
        with patch.object(
            self.service._cols[PRODUCTS], "update_one", side_effect=PyMongoError("timeout")
        ):
            with self.assertLogs("dataservice.remote", level="WARNING") as logs:
                review = await self.service.add_review(
                    models.Review(product_id=product.id, user_id=self.bob.id, rating=4)
                )
        self.assertTrue(review.id)
        self.assertIn("did not complete", "\n".join(logs.output))
        self.assertEqual(self.db[PRODUCTS].find_one({"_id": product.id})["review_count"], 0)

        repaired = await self.service.find_product_by_id(product.id)
        self.assertEqual(repaired.review_count, 1)
        self.assertEqual(repaired.average_rating, 4.0)
        self.assertEqual(self.db[PRODUCTS].find_one({"_id": product.id})["review_count"], 1)

    async def test_failed_stats_write_is_rebuilt_from_jobs(self):
        job = await self._job()
        await self.service.accept_job(job.id, self.bob.id)
        with patch.object(self.service._cols[USERS], "update_one", side_effect=PyMongoError("timeout")):
            with self.assertLogs("dataservice.remote", level="WARNING"):
                await self.service.complete_job(job.id, self.alice.id)
        self.assertEqual(self.db[USERS].find_one({"_id": self.bob.id})["jobs_completed_count"], 0)

        bob = await self.service.find_user_by_id(self.bob.id)
        self.assertEqual(bob.jobs_completed_count, 1)
        self.assertEqual(bob.badges, ("first-job-done",))

    async def test_close_releases_client(self):
        await self.service.close()
        self.assertIsNone(self.service._client)


if __name__ == "__main__":
    unittest.main()
