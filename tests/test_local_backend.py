import os
import tempfile
import unittest

from backend_cases import BackendCases

from dataservice import models
from dataservice.config import Settings
from dataservice.database import LocalStore
from dataservice.errors import StorageUnavailable, ValidationFailed
from dataservice.local import JOBS, SEED_MARKER, LocalBackend


class LocalBackendTestCase(BackendCases, unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        # Fresh sqlite file per test
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.sqlite")

    def tearDown(self):
        self.temp_dir.cleanup()

    async def make_service(self):
        return LocalBackend(LocalStore(self.db_path))

    async def store_job_expiry(self, job_id, expires_at):
        async with self.service.store.transaction() as tx:
            rows = await tx.load(JOBS, [])
            for row in rows:
                if row["id"] == job_id:
                    row["expires_at"] = expires_at
            tx.save(JOBS, rows)

    # ---------- Local only ----------

    async def test_from_settings_uses_configured_path(self):
        backend = LocalBackend.from_settings(Settings(local_db_path=self.db_path))
        self.assertEqual(backend.store.path, self.db_path)
        self.assertFalse(await backend.initialize_data())

    async def test_seed_marker_survives_reopen(self):
        marker = await self.service.store.read(SEED_MARKER, {})
        self.assertTrue(marker["seeded"])

        reopened = LocalBackend(LocalStore(self.db_path))
        self.assertFalse(await reopened.initialize_data())
        users = await reopened.get_users()
        self.assertEqual(len([u for u in users if u.role == "admin"]), 1)

    async def test_failed_operation_writes_nothing(self):
        product = await self._product(stock=2)
        before = await self.service.store.read("products", [])
        with self.assertRaises(ValidationFailed):
            await self.service.add_order(
                models.Order(user_id=self.alice.id, items=(models.OrderItem(product.id, 3, 20.0),))
            )
        self.assertEqual(await self.service.store.read("products", []), before)
        self.assertEqual(await self.service.store.read("orders", []), [])

    async def test_unopenable_store_is_storage_unavailable(self):
        # a directory cannot be opened as a database file
        backend = LocalBackend(LocalStore(self.temp_dir.name))
        with self.assertRaises(StorageUnavailable):
            await backend.get_users()


if __name__ == "__main__":
    unittest.main()
