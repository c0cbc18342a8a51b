import json
import os
import sys
import tempfile
import unittest

import mongomock

# Ensure project src/ is on sys.path for imports
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
src_path = os.path.join(ROOT, "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from dataservice.config import LOCAL, REMOTE, Settings  # noqa: E402
from dataservice.errors import StorageUnavailable, ValidationFailed  # noqa: E402
from dataservice.remote import RemoteBackend  # noqa: E402
from dataservice.selector import DataSourceSelector  # noqa: E402


class SelectorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.settings = Settings(
            local_db_path=os.path.join(self.temp_dir.name, "db.sqlite"),
            data_source_state_path=os.path.join(self.temp_dir.name, "state", "data_source.json"),
        )
        self.client = mongomock.MongoClient()
        self.remote_calls = []

    def tearDown(self):
        self.temp_dir.cleanup()

    def _remote(self, settings, blobs):
        self.remote_calls.append(blobs)
        return RemoteBackend(self.client["marketplace"], blobs)

    def _unreachable(self, settings, blobs):
        raise StorageUnavailable("server selection timed out")

    def _stored(self):
        with open(self.settings.data_source_state_path, encoding="utf-8") as fh:
            return json.load(fh)["dataSource"]

    async def test_service_requires_open(self):
        selector = DataSourceSelector(self.settings)
        with self.assertRaises(StorageUnavailable):
            selector.service

    async def test_open_defaults_to_local_and_persists(self):
        selector = DataSourceSelector(self.settings)
        service = await selector.open()
        self.assertEqual(service.kind, LOCAL)
        self.assertIs(selector.service, service)
        self.assertEqual(self._stored(), LOCAL)
        self.assertTrue(await service.get_users())
        await selector.close()

    async def test_switch_to_remote_twice_seeds_once(self):
        selector = DataSourceSelector(self.settings, remote_factory=self._remote)
        local = await selector.open()
        remote = await selector.switch(REMOTE)
        self.assertEqual(remote.kind, REMOTE)
        self.assertIs(await selector.switch(REMOTE), remote)
        self.assertEqual(len(self.remote_calls), 1)
        self.assertIs(self.remote_calls[0], local.blobs)
        self.assertEqual(self.client["marketplace"]["users"].count_documents({}), 1)
        self.assertEqual(self._stored(), REMOTE)

        self.assertIs(await selector.switch(LOCAL), local)
        self.assertEqual(selector.current, LOCAL)
        await selector.close()

    async def test_unreachable_remote_keeps_local(self):
        selector = DataSourceSelector(self.settings, remote_factory=self._unreachable)
        local = await selector.open()
        with self.assertRaises(StorageUnavailable):
            await selector.switch(REMOTE)
        self.assertIs(selector.service, local)
        self.assertEqual(self._stored(), LOCAL)
        await selector.close()

    async def test_unconfigured_remote_is_refused(self):
        selector = DataSourceSelector(self.settings)
        await selector.open()
        with self.assertRaises(StorageUnavailable):
            await selector.switch(REMOTE)
        self.assertEqual(selector.current, LOCAL)
        await selector.close()

    async def test_open_restores_remote_choice(self):
        os.makedirs(os.path.dirname(self.settings.data_source_state_path))
        with open(self.settings.data_source_state_path, "w", encoding="utf-8") as fh:
            json.dump({"dataSource": REMOTE}, fh)

        selector = DataSourceSelector(self.settings, remote_factory=self._remote)
        self.assertEqual((await selector.open()).kind, REMOTE)
        await selector.close()

        fallback = DataSourceSelector(self.settings, remote_factory=self._unreachable)
        self.assertEqual((await fallback.open()).kind, LOCAL)
        await fallback.close()

    async def test_unknown_kind_and_corrupt_state(self):
        os.makedirs(os.path.dirname(self.settings.data_source_state_path))
        with open(self.settings.data_source_state_path, "w", encoding="utf-8") as fh:
            fh.write("not json")
        selector = DataSourceSelector(self.settings)
        self.assertEqual(selector.stored_choice(), LOCAL)
        await selector.open()
        with self.assertRaises(ValidationFailed):
            await selector.switch("ftp")
        await selector.close()


if __name__ == "__main__":
    unittest.main()
