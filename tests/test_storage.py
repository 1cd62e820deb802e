import json
import os
import tempfile
import unittest
from dataclasses import replace

from script_agent.errors import ScriptNotFound
from script_agent.models import StepType
from script_agent.storage import ScriptStore, new_script_id
from tests.fakes import make_script, make_step


class ScriptStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.directory = tmp.name
        self.store = ScriptStore(self.directory)

    def _script(self, script_id="s1", created_at=1.0):
        script = make_script(
            make_step(StepType.LAUNCH_APP, {"package": "com.xingin.xhs"}),
            make_step(StepType.SCROLL_UNTIL_FIND, {"contains": "万", "excludes": ["直播"]}, index=2),
            script_id=script_id,
        )
        return replace(script, created_at=created_at)

    def test_saved_script_survives_a_fresh_store(self) -> None:
        script = self._script()
        self.store.save(script)

        loaded = ScriptStore(self.directory).load("s1")

        self.assertEqual(loaded, script)
        self.assertFalse(os.path.exists(os.path.join(self.directory, "s1.json.tmp")))

    def test_file_uses_the_model_step_shape(self) -> None:
        self.store.save(self._script())
        with open(os.path.join(self.directory, "s1.json"), encoding="utf-8") as f:
            data = json.load(f)
        self.assertEqual(data["steps"][1]["type"], "SCROLL_UNTIL_FIND")
        self.assertEqual(data["steps"][1]["params"]["excludes"], ["直播"])
        self.assertEqual(data["steps"][1]["on_fail"], "RETRY")

    def test_missing_script(self) -> None:
        with self.assertRaises(ScriptNotFound):
            self.store.load("nope")
        self.assertIsNone(self.store.get("nope"))
        self.assertFalse(self.store.delete("nope"))

    def test_list_is_newest_first_and_skips_corrupt_files(self) -> None:
        self.store.save(self._script("old", created_at=1.0))
        self.store.save(self._script("new", created_at=2.0))
        with open(os.path.join(self.directory, "broken.json"), "w", encoding="utf-8") as f:
            f.write("{not json")

        with self.assertLogs("script_agent.storage", level="WARNING"):
            scripts = self.store.list()

        self.assertEqual([s.id for s in scripts], ["new", "old"])

    def test_delete_removes_file_and_cache(self) -> None:
        self.store.save(self._script())
        self.assertTrue(self.store.delete("s1"))
        self.assertIsNone(self.store.get("s1"))
        self.assertEqual(os.listdir(self.directory), [])

    def test_new_ids_are_unique(self) -> None:
        ids = {new_script_id() for _ in range(50)}
        self.assertEqual(len(ids), 50)
        self.assertTrue(all(i.startswith("script_") for i in ids))


if __name__ == "__main__":
    unittest.main()
