import json
import unittest

from mdpress.core.document import Document
from mdpress.core.migration import ACTIVE_KEY, DOCUMENTS_KEY, SIDEBAR_KEY
from mdpress.core.state import LocalStorage
from mdpress.core.store import SEED_NAME, DocumentStore, next_untitled_name
from tests.fakes import MemoryStorage


def make_store(names=("First", "Second", "Third")):
    docs = [Document(id=f"id-{i}", name=n, content=f"# {n}") for i, n in enumerate(names)]
    return DocumentStore(MemoryStorage(), docs, active_id=docs[0].id)


class TestDocumentStore(unittest.TestCase):
    """Collection invariants: never empty, active always resolves, ordering rules."""

    def test_load_seeds_single_document(self):
        storage = MemoryStorage()
        store = DocumentStore.load(storage)
        self.assertEqual(len(store), 1)
        self.assertEqual(store.active.name, SEED_NAME)
        self.assertIn("# Markdown to PDF", store.active.content)
        # Seed is written so its id is stable across sessions.
        self.assertIn(DOCUMENTS_KEY, storage.data)
        self.assertEqual(storage.data[ACTIVE_KEY], store.active_id)

    def test_constructor_never_empty(self):
        store = DocumentStore(MemoryStorage(), [])
        self.assertEqual(len(store), 1)

    def test_removing_last_document_clears_it(self):
        store = make_store(("Only",))
        doc_id = store.active_id
        store.mark_saved(doc_id, "2026-01-01T00:00:00.000+00:00")
        store.remove(doc_id)
        self.assertEqual(len(store), 1)
        doc = store.get(doc_id)
        self.assertEqual(doc.content, "")
        self.assertIsNone(doc.last_saved_at)
        self.assertEqual(doc.name, "Only")

    def test_dangling_active_id_falls_back_to_first(self):
        docs = [Document(id="a", name="A"), Document(id="b", name="B")]
        self.assertEqual(DocumentStore(MemoryStorage(), docs, active_id="gone").active_id, "a")
        self.assertEqual(DocumentStore(MemoryStorage(), docs, active_id=None).active_id, "a")

    def test_load_with_dangling_persisted_active_id(self):
        storage = MemoryStorage({
            DOCUMENTS_KEY: json.dumps([{"id": "a", "name": "A", "content": "", "lastSavedAt": None},
                                       {"id": "b", "name": "B", "content": "", "lastSavedAt": None}]),
            ACTIVE_KEY: "deleted-elsewhere",
        })
        self.assertEqual(DocumentStore.load(storage).active_id, "a")

    def test_auto_naming_sequence(self):
        store = make_store(("Notes",))
        names = [store.get(store.create()).name for _ in range(3)]
        self.assertEqual(names, ["Untitled", "Untitled 2", "Untitled 3"])

    def test_auto_naming_counts_existing_untitled(self):
        self.assertEqual(next_untitled_name(["Untitled", "Untitled 7", "Untitled x", "Other"]), "Untitled 3")
        self.assertEqual(next_untitled_name([]), "Untitled")

    def test_create_with_name_and_content(self):
        store = make_store()
        doc_id = store.create("  Report ", "body")
        doc = store.get(doc_id)
        self.assertEqual((doc.name, doc.content), ("Report", "body"))
        self.assertEqual(store.documents[-1].id, doc_id)
        self.assertEqual(store.active_id, doc_id)

    def test_ids_are_unique(self):
        store = make_store()
        ids = {store.create() for _ in range(20)}
        self.assertEqual(len(ids), 20)

    def test_rename_blank_is_noop(self):
        store = make_store()
        doc_id = store.active_id
        writes = len(store.storage.writes)
        store.rename(doc_id, "   ")
        self.assertEqual(store.get(doc_id).name, "First")
        self.assertEqual(len(store.storage.writes), writes)

    def test_rename_trims_and_persists(self):
        store = make_store()
        store.rename("id-1", "  Renamed  ")
        self.assertEqual(store.get("id-1").name, "Renamed")
        persisted = json.loads(store.storage.data[DOCUMENTS_KEY])
        self.assertEqual(persisted[1]["name"], "Renamed")

    def test_duplicate_names_allowed(self):
        store = make_store(("Same", "Same"))
        self.assertEqual([d.name for d in store.documents], ["Same", "Same"])

    def test_clone_is_placed_after_source(self):
        store = make_store()
        clone_id = store.clone("id-0")
        order = [d.id for d in store.documents]
        self.assertEqual(order, ["id-0", clone_id, "id-1", "id-2"])
        clone = store.get(clone_id)
        self.assertEqual(clone.name, "First (copy)")
        self.assertEqual(clone.content, "# First")
        self.assertIsNone(clone.last_saved_at)
        self.assertEqual(store.active_id, clone_id)

    def test_clone_content_is_independent(self):
        store = make_store()
        clone_id = store.clone("id-0")
        store.update("id-0", "changed source")
        self.assertEqual(store.get(clone_id).content, "# First")
        store.update(clone_id, "changed clone")
        self.assertEqual(store.get("id-0").content, "changed source")

    def test_remove_active_selects_previous_sibling(self):
        store = make_store()
        store.set_active("id-2")
        store.remove("id-2")
        self.assertEqual(store.active_id, "id-1")
        self.assertEqual([d.id for d in store.documents], ["id-0", "id-1"])

    def test_remove_first_active_selects_new_first(self):
        store = make_store()
        store.remove("id-0")
        self.assertEqual(store.active_id, "id-1")

    def test_remove_inactive_keeps_active(self):
        store = make_store()
        store.set_active("id-2")
        store.remove("id-0")
        self.assertEqual(store.active_id, "id-2")

    def test_remove_unknown_raises(self):
        with self.assertRaises(KeyError):
            make_store().remove("nope")

    def test_set_active_unknown_is_noop(self):
        store = make_store()
        writes = len(store.storage.writes)
        self.assertFalse(store.set_active("nope"))
        self.assertEqual(store.active_id, "id-0")
        self.assertEqual(len(store.storage.writes), writes)

    def test_set_active_persists_pointer_only(self):
        store = make_store()
        store.set_active("id-1")
        self.assertEqual(store.storage.writes[-1], {ACTIVE_KEY: "id-1"})

    def test_update_is_memory_only(self):
        store = make_store()
        writes = len(store.storage.writes)
        store.update("id-0", "typed")
        self.assertEqual(store.get("id-0").content, "typed")
        self.assertEqual(len(store.storage.writes), writes)

    def test_collection_is_written_whole(self):
        store = make_store()
        store.create("New")
        persisted = json.loads(store.storage.writes[-1][DOCUMENTS_KEY])
        self.assertEqual([d["name"] for d in persisted], ["First", "Second", "Third", "New"])

    def test_write_failure_is_a_warning(self):
        store = make_store()
        store.storage.fail_writes = True
        doc_id = store.create("Kept in memory")
        self.assertIn(doc_id, store)
        self.assertIn("could not be saved", store.last_warning)
        stamp = store.mark_saved(doc_id, "2026-01-01T00:00:00.000+00:00")
        self.assertIsNone(stamp)

        store.storage.fail_writes = False
        store.rename(doc_id, "Saved now")
        self.assertIsNone(store.last_warning)

    def test_sidebar_preference(self):
        store = make_store()
        store.sidebar_open = True
        self.assertEqual(store.storage.data[SIDEBAR_KEY], "true")
        self.assertTrue(DocumentStore.load(store.storage).sidebar_open)

    def test_import_markdown(self):
        import tempfile
        from pathlib import Path

        store = make_store()
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "meeting-notes.md"
            path.write_text("# Agenda", encoding="utf-8")
            doc_id = store.import_markdown(path)
        doc = store.get(doc_id)
        self.assertEqual((doc.name, doc.content), ("meeting-notes", "# Agenda"))


class TestLocalStorageRoundTrip(unittest.TestCase):

    def test_state_survives_reload(self):
        import tempfile
        from pathlib import Path

        with tempfile.TemporaryDirectory() as tmp:
            storage = LocalStorage(Path(tmp) / "store.json")
            store = DocumentStore.load(storage)
            doc_id = store.create("Persisted", "hello")
            store.mark_saved(doc_id, "2026-03-01T10:00:00.000+00:00")

            reloaded = DocumentStore.load(LocalStorage(Path(tmp) / "store.json"))
            self.assertEqual(reloaded.active_id, doc_id)
            self.assertEqual([d.name for d in reloaded.documents], [SEED_NAME, "Persisted"])
            self.assertEqual(reloaded.get(doc_id).last_saved_at, "2026-03-01T10:00:00.000+00:00")
            # No temp files left behind by the atomic writes.
            self.assertEqual([p.name for p in Path(tmp).iterdir()], ["store.json"])


if __name__ == '__main__':
    unittest.main()
