import logging
import re
from pathlib import Path
from typing import List, Optional

from mdpress.core.document import (
    DEFAULT_NAME,
    ONBOARDING_MARKDOWN,
    Document,
    new_document_id,
    utc_now,
)
from mdpress.core.errors import StorageError
from mdpress.core.migration import (
    ACTIVE_KEY,
    DOCUMENTS_KEY,
    LEGACY_KEYS,
    SIDEBAR_KEY,
    migrate,
    serialize_documents,
)

logger = logging.getLogger(__name__)

SEED_NAME = "Getting Started"
UNTITLED_PATTERN = re.compile(r'^%s \d+$' % re.escape(DEFAULT_NAME))


def next_untitled_name(names) -> str:
    """'Untitled' for the first one, then 'Untitled 2', 'Untitled 3', ..."""
    taken = sum(1 for n in names if n == DEFAULT_NAME or UNTITLED_PATTERN.match(n))
    if taken == 0:
        return DEFAULT_NAME
    return f"{DEFAULT_NAME} {taken + 1}"


class DocumentStore:
    """
    The ordered document collection plus the active-document pointer.

    Mutations that change the collection re-persist all of it in one overwrite.
    update() is the exception: it only touches memory and leaves the write to
    the autosave timer in SessionController.
    """

    def __init__(self, storage, documents=None, active_id=None, sidebar_open=False):
        self.storage = storage
        self._documents: List[Document] = list(documents or [])
        if not self._documents:
            self._documents.append(Document(id=new_document_id(), name=DEFAULT_NAME))
        self._active_id = self._resolve_active(active_id)
        self._sidebar_open = bool(sidebar_open)
        self.last_warning: Optional[str] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, storage):
        """Load the persisted store, migrating or seeding as needed. Never raises."""
        raw = {}
        for key in (DOCUMENTS_KEY, ACTIVE_KEY, SIDEBAR_KEY) + LEGACY_KEYS:
            try:
                raw[key] = storage.get_item(key)
            except StorageError as e:
                logger.warning(f"Store unreadable, starting from defaults: {e}")
                raw = {}
                break

        result = migrate(raw)
        seeded = result.empty
        documents = result.documents
        if seeded:
            seed = Document(id=new_document_id(), name=SEED_NAME, content=ONBOARDING_MARKDOWN)
            logger.info(f"Seeding new store with document {seed.id}")
            documents = [seed]

        store = cls(
            storage,
            documents,
            active_id=result.active_id,
            sidebar_open=raw.get(SIDEBAR_KEY) == "true",
        )

        written = True
        if result.migrated or seeded:
            written = store._persist(include_active=True)
        # Legacy keys only go once the new layout is safely on disk.
        if written and result.remove_keys:
            for key in result.remove_keys:
                try:
                    storage.remove_item(key)
                except StorageError as e:
                    logger.warning(f"Could not remove legacy key '{key}': {e}")
        return store

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def documents(self) -> List[Document]:
        return [doc.copy() for doc in self._documents]

    @property
    def active_id(self) -> str:
        return self._active_id

    @property
    def active(self) -> Document:
        return self.get(self._active_id)

    def get(self, doc_id) -> Document:
        return self._find(doc_id).copy()

    def __contains__(self, doc_id):
        return any(doc.id == doc_id for doc in self._documents)

    def __len__(self):
        return len(self._documents)

    def _index(self, doc_id) -> int:
        for i, doc in enumerate(self._documents):
            if doc.id == doc_id:
                return i
        raise KeyError(doc_id)

    def _find(self, doc_id) -> Document:
        return self._documents[self._index(doc_id)]

    def _resolve_active(self, doc_id) -> str:
        if doc_id is not None and doc_id in self:
            return doc_id
        return self._documents[0].id

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, include_active=False) -> bool:
        items = {DOCUMENTS_KEY: serialize_documents(self._documents)}
        if include_active:
            items[ACTIVE_KEY] = self._active_id
        return self._write(items)

    def _persist_active(self) -> bool:
        return self._write({ACTIVE_KEY: self._active_id})

    def _write(self, items) -> bool:
        try:
            self.storage.set_items(items)
        except StorageError as e:
            # In-memory state stays authoritative for the rest of the session.
            self.last_warning = f"Changes could not be saved: {e}"
            logger.warning(self.last_warning)
            return False
        self.last_warning = None
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, name=None, content="") -> str:
        name = (name or "").strip() or next_untitled_name(d.name for d in self._documents)
        doc = Document(id=new_document_id(), name=name, content=content or "")
        self._documents.append(doc)
        self._active_id = doc.id
        self._persist(include_active=True)
        logger.info(f"Created document {doc.id} ('{doc.name}')")
        return doc.id

    def update(self, doc_id, content):
        self._find(doc_id).content = content

    def rename(self, doc_id, name):
        doc = self._find(doc_id)
        trimmed = (name or "").strip()
        if not trimmed:
            return doc.name
        doc.name = trimmed
        self._persist()
        return doc.name

    def clone(self, doc_id) -> str:
        index = self._index(doc_id)
        source = self._documents[index]
        copy = Document(id=new_document_id(), name=f"{source.name} (copy)", content=source.content)
        self._documents.insert(index + 1, copy)
        self._active_id = copy.id
        self._persist(include_active=True)
        logger.info(f"Cloned document {source.id} into {copy.id}")
        return copy.id

    def remove(self, doc_id):
        index = self._index(doc_id)
        if len(self._documents) == 1:
            doc = self._documents[0]
            doc.content = ""
            doc.last_saved_at = None
            self._persist()
            logger.info(f"Cleared last remaining document {doc.id}")
            return

        removed = self._documents.pop(index)
        if removed.id == self._active_id:
            self._active_id = self._documents[max(index - 1, 0)].id
        self._persist(include_active=True)
        logger.info(f"Removed document {removed.id}")

    def set_active(self, doc_id) -> bool:
        if doc_id not in self:
            return False
        self._active_id = doc_id
        self._persist_active()
        return True

    def mark_saved(self, doc_id, when=None) -> str:
        """Stamp lastSavedAt and write the collection. Used by the autosave timer."""
        doc = self._find(doc_id)
        previous = doc.last_saved_at
        doc.last_saved_at = when or utc_now()
        if not self._persist():
            # lastSavedAt only ever records a write that actually happened.
            doc.last_saved_at = previous
        return doc.last_saved_at

    def import_markdown(self, path) -> str:
        """Create a document from a markdown file, named after the file."""
        path = Path(path)
        try:
            content = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Cannot import {path}: {e}") from e
        return self.create(name=path.stem, content=content)

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    @property
    def sidebar_open(self) -> bool:
        return self._sidebar_open

    @sidebar_open.setter
    def sidebar_open(self, value):
        self._sidebar_open = bool(value)
        self._write({SIDEBAR_KEY: "true" if self._sidebar_open else "false"})
