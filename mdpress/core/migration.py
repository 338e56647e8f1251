"""
Storage layout versions and the pure migration between them.

Layout v1 (legacy) held a single unnamed document:
    content    -> raw markdown
    lastSaved  -> timestamp string

Layout v2 (current) holds a collection:
    documents         -> JSON array of {id, name, content, lastSavedAt}
    activeDocumentId  -> id string
    sidebarOpen       -> "true" / "false"

Nothing in here touches storage; the store feeds raw values in and writes
the result back.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Tuple

from mdpress.core.document import DEFAULT_NAME, Document, new_document_id
from mdpress.core.errors import MigrationError

logger = logging.getLogger(__name__)

DOCUMENTS_KEY = "documents"
ACTIVE_KEY = "activeDocumentId"
SIDEBAR_KEY = "sidebarOpen"
LEGACY_CONTENT_KEY = "content"
LEGACY_SAVED_KEY = "lastSaved"
LEGACY_KEYS = (LEGACY_CONTENT_KEY, LEGACY_SAVED_KEY)


@dataclass
class MigrationResult:
    documents: List[Document] = field(default_factory=list)
    active_id: Optional[str] = None
    # True when the documents came from the legacy layout and must be written back.
    migrated: bool = False
    remove_keys: Tuple[str, ...] = ()
    errors: List[MigrationError] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.documents


def parse_documents(raw: str) -> List[Document]:
    """Parse the current-layout collection. Raises MigrationError on anything unusable."""
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MigrationError(f"documents is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise MigrationError("documents is not a list")

    documents = []
    seen = set()
    for item in data:
        doc = Document.from_dict(item)
        if doc.id in seen:
            # First occurrence wins; ids must stay unique.
            logger.warning(f"Dropping duplicate document id {doc.id}")
            continue
        seen.add(doc.id)
        documents.append(doc)
    if not documents:
        raise MigrationError("documents is empty")
    return documents


def serialize_documents(documents) -> str:
    return json.dumps([doc.to_dict() for doc in documents], ensure_ascii=False)


def migrate(raw: Mapping[str, Optional[str]], id_factory=new_document_id) -> MigrationResult:
    """
    Turn whatever is persisted into the current layout.

    - Current layout present and readable: returned untouched (legacy keys,
      if still lying around, are scheduled for removal but never re-imported).
    - Otherwise legacy content present: wrapped into one document.
    - Otherwise: an empty result; the caller seeds a fresh document.

    Running it again on its own output changes nothing, so legacy content can
    never end up duplicated into two documents.
    """
    result = MigrationResult()
    legacy_present = tuple(k for k in LEGACY_KEYS if raw.get(k) is not None)

    raw_documents = raw.get(DOCUMENTS_KEY)
    if raw_documents is not None:
        try:
            result.documents = parse_documents(raw_documents)
            result.active_id = raw.get(ACTIVE_KEY)
            result.remove_keys = legacy_present
            return result
        except MigrationError as e:
            logger.warning(f"Discarding unreadable document collection: {e}")
            result.errors.append(e)

    legacy_content = raw.get(LEGACY_CONTENT_KEY)
    if legacy_content is not None:
        saved = (raw.get(LEGACY_SAVED_KEY) or "").strip() or None
        doc = Document(id=id_factory(), name=DEFAULT_NAME, content=legacy_content, last_saved_at=saved)
        logger.info(f"Migrating legacy single-document storage into document {doc.id}")
        result.documents = [doc]
        result.active_id = doc.id
        result.migrated = True
        result.remove_keys = legacy_present
    elif legacy_present:
        result.remove_keys = legacy_present

    return result
