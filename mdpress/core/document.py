import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from mdpress.core.errors import MigrationError

DEFAULT_NAME = "Untitled"

ONBOARDING_MARKDOWN = """# Markdown to PDF

To convert your Markdown to PDF simply start by typing in the editor or pasting from your clipboard.

If your Markdown is in a file, clear this content and import the file as a new document.

## Features

- **Real-time preview**: See your PDF as you type
- **Code highlighting**: Syntax highlighting for code blocks
- **Diagrams**: Mermaid blocks are rendered to images
- **Download PDF**: Export your document as PDF, page breaks never cut through a code block or table row

## Code Example

```python
def convert_to_pdf():
    print("Converting markdown to PDF!")
    return "success"
```

## Diagram

```mermaid
graph TD
    A[Markdown] --> B[Preview]
    B --> C[PDF]
```

## Lists

1. First item
2. Second item
3. Third item

## Table Example

| Feature | Status |
|---------|--------|
| Markdown parsing | ✅ |
| PDF export | ✅ |
| Syntax highlighting | ✅ |
| Real-time preview | ✅ |

## Blockquote

> "The best way to predict the future is to invent it."
> - Alan Kay

---

**Ready to export?** Click the "Download PDF" button!
"""


def new_document_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds')


@dataclass
class Document:
    id: str
    name: str
    content: str = ""
    last_saved_at: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "lastSavedAt": self.last_saved_at,
        }

    @classmethod
    def from_dict(cls, data):
        """Build a Document from its persisted form; raises MigrationError on bad records."""
        if not isinstance(data, dict):
            raise MigrationError(f"Document record is not an object: {data!r}")
        doc_id = data.get("id")
        if not isinstance(doc_id, str) or not doc_id:
            raise MigrationError(f"Document record without id: {data!r}")
        name = data.get("name")
        content = data.get("content")
        saved = data.get("lastSavedAt")
        return cls(
            id=doc_id,
            name=name if isinstance(name, str) else DEFAULT_NAME,
            content=content if isinstance(content, str) else "",
            last_saved_at=saved if isinstance(saved, str) else None,
        )

    def copy(self):
        return Document(**asdict(self))
