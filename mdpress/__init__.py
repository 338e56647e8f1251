"""mdpress: local multi-document markdown editor with paginated PDF export."""

__version__ = "1.0.0"
