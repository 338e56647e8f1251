
# Global configuration for mdpress.
# Defaults live here as module constants; Settings.from_env() lets the
# launcher override them without touching code.

import os
import sys
from dataclasses import dataclass
from pathlib import Path

STORE_FILE_NAME = "mdpress-store.json"

# Seconds of quiet after the last keystroke before the active document is written.
AUTOSAVE_DELAY = 1.0
# Seconds of quiet before the preview is re-rendered.
PREVIEW_DELAY = 0.3

DEFAULT_PAGE_FORMAT = "a4"
DEFAULT_MARGIN_MM = 10.0
RASTER_SCALE = 2.0
IMAGE_FORMAT = "JPEG"
IMAGE_QUALITY = 85
DEFAULT_STRATEGY = "content"

MERMAID_URL = "https://mermaid.ink/img"
MERMAID_TIMEOUT = 5
DIAGRAM_WORKERS = 4

EXPORT_FALLBACK_NAME = "markdown-to-pdf.pdf"

HOST = "localhost"
PORT = 8000


def default_data_dir() -> Path:
    """Next to the executable when frozen, else the current directory."""
    if getattr(sys, 'frozen', False):
        return Path(sys.executable).parent
    return Path(".").resolve()


@dataclass
class Settings:
    data_dir: Path
    autosave_delay: float = AUTOSAVE_DELAY
    preview_delay: float = PREVIEW_DELAY
    page_format: str = DEFAULT_PAGE_FORMAT
    margin_mm: float = DEFAULT_MARGIN_MM
    raster_scale: float = RASTER_SCALE
    image_format: str = IMAGE_FORMAT
    image_quality: int = IMAGE_QUALITY
    strategy: str = DEFAULT_STRATEGY
    mermaid_url: str = MERMAID_URL
    mermaid_timeout: float = MERMAID_TIMEOUT
    host: str = HOST
    port: int = PORT
    log_level: str = "INFO"

    @property
    def store_path(self) -> Path:
        return self.data_dir / STORE_FILE_NAME

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        data_dir = env.get("MDPRESS_DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser().resolve() if data_dir else default_data_dir(),
            autosave_delay=float(env.get("MDPRESS_AUTOSAVE_DELAY", AUTOSAVE_DELAY)),
            preview_delay=float(env.get("MDPRESS_PREVIEW_DELAY", PREVIEW_DELAY)),
            page_format=env.get("MDPRESS_PAGE_FORMAT", DEFAULT_PAGE_FORMAT).lower(),
            margin_mm=float(env.get("MDPRESS_MARGIN_MM", DEFAULT_MARGIN_MM)),
            raster_scale=float(env.get("MDPRESS_RASTER_SCALE", RASTER_SCALE)),
            image_format=env.get("MDPRESS_IMAGE_FORMAT", IMAGE_FORMAT).upper(),
            image_quality=int(env.get("MDPRESS_IMAGE_QUALITY", IMAGE_QUALITY)),
            strategy=env.get("MDPRESS_STRATEGY", DEFAULT_STRATEGY),
            mermaid_url=env.get("MDPRESS_MERMAID_URL", MERMAID_URL),
            mermaid_timeout=float(env.get("MDPRESS_MERMAID_TIMEOUT", MERMAID_TIMEOUT)),
            host=env.get("MDPRESS_HOST", HOST),
            port=int(env.get("MDPRESS_PORT", PORT)),
            log_level=env.get("MDPRESS_LOG_LEVEL", "INFO").upper(),
        )
