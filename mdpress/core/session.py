import logging
import threading
import time
from datetime import datetime, timezone

from mdpress import config
from mdpress.core.scheduler import TimerScheduler

logger = logging.getLogger(__name__)


class SessionController:
    """
    Owns the editing session: which document is active, when edits are
    written, and the current preview tree.

    Every edit updates the store in memory at once and (re)starts the autosave
    task. A task is bound to the document it was started for; navigation
    cancels it, so a late timer can never write into the wrong document.
    """

    def __init__(self, store, scheduler=None, pipeline=None,
                 autosave_delay=config.AUTOSAVE_DELAY, preview_delay=config.PREVIEW_DELAY, clock=None):
        self.store = store
        self.scheduler = scheduler or TimerScheduler()
        self.pipeline = pipeline
        self.autosave_delay = autosave_delay
        self.preview_delay = preview_delay
        self.clock = clock or getattr(self.scheduler, 'clock', time.time)
        self._lock = threading.RLock()
        self._save_task = None
        self._save_doc_id = None
        self._preview_task = None
        self._preview = None

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------

    @property
    def active_id(self):
        return self.store.active_id

    @property
    def pending_save(self) -> bool:
        return self._save_task is not None and self._save_task.pending

    def _timestamp(self):
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat(timespec='milliseconds')

    def _cancel_save(self):
        if self._save_task is not None:
            self._save_task.cancel()
            logger.debug(f"Cancelled pending save for {self._save_doc_id}")
        self._save_task = None
        self._save_doc_id = None

    def _commit(self, doc_id, task):
        with self._lock:
            if task is not self._save_task:
                return
            self._save_task = None
            self._save_doc_id = None
            if doc_id not in self.store or doc_id != self.store.active_id:
                return
            stamp = self.store.mark_saved(doc_id, self._timestamp())
            logger.debug(f"Autosaved {doc_id} at {stamp}")

    def edit(self, content):
        """Replace the active document's content and restart the autosave delay."""
        with self._lock:
            doc_id = self.store.active_id
            self.store.update(doc_id, content)
            self._cancel_save()
            holder = []
            task = self.scheduler.schedule(self.autosave_delay, lambda: self._commit(doc_id, holder[0]))
            holder.append(task)
            self._save_task = task
            self._save_doc_id = doc_id
            self._schedule_preview()

    def clear(self):
        self.edit("")

    def flush(self):
        """Write a pending save now instead of waiting for the timer."""
        with self._lock:
            task = self._save_task
            if task is None or not task.pending:
                return False
            task.cancel()
            self._commit(self._save_doc_id, task)
            return True

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def switch(self, doc_id) -> bool:
        with self._lock:
            if doc_id not in self.store:
                return False
            if doc_id != self.store.active_id:
                self._cancel_save()
            self.store.set_active(doc_id)
            self.refresh_preview()
            return True

    def create(self, name=None, content=""):
        with self._lock:
            self._cancel_save()
            doc_id = self.store.create(name, content)
            self.refresh_preview()
            return doc_id

    def clone(self, doc_id=None):
        with self._lock:
            self._cancel_save()
            new_id = self.store.clone(doc_id or self.store.active_id)
            self.refresh_preview()
            return new_id

    def remove(self, doc_id=None):
        with self._lock:
            doc_id = doc_id or self.store.active_id
            # Only leaving the active document drops its pending save.
            if doc_id == self.store.active_id:
                self._cancel_save()
            self.store.remove(doc_id)
            self.refresh_preview()

    def rename(self, doc_id, name):
        with self._lock:
            return self.store.rename(doc_id, name)

    def import_markdown(self, path):
        with self._lock:
            self._cancel_save()
            doc_id = self.store.import_markdown(path)
            self.refresh_preview()
            return doc_id

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def _schedule_preview(self):
        if self.pipeline is None:
            return
        if self._preview_task is not None:
            self._preview_task.cancel()
        self._preview_task = self.scheduler.schedule(self.preview_delay, self.refresh_preview)

    def refresh_preview(self):
        """Render the active document now; diagrams are resolved in the background."""
        if self.pipeline is None:
            return None
        with self._lock:
            if self._preview_task is not None:
                self._preview_task.cancel()
                self._preview_task = None
            tree = self.pipeline.render(self.store.active.content)
            self._preview = tree
        if tree.placeholders():
            future = self.pipeline.resolve_async(tree)
            future.add_done_callback(lambda f: self._on_resolved(f, tree.pass_id))
        return tree

    def _on_resolved(self, future, pass_id):
        try:
            tree = future.result()
        except Exception as e:
            logger.error(f"Diagram resolution failed for pass {pass_id}: {e}")
            return
        with self._lock:
            # A newer pass has replaced this one; its result is stale.
            if self._preview is not None and self._preview.pass_id == pass_id:
                self._preview = tree

    @property
    def preview(self):
        with self._lock:
            if self._preview is None:
                return self.refresh_preview()
            return self._preview

    def close(self):
        with self._lock:
            self.flush()
            if self._preview_task is not None:
                self._preview_task.cancel()
                self._preview_task = None
