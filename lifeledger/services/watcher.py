# lifeledger/services/watcher.py
from __future__ import annotations
from pathlib import Path
import asyncio

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler
from sqlalchemy.ext.asyncio import async_sessionmaker

from lifeledger.config import load_settings
from lifeledger.db import make_engine, ensure_schema
from lifeledger.llm.base import ExtractionGateway
from lifeledger.llm.factory import get_gateway
from lifeledger.services.ingest import INBOX_EXTS, ingest_inbox
from lifeledger.log import logger


# ---------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------
class _Handler(FileSystemEventHandler):
    """Watches the inbox and ingests dropped files as documents."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        session_factory: async_sessionmaker,
        gateway: ExtractionGateway,
        inbox_dir: Path,
        archive_dir: Path,
        timeout: float,
    ):
        super().__init__()
        self._loop = loop
        self.session_factory = session_factory
        self.gateway = gateway
        self.inbox_dir = inbox_dir
        self.archive_dir = archive_dir
        self.timeout = timeout
        self._busy = False

    def on_any_event(self, event):
        """Called from watchdog thread; schedule async work on main loop."""
        if event is not None and not self._relevant(event):
            return
        if not self._busy:
            self._busy = True
            self._loop.call_soon_threadsafe(self._schedule_run)

    @staticmethod
    def _relevant(event) -> bool:
        # deletions are our own archive moves
        if event.is_directory or event.event_type == "deleted":
            return False
        path = Path(getattr(event, "dest_path", "") or event.src_path)
        return path.suffix.lower() in INBOX_EXTS and not path.name.startswith(".")

    def _schedule_run(self):
        """Debounced: a burst of events becomes one pass."""
        self._loop.call_later(0.75, lambda: asyncio.create_task(self._run()))

    async def _run(self):
        try:
            out = await ingest_inbox(
                self.session_factory, self.gateway, self.inbox_dir, self.archive_dir, timeout=self.timeout
            )
            if out.ingested or out.failed:
                logger.info(f"[inbox] pass done: {len(out.ingested)} ingested, {len(out.failed)} failed")
        except OSError as e:
            logger.error(f"[inbox] pass failed: {e}")
        finally:
            self._busy = False


# ---------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------
def run_watch():
    """Run the inbox watcher (blocking until Ctrl-C)."""
    s = load_settings()
    inbox = s.inbox_dir.expanduser()
    inbox.mkdir(parents=True, exist_ok=True)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    eng, session_factory = make_engine(s.db_path)
    loop.run_until_complete(ensure_schema(eng))

    handler = _Handler(
        loop=loop,
        session_factory=session_factory,
        gateway=get_gateway(s),
        inbox_dir=inbox,
        archive_dir=s.archive_dir.expanduser(),
        timeout=s.background_timeout,
    )

    observer = Observer()
    observer.schedule(handler, str(inbox), recursive=True)
    observer.start()

    try:
        logger.info(f"[inbox] watching {inbox}; press Ctrl-C to stop")
        # pick up anything dropped while the watcher was down
        loop.call_soon(handler.on_any_event, None)
        loop.run_forever()
    except KeyboardInterrupt:
        logger.info("[inbox] stopping watcher...")
    finally:
        observer.stop()
        observer.join()
        loop.run_until_complete(eng.dispose())
        loop.close()
        logger.info("[inbox] watcher stopped")
