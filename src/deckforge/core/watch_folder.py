"""Watch folder functionality for automatic source ingestion."""

import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import DeckforgeError
from .logging_config import get_audit_logger
from .models import Source
from .object_store import calculate_sha256, object_name
from .pipeline import SUFFIX_CONTENT_TYPES, DeckPipeline, PipelineResult

logger = get_audit_logger("watch_folder")
console = Console()


class UploadWatcher(FileSystemEventHandler):
    """Turn files dropped into a folder into sources and run the pipeline on them."""

    def __init__(
        self,
        watch_dir: Path,
        pipeline: DeckPipeline,
        user_id: str,
        debounce_time: float = 2.0,
        callback: Optional[Callable[[Path, PipelineResult], None]] = None
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.user_id = user_id
        self.debounce_time = debounce_time
        self.callback = callback
        self._lock = threading.Lock()
        self._timers: Dict[Path, threading.Timer] = {}

        self.stats = {
            'start_time': datetime.now(),
            'files_detected': 0,
            'files_processed': 0,
            'files_skipped': 0,
            'files_failed': 0,
            'total_bytes': 0,
        }

        logger.info(f"Upload watcher initialized for {self.watch_dir}")

    def on_created(self, event):
        if not event.is_directory:
            self._schedule(Path(event.src_path))

    def on_moved(self, event):
        """Files moved in (e.g. from a downloads folder) count as new uploads."""
        if not event.is_directory:
            self._schedule(Path(event.dest_path))

    def on_modified(self, event):
        # Large copies emit several writes; each one pushes the debounce timer back.
        if not event.is_directory:
            self._schedule(Path(event.src_path))

    def _schedule(self, file_path: Path) -> None:
        if file_path.suffix.lower() not in SUFFIX_CONTENT_TYPES:
            return

        with self._lock:
            previous = self._timers.pop(file_path, None)
            if previous is not None:
                previous.cancel()
            else:
                self.stats['files_detected'] += 1
            timer = threading.Timer(self.debounce_time, self._fire, args=(file_path,))
            timer.daemon = True
            self._timers[file_path] = timer
        timer.start()

    def _fire(self, file_path: Path) -> None:
        with self._lock:
            self._timers.pop(file_path, None)
        if not file_path.exists():
            logger.warning(f"File {file_path} no longer exists, skipping")
            return
        self.ingest_file(file_path)

    def previous_sources(self, file_path: Path) -> List[Source]:
        """This user's earlier sources with the same content as ``file_path``."""
        name = object_name(calculate_sha256(file_path), file_path.suffix)
        return self.pipeline.store.find_sources_by_file(self.user_id, name)

    def ingest_file(self, file_path: Path) -> Optional[PipelineResult]:
        """Register ``file_path`` as a source and process it. Returns None when skipped or failed."""
        try:
            previous = self.previous_sources(file_path)
            if any(s.status in ("processing", "completed") for s in previous):
                logger.info(f"File {file_path} already ingested, skipping")
                self.stats['files_skipped'] += 1
                return None

            # A source left pending by an aborted attempt is run again; failed ones get a fresh source
            source = next((s for s in previous if s.status == "pending"), None)
            if source is None:
                source = self.pipeline.add_file_source(self.user_id, file_path)
            result = self.pipeline.process_source(source.id, self.user_id)
        except (DeckforgeError, OSError, ValueError) as e:
            logger.error(f"Error processing {file_path}: {e}")
            self.stats['files_failed'] += 1
            return None

        self.stats['files_processed'] += 1
        self.stats['total_bytes'] += source.file_size or 0
        logger.info(
            "file_auto_ingested",
            file_path=str(file_path),
            source_id=source.id,
            chunk_count=result.chunk_count,
            card_count=result.card_count,
            audit=True
        )

        if self.callback:
            self.callback(file_path, result)
        return result

    def cancel_pending(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()

    def get_stats(self) -> Dict[str, Any]:
        uptime_seconds = (datetime.now() - self.stats['start_time']).total_seconds()
        files_per_minute = (self.stats['files_processed'] / uptime_seconds) * 60 if uptime_seconds > 0 else 0.0
        return {
            'uptime_seconds': uptime_seconds,
            'files_detected': self.stats['files_detected'],
            'files_processed': self.stats['files_processed'],
            'files_skipped': self.stats['files_skipped'],
            'files_failed': self.stats['files_failed'],
            'total_bytes': self.stats['total_bytes'],
            'files_per_minute': files_per_minute,
            'pending_files': len(self._timers),
        }

    def print_stats(self) -> None:
        stats = self.get_stats()
        console.print("\n[bold]Watch Folder Statistics[/]")
        console.print(f"   [blue]Uptime:[/] {stats['uptime_seconds']:.1f}s")
        console.print(f"   [blue]Files Detected:[/] {stats['files_detected']}")
        console.print(f"   [blue]Files Processed:[/] {stats['files_processed']}")
        console.print(f"   [blue]Files Skipped:[/] {stats['files_skipped']}")
        console.print(f"   [blue]Files Failed:[/] {stats['files_failed']}")
        console.print(f"   [blue]Total Bytes:[/] {stats['total_bytes']:,}")
        console.print(f"   [blue]Processing Rate:[/] {stats['files_per_minute']:.1f} files/min")
        console.print(f"   [blue]Pending Files:[/] {stats['pending_files']}")


class WatchFolder:
    """Run an ``UploadWatcher`` on a watchdog observer."""

    def __init__(self, watcher: UploadWatcher, recursive: bool = True):
        self.watcher = watcher
        self.recursive = recursive
        self.observer = Observer()
        self.running = False

    def start(self) -> None:
        if self.running:
            logger.warning("Watch folder already running")
            return
        self.watcher.watch_dir.mkdir(parents=True, exist_ok=True)
        self.observer.schedule(self.watcher, str(self.watcher.watch_dir), recursive=self.recursive)
        self.observer.start()
        self.running = True
        logger.info(f"Watching {self.watcher.watch_dir}")

    def stop(self) -> None:
        if not self.running:
            return
        self.watcher.cancel_pending()
        self.observer.stop()
        self.observer.join()
        self.running = False
        logger.info("Watch folder stopped")

    def run_forever(self, stats_interval: float = 60.0) -> None:
        """Block until interrupted, printing statistics periodically."""
        self.start()
        try:
            last = time.time()
            while True:
                time.sleep(1)
                if time.time() - last >= stats_interval:
                    self.watcher.print_stats()
                    last = time.time()
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping watch folder")
        finally:
            self.stop()
            self.watcher.print_stats()
