"""
JSON Lines output for crawled records.
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, IO, Union

from resumable_crawler.concurrent.thread_safe import ThreadSafeCounter
from resumable_crawler.crawlers.base import Record, RecordWriter
from resumable_crawler.utils.errors import OutputError
from resumable_crawler.utils.logging import get_logger


class JsonlRecordWriter(RecordWriter):
    """
    Appends one JSON object per line to a file per partition.

    Files are named ``<partition>_<run timestamp>.jsonl`` in lower case and
    opened in append mode on first write. Writes are serialized and flushed
    immediately.
    """

    def __init__(self, output_dir: str = "output"):
        """
        Initialize writer.

        Args:
            output_dir: Directory for output files; created if missing

        Raises:
            OutputError: If the directory cannot be created
        """
        self.output_dir = Path(output_dir)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputError(f"Cannot create output directory {self.output_dir}: {e}")

        self.run_stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._files: Dict[str, IO[str]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.records_written = ThreadSafeCounter()
        self.logger = get_logger(__name__)

    def path_for(self, partition: str) -> Path:
        return self.output_dir / f"{partition.lower()}_{self.run_stamp}.jsonl"

    def write(self, partition: str, record: Record) -> None:
        try:
            line = json.dumps(record, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise OutputError(f"Record for {partition} is not serializable: {e}",
                              {"partition": partition})

        with self._lock:
            if self._closed:
                raise OutputError("Writer is closed", {"partition": partition})
            try:
                handle = self._files.get(partition)
                if handle is None:
                    path = self.path_for(partition)
                    handle = open(path, "a", encoding="utf-8")
                    self._files[partition] = handle
                    self.logger.info(f"Writing {partition} records to {path}")
                handle.write(line + "\n")
                handle.flush()
            except OSError as e:
                raise OutputError(f"Failed to write record for {partition}: {e}",
                                  {"partition": partition})

        self.records_written.increment()

    def flush(self) -> None:
        with self._lock:
            for handle in self._files.values():
                handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for partition, handle in self._files.items():
                try:
                    handle.close()
                except OSError as e:
                    self.logger.warning(f"Failed to close output for {partition}: {e}")
            self._files.clear()
        self.logger.info(f"Output closed, {self.records_written.get_value()} records written")

    def get_statistics(self) -> Dict[str, Dict[str, Any]]:
        """Line and size counts of the files in this writer's output directory."""
        return collect_output_statistics(self.output_dir)


def collect_output_statistics(output_dir: Union[str, Path]) -> Dict[str, Dict[str, Any]]:
    """
    Line and size counts of every JSONL file in ``output_dir``.

    Returns:
        Mapping of file name to ``{"lines": int, "size_bytes": int}``
    """
    output_dir = Path(output_dir)
    stats = {}
    if not output_dir.is_dir():
        return stats
    for path in sorted(output_dir.glob("*.jsonl")):
        with open(path, "r", encoding="utf-8") as f:
            lines = sum(1 for line in f if line.strip())
        stats[path.name] = {"lines": lines, "size_bytes": path.stat().st_size}
    return stats
