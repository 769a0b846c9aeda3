"""
Crash-safe JSON persistence of learned baselines.

The document is written to a temporary file in the target directory, fsynced,
then moved over the canonical file with os.replace, so the canonical file is
always either the previous complete document or the new complete document.
"""

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from src.core.errors import PersistError, StateError

from .baseline import BaselineStore
from .models import BaselineStats, utc_now

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 2
DEFAULT_BASELINE_PATH = "data/baseline.json"


class PersistenceGateway:
    """Loads and saves a BaselineStore to a JSON file"""

    def __init__(self, path: str | Path = DEFAULT_BASELINE_PATH):
        self.path = Path(path)
        self._lock = threading.Lock()

    def save(self, store: BaselineStore) -> None:
        """Atomically write the store

        Raises:
            PersistError: if the document could not be written
        """
        payload = json.dumps(self._to_document(store), indent=2)

        with self._lock:
            tmp_name = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    "w",
                    encoding="utf-8",
                    dir=self.path.parent,
                    prefix=f".{self.path.name}.",
                    suffix=".tmp",
                    delete=False,
                ) as tmp:
                    tmp_name = tmp.name
                    tmp.write(payload)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_name, self.path)
                tmp_name = None
            except OSError as e:
                logger.error("Failed to save baseline", path=str(self.path), error=str(e))
                raise PersistError(f"Failed to save baseline to {self.path}: {e}") from e
            finally:
                if tmp_name is not None:
                    try:
                        os.unlink(tmp_name)
                    except OSError:
                        logger.warning("Failed to remove temporary baseline file", path=tmp_name)

        logger.debug("Baseline saved", path=str(self.path), metrics=len(store))

    def load(self) -> BaselineStore:
        """Load the store, falling back to a fresh one on a missing or corrupt file

        Raises:
            PersistError: if the file exists but cannot be read
        """
        with self._lock:
            try:
                content = self.path.read_bytes()
            except FileNotFoundError:
                logger.info("No baseline file, starting fresh", path=str(self.path))
                return BaselineStore()
            except OSError as e:
                logger.error("Failed to read baseline", path=str(self.path), error=str(e))
                raise PersistError(f"Failed to read baseline from {self.path}: {e}") from e

        # UnicodeDecodeError is a ValueError: undecodable bytes count as corrupt
        try:
            document = json.loads(content.decode("utf-8"))
            store = self._from_document(document)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(
                "Corrupt baseline file, starting fresh", path=str(self.path), error=str(e)
            )
            return BaselineStore()

        logger.info(
            "Baseline loaded",
            path=str(self.path),
            metrics=len(store),
            learned=sum(1 for b in store.baselines.values() if b.is_learned),
        )
        return store

    def _to_document(self, store: BaselineStore) -> dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "saved_at": utc_now().isoformat(),
            "baseline": {name: stats.to_dict() for name, stats in store.to_stats().items()},
            "feedback": sorted(store.feedback),
        }

    def _from_document(self, document: Any) -> BaselineStore:
        if not isinstance(document, dict):
            raise ValueError("Baseline document must be an object")

        version = document.get("version", 1)
        raw_baselines = document.get("baseline", {})
        if not isinstance(raw_baselines, dict):
            raise ValueError("'baseline' must be an object")

        stats: dict[str, BaselineStats] = {}
        for name, entry in raw_baselines.items():
            try:
                stats[name] = self._parse_entry(name, entry)
            except (ValueError, TypeError, KeyError, StateError) as e:
                logger.warning("Dropping invalid baseline entry", metric=name, error=str(e))

        return BaselineStore.from_stats(stats, feedback=self._parse_feedback(document, version))

    @staticmethod
    def _parse_entry(name: str, entry: dict[str, Any]) -> BaselineStats:
        # Version 1 documents use "std" and carry no learning flags
        stddev = entry["stddev"] if "stddev" in entry else entry["std"]
        sample_count = int(entry.get("sample_count", 0))
        learned_at = entry.get("learned_at")
        return BaselineStats(
            mean=float(entry["mean"]),
            stddev=float(stddev),
            sample_count=sample_count,
            learned_at=datetime.fromisoformat(learned_at) if learned_at else None,
            is_learned=bool(entry.get("is_learned", sample_count > 0)),
        ).validate(name)

    @staticmethod
    def _parse_feedback(document: dict[str, Any], version: int) -> set[str]:
        feedback = document.get("feedback", [])
        # Version 1 stored feedback as {key: bool}
        if isinstance(feedback, dict):
            return {key for key, flagged in feedback.items() if flagged}
        if isinstance(feedback, list):
            return {str(key) for key in feedback}
        logger.warning("Ignoring malformed feedback", version=version)
        return set()
