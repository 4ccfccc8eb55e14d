"""State stores with optimistic concurrency and version history."""

import contextlib
import fcntl
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from kubeconverge.utils.errors import StaleWriteError, StateError
from kubeconverge.utils.logging import get_logger
from .models import StateDocument, StateVersion

logger = get_logger(__name__)


class StateStore(ABC):
    """Durable, versioned storage of the state document.

    ``write_if_serial_matches`` is the only way state changes. A write is
    accepted only when the stored serial still equals ``expected_serial``;
    the stored document then advances to ``expected_serial + 1``.
    """

    @abstractmethod
    def read(self) -> Tuple[StateDocument, int]:
        """Return the current document and its serial (0 when empty)."""

    @abstractmethod
    def write_if_serial_matches(self, new_doc: StateDocument, expected_serial: int) -> StateDocument:
        """Store ``new_doc`` if the stored serial equals ``expected_serial``.

        Returns:
            The document as stored (serial and hash assigned)

        Raises:
            StaleWriteError: If the stored serial has advanced
        """

    @abstractmethod
    def list_versions(self) -> List[StateVersion]:
        """All stored versions, oldest first."""

    @abstractmethod
    def read_version(self, version_id: str) -> StateDocument:
        """Read one historical version."""

    def describe(self) -> str:
        return type(self).__name__

    @staticmethod
    def _prepare(new_doc: StateDocument, expected_serial: int, current: Optional[StateDocument]) -> StateDocument:
        """Assign the next serial and seal, rejecting foreign lineages."""
        if current is not None and current.serial > 0 and new_doc.lineage != current.lineage:
            raise StateError(
                f"State lineage mismatch: stored {current.lineage}, writing {new_doc.lineage}"
            )
        doc = new_doc.model_copy(deep=True)
        doc.serial = expected_serial + 1
        return doc.sealed()

    @staticmethod
    def _verified(doc: StateDocument, source: str) -> StateDocument:
        if doc.content_hash and not doc.verify():
            raise StateError(f"State content hash mismatch in {source}; the document may be corrupted")
        return doc


class InMemoryStateStore(StateStore):
    """Thread-safe store keeping every version in memory."""

    def __init__(self, initial: Optional[StateDocument] = None):
        self._mutex = threading.Lock()
        self._versions: List[StateDocument] = []
        self._empty = StateDocument()
        if initial is not None:
            self._versions.append(initial.sealed())

    def read(self) -> Tuple[StateDocument, int]:
        with self._mutex:
            current = self._versions[-1] if self._versions else self._empty
            doc = current.model_copy(deep=True)
        return doc, doc.serial

    def write_if_serial_matches(self, new_doc: StateDocument, expected_serial: int) -> StateDocument:
        with self._mutex:
            current = self._versions[-1] if self._versions else None
            stored_serial = current.serial if current else 0
            if stored_serial != expected_serial:
                raise StaleWriteError(expected_serial, stored_serial)
            doc = self._prepare(new_doc, expected_serial, current)
            self._versions.append(doc)
            logger.debug(f"State written: serial={doc.serial}", extra={'serial': doc.serial})
            return doc.model_copy(deep=True)

    def list_versions(self) -> List[StateVersion]:
        with self._mutex:
            return [
                StateVersion(
                    version_id=str(doc.serial),
                    serial=doc.serial,
                    content_hash=doc.content_hash,
                    written_at=doc.updated_at,
                    is_latest=(i == len(self._versions) - 1),
                )
                for i, doc in enumerate(self._versions)
            ]

    def read_version(self, version_id: str) -> StateDocument:
        with self._mutex:
            for doc in self._versions:
                if str(doc.serial) == str(version_id):
                    return doc.model_copy(deep=True)
        raise StateError(f"State version not found: {version_id}")


class LocalStateStore(StateStore):
    """JSON file store with an immutable copy of every written serial.

    Layout::

        terraform.tfstate.json             current document
        terraform.tfstate.json.versions/   00000001.json, 00000002.json, ...
        terraform.tfstate.json.cas         flock target serializing writers
    """

    def __init__(self, state_path: str):
        self.state_path = Path(state_path)
        self.versions_dir = self.state_path.parent / f"{self.state_path.name}.versions"
        self._cas_path = self.state_path.parent / f"{self.state_path.name}.cas"
        self._empty = StateDocument()

    def describe(self) -> str:
        return f"local:{self.state_path}"

    @contextlib.contextmanager
    def _exclusive(self):
        self._cas_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._cas_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _load(self, path: Path) -> StateDocument:
        try:
            doc = StateDocument.from_json(path.read_text(encoding="utf-8"))
        except PydanticValidationError as e:
            raise StateError(f"Failed to parse state file {path}: {e}", cause=e)
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}", cause=e)
        return self._verified(doc, str(path))

    def _load_current(self) -> Optional[StateDocument]:
        if not self.state_path.exists():
            return None
        return self._load(self.state_path)

    def read(self) -> Tuple[StateDocument, int]:
        doc = self._load_current() or self._empty.model_copy(deep=True)
        return doc, doc.serial

    def write_if_serial_matches(self, new_doc: StateDocument, expected_serial: int) -> StateDocument:
        with self._exclusive():
            current = self._load_current()
            stored_serial = current.serial if current else 0
            if stored_serial != expected_serial:
                raise StaleWriteError(expected_serial, stored_serial)

            doc = self._prepare(new_doc, expected_serial, current)
            payload = doc.to_json()

            self.versions_dir.mkdir(parents=True, exist_ok=True)
            version_path = self.versions_dir / f"{doc.serial:08d}.json"
            if version_path.exists():
                raise StaleWriteError(expected_serial, doc.serial)
            self._atomic_write(version_path, payload)
            self._atomic_write(self.state_path, payload)

        logger.debug(f"State written: serial={doc.serial} path={self.state_path}", extra={'serial': doc.serial})
        return doc

    @staticmethod
    def _atomic_write(path: Path, payload: str) -> None:
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        except OSError as e:
            raise StateError(f"Failed to write state file {path}: {e}", cause=e)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()

    def list_versions(self) -> List[StateVersion]:
        if not self.versions_dir.exists():
            return []
        files = sorted(self.versions_dir.glob("*.json"))
        versions = []
        for i, path in enumerate(files):
            doc = self._load(path)
            versions.append(StateVersion(
                version_id=path.stem,
                serial=doc.serial,
                content_hash=doc.content_hash,
                written_at=doc.updated_at,
                is_latest=(i == len(files) - 1),
            ))
        return versions

    def read_version(self, version_id: str) -> StateDocument:
        try:
            path = self.versions_dir / f"{int(version_id):08d}.json"
        except ValueError:
            raise StateError(f"Invalid state version id: {version_id}")
        if not path.exists():
            raise StateError(f"State version not found: {version_id}")
        return self._load(path)

