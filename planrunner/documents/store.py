"""Document store - holds built PromptDocuments in memory.

Loads structured plan files (*.yaml, *.yml, *.json) lazily from a
definitions directory, indexes documents by id and by title, and tracks
one "active" document for callers that do not name one. `rescan()` picks
up plan files dropped into the directory after the first load.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from planrunner.errors import DocumentValidationError, NotFound

from .builder import build_document
from .schemas import DocumentSummary, PromptDocument, PromptStatus, PromptSummary

logger = logging.getLogger(__name__)

PLAN_SUFFIXES = (".yaml", ".yml", ".json")


def read_plan_file(path: Path) -> dict[str, Any]:
    """Read a YAML or JSON plan file into a dict."""
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise DocumentValidationError(f"Plan file {path} does not contain a mapping")
    return data


class DocumentStore:
    """In-memory registry of prompt documents."""

    def __init__(self, definitions_dir: Optional[Path] = None):
        self.definitions_dir = definitions_dir
        self._docs: dict[str, PromptDocument] = {}
        self._active_id: Optional[str] = None
        self._lock = threading.RLock()
        self._loaded = False
        self._scanned: set[str] = set()

    def load(self) -> None:
        """Load every plan file in the definitions directory (once).

        A broken file is logged and skipped; the rest still load.
        """
        with self._lock:
            if self._loaded:
                return
            self._loaded = True

            if self.definitions_dir is None or not self.definitions_dir.exists():
                return

            loaded = self._scan()
            logger.info(f"Loaded {len(loaded)} documents from {self.definitions_dir}")

    def rescan(self) -> list[PromptDocument]:
        """Load plan files that appeared in the definitions directory since the last scan.

        Files already seen (loaded or broken) are not read again.
        """
        self.load()
        if self.definitions_dir is None or not self.definitions_dir.exists():
            return []
        with self._lock:
            added = self._scan()
        if added:
            logger.info(f"Rescan of {self.definitions_dir} added {len(added)} documents")
        return added

    def _scan(self) -> list[PromptDocument]:
        added = []
        for path in sorted(self.definitions_dir.iterdir()):
            if path.suffix not in PLAN_SUFFIXES or str(path) in self._scanned:
                continue
            self._scanned.add(str(path))
            try:
                added.append(self.load_file(path))
            except Exception as e:
                logger.error(f"Failed to load plan {path}: {e}")
        return added

    def load_file(self, path: Path) -> PromptDocument:
        """Build a document from a plan file and add it."""
        path = Path(path)
        if not path.exists():
            raise NotFound("plan file", str(path))
        data = read_plan_file(path)
        return self.add_from_dict(data, source_path=str(path))

    def add_from_dict(
        self,
        data: dict[str, Any],
        source_path: Optional[str] = None,
    ) -> PromptDocument:
        document = build_document(data, source_path=source_path)
        return self.add(document)

    def add(self, document: PromptDocument) -> PromptDocument:
        """Add (or replace) a document. The first one added becomes active."""
        with self._lock:
            self._docs[document.id] = document
            if self._active_id is None:
                self._active_id = document.id
        logger.info(
            f"Added document '{document.title}' ({document.id}), "
            f"{len(document.prompts)} prompts"
        )
        return document

    def get(self, document_id: str) -> Optional[PromptDocument]:
        self.load()
        with self._lock:
            return self._docs.get(document_id)

    def get_by_title(self, title: str) -> Optional[PromptDocument]:
        self.load()
        with self._lock:
            for doc in self._docs.values():
                if doc.title == title:
                    return doc
        return None

    def resolve(self, key: str) -> PromptDocument:
        """Look a document up by id, then by title.

        Raises:
            NotFound: if neither matches
        """
        doc = self.get(key) or self.get_by_title(key)
        if doc is None:
            raise NotFound("document", key)
        return doc

    def list_all(self) -> list[PromptDocument]:
        self.load()
        with self._lock:
            return list(self._docs.values())

    def list_summaries(self) -> list[DocumentSummary]:
        """Lightweight listing for API responses."""
        return [
            DocumentSummary(
                id=doc.id,
                title=doc.title,
                prompt_count=len(doc.prompts),
                completed_prompts=sum(
                    1 for p in doc.prompts if p.status == PromptStatus.COMPLETED
                ),
                total_estimated_time=doc.metadata.total_estimated_time,
                tags=doc.metadata.tags,
                source_path=doc.source_path,
            )
            for doc in self.list_all()
        ]

    def prompt_summaries(self, document_id: str) -> list[PromptSummary]:
        doc = self.resolve(document_id)
        return [
            PromptSummary(
                number=p.number,
                title=p.title,
                status=p.status,
                dependencies=p.dependencies,
                step_count=len(p.steps),
                estimated_time=p.estimated_time,
                tags=p.tags,
            )
            for p in doc.prompts
        ]

    @property
    def active(self) -> Optional[PromptDocument]:
        with self._lock:
            if self._active_id is None:
                return None
            return self._docs.get(self._active_id)

    def set_active(self, document_id: str) -> PromptDocument:
        doc = self.resolve(document_id)
        with self._lock:
            self._active_id = doc.id
        logger.info(f"Active document is now '{doc.title}' ({doc.id})")
        return doc

    def remove(self, document_id: str) -> bool:
        with self._lock:
            if document_id not in self._docs:
                logger.warning(f"Document not found for removal: {document_id}")
                return False
            del self._docs[document_id]
            if self._active_id == document_id:
                self._active_id = next(iter(self._docs), None)
        logger.info(f"Removed document {document_id}")
        return True

    def count(self) -> int:
        self.load()
        with self._lock:
            return len(self._docs)
