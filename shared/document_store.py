"""
JSON-file document store used by each service as its private database.

One file per collection. Every record carries a ``_rev`` counter that is
bumped on each write; ``update`` accepts the revision the caller read and
refuses the write if the record moved on in the meantime.
"""

import asyncio
import copy
import json
import os
import tempfile
import unicodedata
from typing import Any, Dict, Iterable, List, Optional

from shared.errors import NotFoundError, RevisionConflictError
from shared.logging import get_logger

REVISION_FIELD = "_rev"


def normalize_text(value: Any) -> str:
    """Case- and diacritic-insensitive form used by ``search``."""
    decomposed = unicodedata.normalize("NFKD", str(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _get_path(document: Dict[str, Any], dotted: str) -> Any:
    current: Any = document
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _set_path(document: Dict[str, Any], dotted: str, value: Any):
    parts = dotted.split(".")
    current = document
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    """Equality match on (dotted) fields, plus ``$or`` of sub-queries."""
    if not query:
        return True
    for key, expected in query.items():
        if key == "$or":
            if not any(matches(document, sub) for sub in expected):
                return False
        elif _get_path(document, key) != expected:
            return False
    return True


class JsonDocumentStore:
    """Async document collection persisted to ``<directory>/<collection>.json``."""

    def __init__(self, directory: str, collection: str):
        self.directory = directory
        self.collection = collection
        self.path = os.path.join(directory, f"{collection}.json")
        self._lock = asyncio.Lock()
        self.logger = get_logger(f"store.{collection}")
        os.makedirs(directory, exist_ok=True)

    def _read(self) -> List[Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return []
        return data if isinstance(data, list) else []

    def _write(self, documents: List[Dict[str, Any]]):
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{self.collection}-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(documents, handle, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _load(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def _save(self, documents: List[Dict[str, Any]]):
        await asyncio.to_thread(self._write, documents)

    async def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in document:
            raise ValueError("document requires an id")
        record = copy.deepcopy(document)
        record[REVISION_FIELD] = 1
        async with self._lock:
            documents = await self._load()
            documents.append(record)
            await self._save(documents)
        return copy.deepcopy(record)

    async def find(self, query: Optional[Dict[str, Any]] = None,
                   sort: Optional[Dict[str, int]] = None,
                   skip: int = 0, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Filter, sort (1 ascending / -1 descending) and paginate."""
        documents = [doc for doc in await self._load() if matches(doc, query)]

        for field, direction in reversed(list((sort or {}).items())):
            documents.sort(
                key=lambda doc: (_get_path(doc, field) is None, _get_path(doc, field)),
                reverse=direction < 0
            )

        if skip:
            documents = documents[skip:]
        if limit is not None:
            documents = documents[:limit]
        return documents

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for document in await self._load():
            if matches(document, query):
                return document
        return None

    async def find_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        return await self.find_one({"id": record_id})

    async def update(self, record_id: str, updates: Dict[str, Any],
                     expected_revision: Optional[int] = None) -> Dict[str, Any]:
        """Apply ``updates`` (dotted keys allowed) and bump the revision."""
        async with self._lock:
            documents = await self._load()
            for index, document in enumerate(documents):
                if document.get("id") != record_id:
                    continue

                current = document.get(REVISION_FIELD, 0)
                if expected_revision is not None and current != expected_revision:
                    raise RevisionConflictError(record_id, expected_revision, current)

                for key, value in updates.items():
                    if key in ("id", REVISION_FIELD):
                        continue
                    _set_path(document, key, copy.deepcopy(value))
                document[REVISION_FIELD] = current + 1

                documents[index] = document
                await self._save(documents)
                return copy.deepcopy(document)

        raise NotFoundError(f"{self.collection} record {record_id} not found")

    async def delete(self, record_id: str) -> bool:
        async with self._lock:
            documents = await self._load()
            remaining = [doc for doc in documents if doc.get("id") != record_id]
            if len(remaining) == len(documents):
                return False
            await self._save(remaining)
        return True

    async def count(self, query: Optional[Dict[str, Any]] = None) -> int:
        return len(await self.find(query))

    async def search(self, term: str, fields: Iterable[str]) -> List[Dict[str, Any]]:
        """Substring search across ``fields``, ignoring case and accents."""
        needle = normalize_text(term)
        fields = list(fields)
        results = []
        for document in await self._load():
            for field in fields:
                value = _get_path(document, field)
                if value is not None and needle in normalize_text(value):
                    results.append(document)
                    break
        return results
