from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import select

from database import SessionFactory, SessionLocal, session_scope
from models import Document

logger = logging.getLogger(__name__)


SnapshotListener = Callable[[list["DocumentSnapshot"]], None]
ErrorListener = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    data: dict[str, Any] = field(default_factory=dict)


def _split(path: str) -> list[str]:
    segments = [s for s in path.strip("/").split("/") if s]
    if not segments:
        raise ValueError("Path must not be empty")
    return segments


def doc_path(*segments: str) -> str:
    parts = _split("/".join(segments))
    if len(parts) % 2 != 0:
        raise ValueError(f"Not a document path: {'/'.join(parts)}")
    return "/".join(parts)


def collection_path(*segments: str) -> str:
    parts = _split("/".join(segments))
    if len(parts) % 2 != 1:
        raise ValueError(f"Not a collection path: {'/'.join(parts)}")
    return "/".join(parts)


def _parent(path: str) -> tuple[str, str]:
    segments = _split(doc_path(path))
    return "/".join(segments[:-1]), segments[-1]


@dataclass(eq=False)
class _Listener:
    collection: str
    on_next: SnapshotListener
    on_error: Optional[ErrorListener]
    active: bool = True
    # covers read and delivery, so snapshots arrive in the order they were read
    delivery: threading.RLock = field(default_factory=threading.RLock)


class DocumentStore:
    """Path-addressed JSON documents with live collection listeners.

    Listeners always receive the whole collection, never a diff. The first
    snapshot is delivered from inside ``on_snapshot``.
    """

    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self.session_factory = session_factory
        self._listeners: list[_Listener] = []
        self._lock = threading.Lock()

    def get(self, path: str) -> Optional[DocumentSnapshot]:
        path = doc_path(path)
        with session_scope(self.session_factory) as session:
            doc = session.get(Document, path)
            if doc is None:
                return None
            return DocumentSnapshot(doc.doc_id, dict(doc.data or {}))

    def list(self, path: str) -> list[DocumentSnapshot]:
        path = collection_path(path)
        with session_scope(self.session_factory) as session:
            docs = session.scalars(
                select(Document)
                .where(Document.collection == path)
                .order_by(Document.created_at, Document.doc_id)
            ).all()
            return [DocumentSnapshot(d.doc_id, dict(d.data or {})) for d in docs]

    def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        path = doc_path(path)
        collection, doc_id = _parent(path)
        with session_scope(self.session_factory) as session:
            doc = session.get(Document, path)
            if doc is None:
                doc = Document(
                    path=path, collection=collection, doc_id=doc_id, data=dict(data)
                )
                session.add(doc)
            elif merge:
                doc.data = {**(doc.data or {}), **data}
            else:
                doc.data = dict(data)
        logger.debug(f"docstore_set: path={path} merge={merge}")
        self._notify(collection)

    def delete(self, path: str) -> None:
        path = doc_path(path)
        collection, _doc_id = _parent(path)
        with session_scope(self.session_factory) as session:
            doc = session.get(Document, path)
            if doc is None:
                return
            session.delete(doc)
        logger.debug(f"docstore_delete: path={path}")
        self._notify(collection)

    def on_snapshot(
        self,
        path: str,
        on_next: SnapshotListener,
        on_error: Optional[ErrorListener] = None,
    ) -> Unsubscribe:
        listener = _Listener(collection_path(path), on_next, on_error)
        with self._lock:
            self._listeners.append(listener)
        logger.info(f"docstore_subscribe: collection={listener.collection}")
        self._deliver(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
                    logger.info(
                        f"docstore_unsubscribe: collection={listener.collection}"
                    )
            listener.active = False

        return unsubscribe

    def listener_count(self, path: Optional[str] = None) -> int:
        with self._lock:
            if path is None:
                return len(self._listeners)
            return sum(1 for lst in self._listeners if lst.collection == path)

    def _notify(self, collection: str) -> None:
        with self._lock:
            targets = [lst for lst in self._listeners if lst.collection == collection]
        for listener in targets:
            self._deliver(listener)

    def _deliver(self, listener: _Listener) -> None:
        with listener.delivery:
            if not listener.active:
                return
            try:
                snapshot = self.list(listener.collection)
                listener.on_next(snapshot)
            except Exception as exc:
                self._drop(listener, exc)

    def _drop(self, listener: _Listener, exc: Exception) -> None:
        logger.error(
            f"docstore_listener_failed: collection={listener.collection}",
            exc_info=exc,
        )
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
        listener.active = False
        if listener.on_error is not None:
            listener.on_error(exc)
