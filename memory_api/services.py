from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import Settings
from .dedup import DedupGuard
from .dispatcher import MemoryDispatcher
from .job_status import JobStatusFacade
from .jobs.base import JobBackend
from .jobs.factory import build_job_backend
from .jobs.processor import MemoryProcessor
from .models import BackendMode, utcnow
from .providers.base import CompletionClient
from .providers.factory import get_summary_client
from .retrieval import MemoryRetriever
from .store import Directory, HttpMemoryStore, InMemoryMemoryStore, MemoryStore
from .summarizer import Summarizer


@dataclass
class Services:
    settings: Settings
    store: MemoryStore
    directory: Directory
    summarizer: Summarizer
    backend: Optional[JobBackend]
    dispatcher: MemoryDispatcher
    retriever: MemoryRetriever
    job_status: JobStatusFacade

    async def start(self) -> None:
        if self.backend is not None:
            await self.backend.start()

    async def stop(self) -> None:
        if self.backend is not None:
            await self.backend.stop()


def build_store(settings: Settings, clock: Callable[[], datetime] = utcnow):
    if settings.store_url:
        return HttpMemoryStore(settings.store_url, timeout=settings.store_timeout_seconds)
    return InMemoryMemoryStore(clock=clock)


def build_services(
    settings: Settings,
    *,
    store: Optional[MemoryStore] = None,
    directory: Optional[Directory] = None,
    client: Optional[CompletionClient] = None,
    backend: Optional[JobBackend] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Wire the pipeline. Explicit arguments override what settings would build."""
    store = store or build_store(settings, clock)
    if directory is None:
        if not isinstance(store, Directory):
            raise ValueError("a directory is required when the store does not provide one")
        directory = store
    summarizer = Summarizer(
        client or get_summary_client(timeout=settings.summary_timeout_seconds),
        timeout=settings.summary_timeout_seconds,
    )
    processor = MemoryProcessor(summarizer, store, directory)
    if backend is None:
        backend = build_job_backend(settings, processor)
    mode = settings.backend_mode
    if mode == BackendMode.QUEUED and backend is None:
        mode = BackendMode.DIRECT
    guard = DedupGuard(
        store,
        clock=clock,
        lookup_window=timedelta(minutes=settings.dedup_lookup_minutes),
        duplicate_window_minutes=settings.dedup_duplicate_minutes,
    )
    dispatcher = MemoryDispatcher(
        mode=mode,
        guard=guard,
        processor=processor,
        directory=directory,
        backend=backend,
        clock=clock,
    )
    return Services(
        settings=settings,
        store=store,
        directory=directory,
        summarizer=summarizer,
        backend=backend,
        dispatcher=dispatcher,
        retriever=MemoryRetriever(
            store,
            default_limit=settings.retrieval_default_limit,
            max_limit=settings.retrieval_max_limit,
        ),
        job_status=JobStatusFacade(backend),
    )
