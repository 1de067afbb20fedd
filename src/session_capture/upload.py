"""Upload job contract for an external uploader."""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Protocol

from .models import UploadJob, UploadStatus, new_id, wall_time
from .store import PersistentStore


class ArchiveUploader(Protocol):
    """Implemented outside this package; transfers an exported archive."""

    async def upload(self, job: UploadJob, archive: bytes) -> None:
        ...


def create_upload_job(item_refs: Iterable[str]) -> UploadJob:
    refs = tuple(str(item) for item in item_refs if str(item).strip())
    if not refs:
        raise ValueError("An upload job needs at least one item reference")
    return UploadJob(job_id=new_id(), item_refs=refs, created_at=wall_time())


def record_attempt(job: UploadJob, error: str | None = None) -> UploadJob:
    """Return *job* updated with the outcome of one upload attempt."""

    if error is None:
        return replace(job, status=UploadStatus.DONE, last_error=None)
    return replace(job, status=UploadStatus.FAILED, retries=job.retries + 1, last_error=error)


async def enqueue_upload(store: PersistentStore, item_refs: Iterable[str]) -> UploadJob:
    job = create_upload_job(item_refs)
    await store.save_upload_job(job)
    return job


__all__ = ["ArchiveUploader", "create_upload_job", "enqueue_upload", "record_attempt"]
