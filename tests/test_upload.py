from __future__ import annotations

import asyncio

import pytest

from session_capture.models import UploadStatus
from session_capture.store import open_store
from session_capture.upload import create_upload_job, enqueue_upload, record_attempt


def test_upload_job_requires_items() -> None:
    with pytest.raises(ValueError):
        create_upload_job([])
    with pytest.raises(ValueError):
        create_upload_job(["  "])


def test_attempts_track_failures_and_success() -> None:
    job = create_upload_job(["s1", "s2"])
    assert job.status is UploadStatus.PENDING
    assert job.item_refs == ("s1", "s2")

    failed = record_attempt(job, "network unreachable")
    assert failed.status is UploadStatus.FAILED
    assert failed.retries == 1
    assert failed.last_error == "network unreachable"

    done = record_attempt(failed)
    assert done.status is UploadStatus.DONE
    assert done.retries == 1
    assert done.last_error is None


def test_enqueued_jobs_are_persisted() -> None:
    store = open_store(None)

    async def scenario():
        job = await enqueue_upload(store, ["s1"])
        return job, await store.list_upload_jobs(UploadStatus.PENDING)

    job, pending = asyncio.run(scenario())
    assert [item.job_id for item in pending] == [job.job_id]
    assert pending[0].item_refs == ("s1",)
