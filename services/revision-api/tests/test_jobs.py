import asyncio
import threading
from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from conftest import StubImageService
from revision.config import AIConfig
from revision.editing.jobs import JobNotFoundError, JobRecord, JobStatus, JobStore, JobStoreError, JobType
from revision.editing.markers.converter import Marker
from revision.editing.pipeline.context import ProcessingContext
from revision.editing.pipeline.orchestrator import AIProcessingOrchestrator
from revision.editing.pipeline.results import ProcessingStage
from revision.processing import annotated_job, new_job, run_annotated_job, run_job, submit_job


def record(job_id="job_1", user_id="u1", **kw):
    return JobRecord(id=job_id, user_id=user_id, image_id="img", prompt="remove", **kw)


# --- store ---

def test_create_and_get(store):
    store.create_job(record())
    job = store.get_job("u1", "job_1")
    assert job.status == JobStatus.PENDING
    assert job.type == JobType.OBJECT_REMOVAL
    assert store.job_path("u1", "job_1").exists()


def test_create_twice_fails(store):
    store.create_job(record())
    with pytest.raises(JobStoreError):
        store.create_job(record())


def test_missing_job(store):
    with pytest.raises(JobNotFoundError):
        store.get_job("u1", "nope")
    with pytest.raises(JobNotFoundError):
        store.update_job(record("nope"))
    with pytest.raises(JobNotFoundError):
        store.delete_job("u1", "nope")


def test_list_is_newest_first_and_per_user(store):
    now = datetime.now()
    store.create_job(record("old", created_at=now - timedelta(minutes=5)))
    store.create_job(record("new", created_at=now))
    store.create_job(record("other", user_id="u2"))
    assert [j.id for j in store.list_user_jobs("u1")] == ["new", "old"]
    assert [j.id for j in store.list_user_jobs("u2")] == ["other"]
    assert store.list_user_jobs("nobody") == []


def test_update_round_trips_status(store):
    job = store.create_job(record())
    store.update_job(job.mark_processing())
    done = store.get_job("u1", "job_1").mark_completed("job_1.png", 1200, {"markers_count": 2})
    store.update_job(done)
    job = store.get_job("u1", "job_1")
    assert job.status == JobStatus.COMPLETED
    assert job.result == "job_1.png"
    assert job.processing_time_ms == 1200
    assert job.metadata["markers_count"] == 2
    assert job.updated_at >= job.created_at


def test_delete_removes_artifacts(store):
    store.create_job(record())
    artifact = store.save_artifact("u1", "job_1", b"png")
    store.delete_job("u1", "job_1")
    assert not artifact.exists()
    assert store.list_user_jobs("u1") == []


def test_corrupt_document(store):
    store.create_job(record())
    store.job_path("u1", "job_1").write_text("{not json")
    with pytest.raises(JobStoreError):
        store.get_job("u1", "job_1")


def test_mark_failed_keeps_details():
    job = record().mark_failed("quota", {"kind": "quota"})
    assert job.status == JobStatus.FAILED
    assert job.error_message == "quota"
    assert job.metadata["error"] == {"kind": "quota"}
    assert job.status.is_final


def test_watch_job_follows_updates_until_final(store):
    job = store.create_job(record())

    async def scenario():
        seen = []

        async def watch():
            async for j in store.watch_job("u1", "job_1"):
                seen.append(j.status)

        watcher = asyncio.create_task(watch())
        await asyncio.sleep(0.01)
        store.update_job(job.mark_processing())
        await asyncio.sleep(0.01)
        # writes from another thread still reach the watcher
        t = threading.Thread(target=store.update_job, args=(job.mark_completed("r.png", 5),))
        t.start()
        t.join()
        await asyncio.wait_for(watcher, timeout=1.0)
        return seen

    seen = asyncio.run(scenario())
    assert seen == [JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED]
    assert store._watchers == []


def test_watch_user_jobs_emits_lists(store):
    async def scenario():
        updates = []
        stream = store.watch_user_jobs("u1")
        updates.append(await stream.__anext__())
        store.create_job(record("a"))
        updates.append(await asyncio.wait_for(stream.__anext__(), timeout=1.0))
        store.create_job(record("b", user_id="u2"))
        store.create_job(record("c"))
        updates.append(await asyncio.wait_for(stream.__anext__(), timeout=1.0))
        await stream.aclose()
        return updates

    updates = asyncio.run(scenario())
    assert [len(u) for u in updates] == [0, 1, 2]


# --- processing ---

@pytest.fixture
def retrying_config(tmp_path):
    return AIConfig(max_retries=2, retry_base_delay=0.001, request_timeout=5.0, data_dir=tmp_path)


def test_run_job_completes_and_writes_artifact(orchestrator, store, service, image):
    job = store.create_job(new_job("u1", "img-1", "remove the bin"))
    context = ProcessingContext(markers=(Marker(id="m", x=0.5, y=0.5),))
    settled = asyncio.run(run_job(orchestrator, store, job, image, context))

    assert settled.status == JobStatus.COMPLETED
    assert settled.result == f"{job.id}.png"
    assert (store.job_dir("u1") / settled.result).read_bytes() == service.result
    assert settled.metadata["enhanced_prompt"] == service.editing_prompt
    assert settled.processing_time_ms >= 0
    assert store.get_job("u1", job.id).status == JobStatus.COMPLETED
    assert not orchestrator.is_running(job.id)


def test_run_job_records_failure(config, store, image):
    service = StubImageService(edit_error=Exception("403 Forbidden"))
    orchestrator = AIProcessingOrchestrator(service, config)
    job = store.create_job(new_job("u1", "img", "remove"))
    settled = asyncio.run(run_job(orchestrator, store, job, image, ProcessingContext()))
    assert settled.status == JobStatus.FAILED
    assert "access denied" in settled.error_message
    assert settled.metadata["error"]["kind"] == "permission"


def test_run_job_retries_transient_failures(retrying_config, store, image):
    service = StubImageService()
    failures = [ConnectionError("connection reset")]
    original = service.process_image_with_ai

    async def flaky(*args, **kwargs):
        if failures:
            service.calls["edit"] += 1
            raise failures.pop()
        return await original(*args, **kwargs)

    service.process_image_with_ai = flaky
    orchestrator = AIProcessingOrchestrator(service, retrying_config)
    job = store.create_job(new_job("u1", "img", "remove"))
    settled = asyncio.run(run_job(orchestrator, store, job, image, ProcessingContext()))
    assert settled.status == JobStatus.COMPLETED
    assert service.calls["edit"] == 2


def test_run_job_does_not_retry_validation(retrying_config, store):
    service = StubImageService()
    orchestrator = AIProcessingOrchestrator(service, retrying_config)
    job = store.create_job(new_job("u1", "img", "remove"))
    settled = asyncio.run(run_job(orchestrator, store, job, b"", ProcessingContext()))
    assert settled.status == JobStatus.FAILED
    assert service.total_calls == 0


def test_submitted_job_can_be_cancelled(config, store, image):
    service = StubImageService(delay=5.0)
    orchestrator = AIProcessingOrchestrator(service, config)

    async def scenario():
        job = store.create_job(new_job("u1", "img", "remove"))
        task = submit_job(orchestrator, store, job, image, ProcessingContext())
        assert orchestrator.is_running(job.id)
        await asyncio.sleep(0.05)
        await orchestrator.cancel_processing(job.id)
        return await asyncio.wait_for(task, timeout=1.0)

    settled = asyncio.run(scenario())
    assert settled.status == JobStatus.CANCELLED
    assert settled.error_message == "Cancelled by user"


def test_annotated_job(orchestrator, store, service, annotated):
    job = store.create_job(annotated_job("u1", "img", annotated))
    assert "2 object(s)" in job.prompt
    settled = asyncio.run(run_annotated_job(orchestrator, store, job, annotated))
    assert settled.status == JobStatus.COMPLETED
    assert settled.metadata["markers_count"] == 2


def test_progress_stays_open_while_retrying(retrying_config, store, image):
    service = StubImageService()
    failures = [ConnectionError("connection reset")]
    original = service.process_image_with_ai

    async def flaky(*args, **kwargs):
        if failures:
            raise failures.pop()
        return await original(*args, **kwargs)

    service.process_image_with_ai = flaky
    orchestrator = AIProcessingOrchestrator(service, retrying_config)

    async def scenario():
        job = store.create_job(new_job("u1", "img", "remove"))
        task = submit_job(orchestrator, store, job, image, ProcessingContext())
        stages = [u.stage async for u in orchestrator.watch_progress(job.id)]
        return stages, await task

    stages, settled = asyncio.run(scenario())
    assert settled.status == JobStatus.COMPLETED
    assert ProcessingStage.FAILED not in stages
    assert stages[-1] == ProcessingStage.COMPLETED


def test_progress_fails_once_when_retries_run_out(retrying_config, store, image):
    service = StubImageService(edit_error=ConnectionError("connection reset"))
    orchestrator = AIProcessingOrchestrator(service, retrying_config)

    async def scenario():
        job = store.create_job(new_job("u1", "img", "remove"))
        task = submit_job(orchestrator, store, job, image, ProcessingContext())
        stages = [u.stage async for u in orchestrator.watch_progress(job.id)]
        return stages, await task

    stages, settled = asyncio.run(scenario())
    assert settled.status == JobStatus.FAILED
    assert service.calls["edit"] == 3
    assert stages[-1] == ProcessingStage.FAILED
    assert stages.count(ProcessingStage.FAILED) == 1


def test_run_job_fails_when_result_cannot_be_stored(orchestrator, store, image, monkeypatch):
    def disk_full(*args, **kwargs):
        raise JobStoreError("disk full")

    monkeypatch.setattr(store, "save_artifact", disk_full)
    job = store.create_job(new_job("u1", "img", "remove"))
    settled = asyncio.run(run_job(orchestrator, store, job, image, ProcessingContext()))
    assert settled.status == JobStatus.FAILED
    assert "disk full" in settled.error_message
    assert store.get_job("u1", job.id).status == JobStatus.FAILED
    assert not orchestrator.is_running(job.id)


@pytest.mark.parametrize("bad_id", ["../../escaped", "a/b", ".hidden", ""])
def test_ids_cannot_leave_store_root(store, bad_id):
    with pytest.raises(ValidationError):
        record(user_id=bad_id)
    with pytest.raises(ValidationError):
        record(job_id=bad_id)
    with pytest.raises(JobStoreError):
        store.get_job(bad_id, "job_1")
    with pytest.raises(JobStoreError):
        store.get_job("u1", bad_id)
    with pytest.raises(JobStoreError):
        store.create_job(JobRecord.model_construct(id="job_1", user_id=bad_id, image_id="img", prompt="remove"))
    assert not (store.root.parent / "escaped").exists()
    assert not store.root.exists()
