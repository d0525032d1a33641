import pytest
from fakes import SteppingClock

from citation_pipeline.models import JobStatus, PageAnalysis
from citation_pipeline.storage import PipelineStore


def _payload(query: str = "best crew scheduling software") -> dict:
    return {"query_text": query, "platform": "chatgpt"}


def test_claim_batch_is_oldest_first_and_marks_processing(tmp_path) -> None:
    clock = SteppingClock()
    with PipelineStore(tmp_path / "p.sqlite", clock=clock) as store:
        first = store.enqueue_job(_payload("one"), run_id="r1")
        clock.advance(seconds=1)
        second = store.enqueue_job(_payload("two"), run_id="r1")
        clock.advance(seconds=1)
        store.enqueue_job(_payload("three"), run_id="r1")

        claimed = store.claim_batch(2, "worker-a")

        assert [job.id for job in claimed] == [first.id, second.id]
        assert all(job.status == JobStatus.PROCESSING for job in claimed)
        assert all(job.claimed_by == "worker-a" for job in claimed)
        assert all(job.started_at for job in claimed)
        assert store.count_by_status()["pending"] == 1


def test_claimed_job_is_not_claimed_again(tmp_path) -> None:
    with PipelineStore(tmp_path / "p.sqlite") as store:
        store.enqueue_job(_payload(), run_id="r1")
        assert len(store.claim_batch(5, "worker-a")) == 1
        assert store.claim_batch(5, "worker-b") == []


def test_fail_returns_job_to_pending_until_attempts_exhausted(tmp_path) -> None:
    with PipelineStore(tmp_path / "p.sqlite") as store:
        job = store.enqueue_job(_payload(), run_id="r1", max_attempts=3)

        for attempt in range(1, 3):
            store.claim_batch(1, "worker-a")
            failed = store.fail(job.id, f"boom {attempt}")
            assert failed.status == JobStatus.PENDING
            assert failed.attempts == attempt
            assert failed.claimed_by is None
            assert failed.last_error == f"boom {attempt}"

        store.claim_batch(1, "worker-a")
        final = store.fail(job.id, "boom 3")

        assert final.status == JobStatus.FAILED
        assert final.attempts == 3
        assert final.completed_at is not None
        assert store.claim_batch(1, "worker-a") == []
        assert store.get_job(job.id).status == JobStatus.FAILED


def test_reclaim_stale_resets_only_old_processing_jobs(tmp_path) -> None:
    clock = SteppingClock()
    with PipelineStore(tmp_path / "p.sqlite", clock=clock) as store:
        stale = store.enqueue_job(_payload("stale"), run_id="r1")
        store.claim_batch(1, "dead-worker")

        clock.advance(minutes=4)
        fresh = store.enqueue_job(_payload("fresh"), run_id="r1")
        store.claim_batch(1, "live-worker")

        clock.advance(minutes=2)
        assert store.reclaim_stale(300) == 1

        reclaimed = store.get_job(stale.id)
        assert reclaimed.status == JobStatus.PENDING
        assert reclaimed.claimed_by is None
        assert reclaimed.started_at is None
        assert reclaimed.last_error and "reclaimed" in reclaimed.last_error
        assert reclaimed.attempts == 0
        assert store.get_job(fresh.id).status == JobStatus.PROCESSING


def test_complete_stores_result_summary(tmp_path) -> None:
    with PipelineStore(tmp_path / "p.sqlite") as store:
        job = store.enqueue_job(_payload(), run_id="r1")
        store.claim_batch(1, "worker-a")
        done = store.complete(job.id, {"citation_count": 2})

        assert done.status == JobStatus.COMPLETED
        assert done.completed_at is not None
        assert done.result_summary == {"citation_count": 2}


def test_complete_ignores_jobs_that_are_not_processing(tmp_path) -> None:
    with PipelineStore(tmp_path / "p.sqlite") as store:
        job = store.enqueue_job(_payload(), run_id="r1")
        assert store.complete(job.id).status == JobStatus.PENDING


def test_requeue_only_accepts_failed_jobs(tmp_path) -> None:
    with PipelineStore(tmp_path / "p.sqlite") as store:
        job = store.enqueue_job(_payload(), run_id="r1", max_attempts=1)
        with pytest.raises(ValueError):
            store.requeue(job.id)

        store.claim_batch(1, "worker-a")
        store.fail(job.id, "upstream down")
        requeued = store.requeue(job.id)

        assert requeued.status == JobStatus.PENDING
        assert requeued.attempts == 0
        assert requeued.last_error == "upstream down"
        assert len(store.claim_batch(1, "worker-a")) == 1


def test_page_analyses_are_append_only_records(tmp_path) -> None:
    with PipelineStore(tmp_path / "p.sqlite") as store:
        analysis = PageAnalysis(citation_url="https://docs.acme.io/guide", domain="docs.acme.io", job_id=7)
        first_id = store.insert_page_analysis(analysis)
        second_id = store.insert_page_analysis(analysis)

        assert second_id != first_id
        assert store.count_page_analyses() == 2
        restored = store.list_page_analyses(job_id=7)
        assert restored[0] == analysis


def test_meta_counters(tmp_path) -> None:
    db_path = tmp_path / "p.sqlite"
    with PipelineStore(db_path) as store:
        assert store.get_meta("jobs_processed") is None
        assert store.increment_meta("jobs_processed") == 1
        assert store.increment_meta("jobs_processed", 2) == 3

    with PipelineStore(db_path) as store:
        assert store.get_meta("jobs_processed") == "3"
