"""
Unit tests for the job repository.
"""

import random
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from analysis_queue.config import Settings
from analysis_queue.constants import (
    CANCELED_BY_USER_ERROR,
    DEFAULT_TOTAL_STEPS,
    INITIAL_PROGRESS,
    LEASE_EXPIRED_ERROR,
    JobStatus,
)
from analysis_queue.db import repository as repository_module
from analysis_queue.db.models import Job
from analysis_queue.db.repository import JobRepository, utcnow
from analysis_queue.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    OwnershipError,
    PermissionDeniedError,
    QueueError,
)


async def count_jobs(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Job))
    return result.scalar_one()


def shift_clock(monkeypatch: pytest.MonkeyPatch, seconds: float) -> None:
    """Move the repository's clock forward."""
    base = utcnow()
    monkeypatch.setattr(
        repository_module,
        "utcnow",
        lambda: base + timedelta(seconds=seconds),
    )


class TestEnqueue:
    """Tests for job submission."""

    async def test_enqueue_defaults(self, repo: JobRepository, db_session: AsyncSession):
        job, duplicate = await repo.enqueue("owner-1", "repo-1", "Analyze this")
        await db_session.commit()

        assert duplicate is False
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.locked_by is None
        assert job.lease_until is None
        assert job.current_step == 0
        assert job.total_steps == DEFAULT_TOTAL_STEPS
        assert job.progress == INITIAL_PROGRESS
        assert job.cancel_requested is False
        assert len(job.callback_token) == 32
        assert job.run_at <= utcnow()

    async def test_callback_tokens_are_unique(self, repo: JobRepository, db_session: AsyncSession):
        first, _ = await repo.enqueue("owner-1", "repo-1", "p")
        second, _ = await repo.enqueue("owner-1", "repo-2", "p")
        await db_session.commit()

        assert first.callback_token != second.callback_token

    async def test_dedupe_returns_active_job(self, repo: JobRepository, db_session: AsyncSession):
        """Same key while pending returns the same job and writes nothing."""
        first, duplicate = await repo.enqueue("owner-1", "repo-1", "p", dedupe_key="k1")
        await db_session.commit()
        assert duplicate is False

        second, duplicate = await repo.enqueue("owner-1", "repo-1", "other", dedupe_key="k1")
        await db_session.commit()

        assert duplicate is True
        assert second.id == first.id
        assert await count_jobs(db_session) == 1

    async def test_dedupe_key_released_after_completion(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        first, _ = await repo.enqueue("owner-1", "repo-1", "p", dedupe_key="k1")
        await db_session.commit()

        claimed = await repo.claim("worker-1")
        await repo.complete(claimed.id, "worker-1")
        await db_session.commit()

        second, duplicate = await repo.enqueue("owner-1", "repo-1", "p", dedupe_key="k1")
        await db_session.commit()

        assert duplicate is False
        assert second.id != first.id
        assert await count_jobs(db_session) == 2

    async def test_dedupe_holds_while_leased(self, repo: JobRepository, db_session: AsyncSession):
        first, _ = await repo.enqueue("owner-1", "repo-1", "p", dedupe_key="k1")
        await repo.claim("worker-1")
        await db_session.commit()

        second, duplicate = await repo.enqueue("owner-1", "repo-1", "p", dedupe_key="k1")
        assert duplicate is True
        assert second.id == first.id

    async def test_unique_index_resolves_to_existing(
        self,
        session_factory,
    ):
        """A racing insert that skipped the lookup still resolves to the active job."""
        async with session_factory() as session:
            first, _ = await JobRepository(session).enqueue("o", "t", "p", dedupe_key="race")
            await session.commit()

        async with session_factory() as session:
            repo = JobRepository(session)

            lookup = repo.get_active_by_dedupe_key
            calls = []

            # First lookup misses (as if racing), the post-conflict lookup is real
            async def patched(dedupe_key):
                if not calls:
                    calls.append(dedupe_key)
                    return None
                return await lookup(dedupe_key)

            repo.get_active_by_dedupe_key = patched
            job, duplicate = await repo.enqueue("o", "t", "p", dedupe_key="race")
            await session.commit()

        assert duplicate is True
        assert job.id == first.id

    async def test_insert_conflict_keeps_earlier_work(self, session_factory):
        """Writes made earlier in the same transaction survive a conflicting insert."""
        async with session_factory() as session:
            repo = JobRepository(session)
            held, _ = await repo.enqueue("o", "t", "p", dedupe_key="race")
            doomed, _ = await repo.enqueue("o", "other", "p")
            await session.commit()

        async with session_factory() as session:
            repo = JobRepository(session)
            await repo.cancel(doomed.id, "o")

            lookup = repo.get_active_by_dedupe_key
            calls = []

            async def patched(dedupe_key):
                if not calls:
                    calls.append(dedupe_key)
                    return None
                return await lookup(dedupe_key)

            repo.get_active_by_dedupe_key = patched
            job, duplicate = await repo.enqueue("o", "t", "p", dedupe_key="race")
            await session.commit()

        assert duplicate is True
        assert job.id == held.id

        async with session_factory() as session:
            stored = await JobRepository(session).get_job(doomed.id)
            assert stored.status == JobStatus.CANCELED
            assert await count_jobs(session) == 2


class TestClaim:
    """Tests for claiming."""

    async def test_claim_empty_queue(self, repo: JobRepository):
        assert await repo.claim("worker-1") is None

    async def test_claim_sets_lease(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("owner-1", "repo-1", "prompt")
        await db_session.commit()

        claimed = await repo.claim("worker-1", lease_seconds=60)
        await db_session.commit()

        assert claimed is not None
        assert claimed.id == job.id
        assert claimed.prompt == "prompt"
        assert claimed.callback_token == job.callback_token
        assert claimed.attempts == 0

        stored = await repo.get_job(job.id)
        assert stored.status == JobStatus.CLAIMED
        assert stored.locked_by == "worker-1"
        assert stored.lease_until == claimed.lease_until
        assert timedelta(seconds=55) < stored.lease_until - utcnow() <= timedelta(seconds=60)

    async def test_claim_oldest_first(self, repo: JobRepository, db_session: AsyncSession):
        first, _ = await repo.enqueue("o", "repo-1", "p")
        second, _ = await repo.enqueue("o", "repo-2", "p")
        await db_session.commit()

        assert (await repo.claim("w")).id == first.id
        assert (await repo.claim("w")).id == second.id
        assert await repo.claim("w") is None

    async def test_claim_skips_future_run_at(
        self,
        db_session: AsyncSession,
        test_settings: Settings,
    ):
        repo = JobRepository(db_session, settings=test_settings.model_copy(
            update={"backoff_base_seconds": 60.0}
        ))
        await repo.enqueue("o", "repo-1", "p")
        await db_session.commit()

        claimed = await repo.claim("w")
        await repo.retry_or_fail(claimed.id, "w", "boom")
        await db_session.commit()

        assert await repo.claim("w") is None

    async def test_claim_second_claimer_gets_nothing(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        await repo.enqueue("o", "repo-1", "p")
        await db_session.commit()

        assert await repo.claim("worker-1") is not None
        assert await repo.claim("worker-2") is None


class TestHeartbeat:
    """Tests for lease extension."""

    async def test_heartbeat_extends_lease(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w", lease_seconds=10)
        await db_session.commit()

        job = await repo.heartbeat(
            claimed.id,
            "w",
            sub_state=JobStatus.CLONING,
            progress="Cloning repository",
            current_step=1,
            lease_seconds=120,
        )
        await db_session.commit()

        assert job.status == JobStatus.CLONING
        assert job.progress == "Cloning repository"
        assert job.current_step == 1
        assert job.attempts == 0
        assert job.lease_until > claimed.lease_until
        assert job.cancel_requested is False

    async def test_heartbeat_wrong_worker(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await db_session.commit()

        with pytest.raises(OwnershipError):
            await repo.heartbeat(claimed.id, "intruder")

    async def test_heartbeat_unknown_job(self, repo: JobRepository):
        with pytest.raises(JobNotFoundError):
            await repo.heartbeat(uuid4(), "w")

    async def test_heartbeat_rejects_terminal_sub_state(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await db_session.commit()

        with pytest.raises(InvalidTransitionError):
            await repo.heartbeat(claimed.id, "w", sub_state=JobStatus.COMPLETED)

    async def test_heartbeat_after_completion(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await repo.complete(claimed.id, "w")
        await db_session.commit()

        with pytest.raises(OwnershipError):
            await repo.heartbeat(claimed.id, "w")


class TestComplete:
    """Tests for completion."""

    async def test_complete_stores_result(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await repo.heartbeat(claimed.id, "w", sub_state=JobStatus.GATHERING)

        job = await repo.complete(
            claimed.id,
            "w",
            result={"documents": ["a.md", "b.md"]},
            result_count=2,
        )
        await db_session.commit()

        assert job.status == JobStatus.COMPLETED
        assert job.result == {"documents": ["a.md", "b.md"]}
        assert job.result_count == 2
        assert job.locked_by is None
        assert job.lease_until is None
        assert job.completed_at is not None

    async def test_complete_is_one_way(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await repo.complete(claimed.id, "w")
        await db_session.commit()

        with pytest.raises(OwnershipError):
            await repo.complete(claimed.id, "w")

    async def test_complete_wrong_worker(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await db_session.commit()

        with pytest.raises(OwnershipError):
            await repo.complete(claimed.id, "other")

        job = await repo.get_job(claimed.id)
        assert job.status == JobStatus.CLAIMED


class TestRetryOrFail:
    """Tests for retry with backoff and dead-lettering."""

    async def test_retries_then_dead(self, db_session: AsyncSession, test_settings: Settings):
        """max_attempts=3 goes pending, pending, dead."""
        repo = JobRepository(db_session, settings=test_settings)
        job, _ = await repo.enqueue("o", "repo-1", "p", max_attempts=3)
        await db_session.commit()

        statuses = []
        for _ in range(3):
            claimed = await repo.claim("w")
            assert claimed is not None
            outcome = await repo.retry_or_fail(claimed.id, "w", "analysis failed")
            await db_session.commit()
            statuses.append((outcome.status, outcome.attempts))

        assert statuses == [("retrying", 1), ("retrying", 2), ("dead", 3)]

        dead = await repo.get_job(job.id)
        assert dead.status == JobStatus.DEAD
        assert dead.attempts == 3
        assert dead.error == "analysis failed"
        assert dead.last_error == "analysis failed"
        assert dead.locked_by is None
        assert dead.lease_until is None
        assert dead.completed_at is not None
        assert await repo.claim("w") is None

    async def test_retry_schedules_backoff(self, db_session: AsyncSession, test_settings: Settings):
        settings = test_settings.model_copy(
            update={"backoff_base_seconds": 5.0, "backoff_jitter_seconds": 5.0}
        )
        repo = JobRepository(db_session, settings=settings, rng=random.Random(7))
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")

        before = utcnow()
        outcome = await repo.retry_or_fail(claimed.id, "w", "boom")
        await db_session.commit()

        assert outcome.status == "retrying"
        assert outcome.attempts == 1
        delay = (outcome.next_run_at - before).total_seconds()
        assert 5.0 <= delay < 10.5

        job = await repo.get_job(claimed.id)
        assert job.status == JobStatus.PENDING
        assert job.run_at == outcome.next_run_at
        assert job.last_error == "boom"
        assert job.locked_by is None
        assert job.lease_until is None

    async def test_retry_wrong_worker(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await db_session.commit()

        with pytest.raises(OwnershipError):
            await repo.retry_or_fail(claimed.id, "other", "boom")

        job = await repo.get_job(claimed.id)
        assert job.attempts == 0


class TestReclaim:
    """Tests for lease-expiry recovery."""

    async def test_reclaims_expired_running_job(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("crashed-worker", lease_seconds=30)
        await repo.heartbeat(claimed.id, "crashed-worker", sub_state=JobStatus.RUNNING, lease_seconds=30)
        await db_session.commit()

        shift_clock(monkeypatch, 31)
        outcome = await repo.reclaim_expired()
        await db_session.commit()

        assert (outcome.reclaimed, outcome.dead, outcome.checked) == (1, 0, 1)

        job = await repo.get_job(claimed.id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.locked_by is None
        assert job.lease_until is None
        assert job.last_error == LEASE_EXPIRED_ERROR

        second = await repo.reclaim_expired()
        await db_session.commit()
        assert (second.reclaimed, second.dead) == (0, 0)
        assert (await repo.get_job(claimed.id)).attempts == 1

    async def test_live_lease_untouched(self, repo: JobRepository, db_session: AsyncSession):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w", lease_seconds=300)
        await db_session.commit()

        outcome = await repo.reclaim_expired()
        assert outcome.reclaimed == 0
        assert (await repo.get_job(claimed.id)).status == JobStatus.CLAIMED

    async def test_reclaim_dead_letters_at_ceiling(
        self,
        db_session: AsyncSession,
        test_settings: Settings,
        monkeypatch: pytest.MonkeyPatch,
    ):
        repo = JobRepository(db_session, settings=test_settings)
        await repo.enqueue("o", "repo-1", "p", max_attempts=2)
        claimed = await repo.claim("w")
        await repo.retry_or_fail(claimed.id, "w", "first failure")
        claimed = await repo.claim("w", lease_seconds=10)
        await db_session.commit()

        shift_clock(monkeypatch, 11)
        outcome = await repo.reclaim_expired()
        await db_session.commit()

        assert outcome.dead == 1
        job = await repo.get_job(claimed.id)
        assert job.status == JobStatus.DEAD
        assert job.attempts == 2
        assert job.error == LEASE_EXPIRED_ERROR

    async def test_reclaimed_worker_loses_ownership(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        monkeypatch: pytest.MonkeyPatch,
    ):
        await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("slow-worker", lease_seconds=10)
        await db_session.commit()

        shift_clock(monkeypatch, 11)
        await repo.reclaim_expired()
        reclaimed = await repo.claim("fast-worker")
        await db_session.commit()
        assert reclaimed.id == claimed.id

        with pytest.raises(OwnershipError):
            await repo.complete(claimed.id, "slow-worker")


class TestCancel:
    """Tests for cancellation."""

    async def test_owner_cancels_pending(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("owner-1", "repo-1", "p")
        await db_session.commit()

        canceled = await repo.cancel(job.id, "owner-1")
        await db_session.commit()

        assert canceled.status == JobStatus.CANCELED
        assert canceled.cancel_requested is True
        assert canceled.error == CANCELED_BY_USER_ERROR
        assert canceled.completed_at is not None
        assert await repo.claim("w") is None

    async def test_cancel_running_releases_lease(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        job, _ = await repo.enqueue("owner-1", "repo-1", "p")
        await repo.claim("w")
        await db_session.commit()

        canceled = await repo.cancel(job.id, "owner-1")
        await db_session.commit()

        assert canceled.locked_by is None
        assert canceled.lease_until is None
        with pytest.raises(OwnershipError):
            await repo.heartbeat(job.id, "w")

    async def test_cancel_other_owner(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("owner-1", "repo-1", "p")
        await db_session.commit()

        with pytest.raises(PermissionDeniedError):
            await repo.cancel(job.id, "owner-2")

    async def test_cancel_terminal(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("owner-1", "repo-1", "p")
        claimed = await repo.claim("w")
        await repo.complete(claimed.id, "w")
        await db_session.commit()

        with pytest.raises(InvalidTransitionError):
            await repo.cancel(job.id, "owner-1")
        with pytest.raises(InvalidTransitionError):
            await repo.request_cancel(job.id)

    async def test_request_cancel_is_observable(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        job, _ = await repo.enqueue("owner-1", "repo-1", "p")
        await repo.claim("w")
        await db_session.commit()

        assert await repo.is_cancel_requested(job.id) is False
        await repo.request_cancel(job.id)
        await db_session.commit()

        assert await repo.is_cancel_requested(job.id) is True
        assert (await repo.get_job(job.id)).status == JobStatus.CANCELED

    async def test_cancel_unknown(self, repo: JobRepository):
        with pytest.raises(JobNotFoundError):
            await repo.cancel(uuid4(), "owner-1")


class TestRegenerateAndResubmit:
    """Tests for regenerate and resubmit."""

    async def test_regenerate_cancels_active(self, repo: JobRepository, db_session: AsyncSession):
        old, _ = await repo.enqueue("o", "repo-1", "p", dedupe_key="target:repo-1")
        await repo.claim("w")
        await db_session.commit()

        outcome = await repo.regenerate("o", "repo-1")
        await db_session.commit()

        assert outcome.duplicate is False
        assert outcome.canceled == [old.id]
        assert outcome.job.id != old.id
        assert outcome.job.status == JobStatus.PENDING
        assert (await repo.get_job(old.id)).status == JobStatus.CANCELED

    async def test_regenerate_cancels_every_active_job(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        jobs = [
            (await repo.enqueue("o", "repo-1", "p", dedupe_key=key))[0]
            for key in ("k1", "k2", "target:repo-1")
        ]
        await db_session.commit()

        outcome = await repo.regenerate("o", "repo-1")
        await db_session.commit()

        assert outcome.duplicate is False
        assert set(outcome.canceled) == {job.id for job in jobs}
        active = await repo.list_active_for_target("repo-1")
        assert [job.id for job in active] == [outcome.job.id]

    async def test_regenerate_refuses_other_owner(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        theirs, _ = await repo.enqueue("owner-1", "repo-1", "p", dedupe_key="target:repo-1")
        await db_session.commit()

        with pytest.raises(PermissionDeniedError):
            await repo.regenerate("owner-2", "repo-1")
        await db_session.rollback()

        assert (await repo.get_job(theirs.id)).status == JobStatus.PENDING
        assert await count_jobs(db_session) == 1

    async def test_resubmit_dead_job(self, db_session: AsyncSession, test_settings: Settings):
        repo = JobRepository(db_session, settings=test_settings)
        dead, _ = await repo.enqueue("o", "repo-1", "p", max_attempts=1, dedupe_key="k")
        claimed = await repo.claim("w")
        await repo.retry_or_fail(claimed.id, "w", "fatal")
        await db_session.commit()

        fresh, duplicate = await repo.resubmit(dead.id, "o")
        await db_session.commit()

        assert duplicate is False
        assert fresh.id != dead.id
        assert fresh.prompt == dead.prompt
        assert fresh.attempts == 0
        assert (await repo.get_job(dead.id)).status == JobStatus.DEAD

    async def test_resubmit_active_job_refused(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        job, _ = await repo.enqueue("o", "repo-1", "p")
        await db_session.commit()

        with pytest.raises(InvalidTransitionError):
            await repo.resubmit(job.id, "o")


class TestReportProgress:
    """Tests for token-authorized progress reports."""

    async def test_progress_with_token(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await db_session.commit()

        updated = await repo.report_progress(
            job.id,
            job.callback_token,
            sub_state=JobStatus.ANALYZING,
            progress="Analyzing",
            current_step=3,
        )
        await db_session.commit()

        assert updated.status == JobStatus.ANALYZING
        assert updated.current_step == 3
        assert updated.lease_until == claimed.lease_until

    async def test_progress_bad_token(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("o", "repo-1", "p")
        await db_session.commit()

        with pytest.raises(PermissionDeniedError):
            await repo.report_progress(job.id, "wrong", progress="x")

    async def test_progress_on_terminal_job(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("o", "repo-1", "p")
        await repo.cancel(job.id, "o")
        await db_session.commit()

        with pytest.raises(InvalidTransitionError):
            await repo.report_progress(job.id, job.callback_token, progress="late")

    async def test_sub_state_needs_lease(self, repo: JobRepository, db_session: AsyncSession):
        job, _ = await repo.enqueue("o", "repo-1", "p")
        await db_session.commit()

        with pytest.raises(InvalidTransitionError):
            await repo.report_progress(job.id, job.callback_token, sub_state=JobStatus.RUNNING)


class TestQueries:
    """Tests for listing and metrics."""

    async def test_list_jobs_paginates(self, repo: JobRepository, db_session: AsyncSession):
        for i in range(5):
            await repo.enqueue("owner-1", f"repo-{i}", "p")
        await repo.enqueue("owner-2", "repo-x", "p")
        await db_session.commit()

        jobs, total = await repo.list_jobs("owner-1", limit=2, offset=0)
        assert total == 5
        assert [j.target_id for j in jobs] == ["repo-4", "repo-3"]

        jobs, total = await repo.list_jobs("owner-1", target_id="repo-2")
        assert total == 1

        assert len(await repo.list_jobs_for_owner("owner-2")) == 1

    async def test_latest_for_target(self, repo: JobRepository, db_session: AsyncSession):
        first, _ = await repo.enqueue("o", "repo-1", "p")
        claimed = await repo.claim("w")
        await repo.complete(claimed.id, "w")
        second, _ = await repo.enqueue("o", "repo-1", "p")
        await db_session.commit()

        assert (await repo.latest_for_target("repo-1")).id == second.id
        latest_done = await repo.latest_for_target("repo-1", status=JobStatus.COMPLETED)
        assert latest_done.id == first.id
        assert await repo.latest_for_target("repo-unknown") is None

        assert (await repo.latest_for_target("repo-1", owner_id="o")).id == second.id
        assert await repo.latest_for_target("repo-1", owner_id="someone-else") is None

    async def test_metrics(self, db_session: AsyncSession, test_settings: Settings):
        repo = JobRepository(db_session, settings=test_settings)
        await repo.enqueue("o", "repo-1", "p")
        await repo.enqueue("o", "repo-2", "p", max_attempts=1)
        await repo.enqueue("o", "repo-3", "p")
        await db_session.commit()

        claimed = await repo.claim("w")
        await repo.complete(claimed.id, "w")
        claimed = await repo.claim("w")
        await repo.retry_or_fail(claimed.id, "w", "fatal")
        await db_session.commit()

        metrics = await repo.get_metrics()

        assert metrics.counts["completed"] == 1
        assert metrics.counts["dead"] == 1
        assert metrics.counts["pending"] == 1
        assert metrics.counts["running"] == 0
        assert metrics.recent_total == 3
        assert metrics.recent_completed == 1
        assert metrics.recent_failed == 1


class TestLeaseInvariant:
    """locked_by and lease_until are set together, exactly while leased."""

    @pytest.mark.parametrize("seed", range(5))
    async def test_random_operation_sequences(
        self,
        db_session: AsyncSession,
        test_settings: Settings,
        monkeypatch: pytest.MonkeyPatch,
        seed: int,
    ):
        rng = random.Random(seed)
        repo = JobRepository(db_session, settings=test_settings, rng=rng)
        workers = ["w1", "w2", "w3"]
        clock_offset = 0.0
        fresh = select(Job).execution_options(populate_existing=True)

        for i in range(4):
            await repo.enqueue("owner", f"repo-{i}", "p", max_attempts=3)
        await db_session.commit()

        for _ in range(60):
            jobs = (await db_session.execute(fresh)).scalars().all()
            job = rng.choice(jobs)
            worker = rng.choice(workers)
            op = rng.choice(
                ["claim", "heartbeat", "complete", "fail", "cancel", "request_cancel", "reclaim", "tick"]
            )

            try:
                if op == "claim":
                    await repo.claim(worker, lease_seconds=20)
                elif op == "heartbeat":
                    await repo.heartbeat(job.id, job.locked_by or worker, sub_state=JobStatus.RUNNING)
                elif op == "complete":
                    await repo.complete(job.id, job.locked_by or worker)
                elif op == "fail":
                    await repo.retry_or_fail(job.id, job.locked_by or worker, "err")
                elif op == "cancel":
                    await repo.cancel(job.id, "owner")
                elif op == "request_cancel":
                    await repo.request_cancel(job.id)
                elif op == "reclaim":
                    await repo.reclaim_expired()
                else:
                    clock_offset += 15
                    shift_clock(monkeypatch, clock_offset)
                await db_session.commit()
            except QueueError:
                await db_session.rollback()

            for stored in (await db_session.execute(fresh)).scalars().all():
                assert (stored.locked_by is None) == (stored.lease_until is None)
                assert (stored.locked_by is not None) == stored.is_leased
                if stored.status == JobStatus.PENDING:
                    assert stored.attempts < stored.max_attempts
