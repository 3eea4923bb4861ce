"""Dispatch worker tests.

Jobs are claimed, prechecked against the store, submitted through a fake
submitter and written back with a status compare-and-set.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from chain_fakes import ALICE, BOB, RESOLVER_ADDRESS, FakeSubmitter
from pns_sync.core.config import Settings
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide, WrapState
from pns_sync.models.record import Record, RecordType
from pns_sync.models.sync_job import JobStatus, JobType, SyncJob
from pns_sync.services.blockchain.event_decoder import (
    EventMeta,
    NameRegistered,
    NftTransfer,
    WrapRequested,
)
from pns_sync.services.exceptions import (
    SubmissionError,
    SubmissionRejectedError,
    SupersededError,
)
from pns_sync.services.mapping import MappingService
from pns_sync.services.namehash import namehash, record_key_hash
from pns_sync.services.sync.service import SyncService
from pns_sync.workers.dispatch_worker import JobDispatcher, Precheck, run_dispatch_worker

NODE = namehash("alice.poly")
EMAIL = record_key_hash(RecordType.TEXT, "email")
ZERO = "0x" + "00" * 20
BOTH = {ChainSide.PRIMARY, ChainSide.MIRROR}

_log_index = iter(range(10_000))


def meta(chain: ChainSide, block: int = 1) -> EventMeta:
    log_index = next(_log_index)
    return EventMeta(
        chain=chain,
        block_number=block,
        tx_hash="0x" + f"{block:032x}{log_index:032x}",
        log_index=log_index,
        address=RESOLVER_ADDRESS,
    )


async def apply(uow_factory, event, targets=BOTH):
    async with await uow_factory() as uow:
        mutations = await MappingService().apply(uow, event)
        return await SyncService(targets).handle(uow, mutations)


async def register(uow_factory, targets=BOTH):
    return await apply(
        uow_factory,
        NameRegistered(meta(ChainSide.PRIMARY), NODE, "alice", ALICE, RESOLVER_ADDRESS, 2 * 10**9),
        targets,
    )


async def get_job(uow_factory, job_id) -> SyncJob:
    async with await uow_factory() as uow:
        return await uow.sync_jobs.get_by_id(job_id)


def make_dispatcher(
    uow_factory, submitter, target=ChainSide.MIRROR, dispatcher_cls=JobDispatcher, **overrides
):
    options = dict(
        target=target,
        submitter=submitter,
        uow_factory=uow_factory,
        max_retries=3,
        backoff_base=2.0,
        backoff_max=60.0,
        submit_timeout=5.0,
    )
    options.update(overrides)
    return dispatcher_cls(**options)


class SlowSubmitter(FakeSubmitter):
    async def submit(self, job_type, payload):
        await asyncio.sleep(10)
        return await super().submit(job_type, payload)


class BrokenSubmitter(FakeSubmitter):
    async def submit(self, job_type, payload):
        raise KeyError("payload field missing")


@pytest.mark.asyncio
class TestOutcomes:
    async def test_successful_submission_marks_done(self, uow_factory, submitter):
        [job] = await register(uow_factory)

        processed = await make_dispatcher(uow_factory, submitter).run_once()

        assert processed == 1
        assert submitter.submitted == [(JobType.MIRROR_DOMAIN, job.payload)]
        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.DONE
        assert stored.tx_id == "0x" + f"{1:064x}"
        assert stored.superseded is False

    async def test_delayed_older_job_is_superseded(self, uow_factory, submitter):
        """Store holds version 7; a delayed version-5 job is done without sending."""
        await register(uow_factory, targets=set())
        async with await uow_factory() as uow:
            await uow.records.insert_if_absent(
                Record(
                    name_hash=NODE,
                    key_hash=EMAIL,
                    key="email",
                    record_type=RecordType.TEXT,
                    value=b"v7@example.com",
                    source_chain=ChainSide.PRIMARY,
                    version=7,
                    primary_version=7,
                )
            )
            job, _ = await uow.sync_jobs.enqueue(
                SyncJob(
                    dedupe_key="upsert_record:mirror:delayed:5",
                    job_type=JobType.UPSERT_RECORD,
                    target_chain=ChainSide.MIRROR,
                    name_hash=NODE,
                    key_hash=EMAIL,
                    version=5,
                    payload={"value": b"v5@example.com".hex(), "version": 5},
                )
            )

        await make_dispatcher(uow_factory, submitter).run_once()

        assert submitter.submitted == []
        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.DONE
        assert stored.superseded is True
        async with await uow_factory() as uow:
            record = await uow.records.get(NODE, EMAIL)
        assert record.value == b"v7@example.com"
        assert record.version == 7

    async def test_job_already_reflected_on_target_is_superseded(self, uow_factory, submitter):
        [job] = await register(uow_factory)
        async with await uow_factory() as uow:
            await uow.domains.observe_chain_version(NODE, ChainSide.MIRROR, 1)

        await make_dispatcher(uow_factory, submitter).run_once()

        assert submitter.submitted == []
        assert (await get_job(uow_factory, job.id)).superseded is True

    async def test_target_rejecting_stale_version_is_superseded(self, uow_factory, submitter):
        [job] = await register(uow_factory)
        submitter.errors = [SupersededError("execution reverted: StaleVersion")]

        await make_dispatcher(uow_factory, submitter).run_once()

        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.DONE
        assert stored.superseded is True

    async def test_transient_error_schedules_backoff(self, uow_factory, submitter):
        [job] = await register(uow_factory)
        submitter.errors = [SubmissionError("connection reset")]
        dispatcher = make_dispatcher(uow_factory, submitter)
        before = utcnow()

        await dispatcher.run_once()

        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1
        assert stored.last_error == "connection reset"
        assert stored.next_attempt_at >= before + timedelta(seconds=2)
        # Not due yet
        assert await dispatcher.run_once() == 0

    async def test_retry_ceiling_fails_job(self, uow_factory, submitter):
        [job] = await register(uow_factory)
        submitter.errors = [SubmissionError("nonce too low")]

        await make_dispatcher(uow_factory, submitter, max_retries=0).run_once()

        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.FAILED
        assert "Retry ceiling reached" in stored.last_error

    async def test_repeated_transient_errors_reach_ceiling(self, uow_factory, submitter):
        [job] = await register(uow_factory)
        dispatcher = make_dispatcher(uow_factory, submitter, max_retries=2, backoff_base=0.0)

        for attempt in range(3):
            submitter.errors = [SubmissionError("rpc down")]
            await dispatcher.run_once()
            stored = await get_job(uow_factory, job.id)
            if attempt < 2:
                assert stored.status == JobStatus.PENDING
                assert stored.retry_count == attempt + 1

        assert stored.status == JobStatus.FAILED
        assert submitter.submitted == []

    async def test_permanent_error_fails_without_retry(self, uow_factory, submitter):
        [job] = await register(uow_factory)
        submitter.errors = [SubmissionRejectedError("execution reverted: NotAuthorized")]

        await make_dispatcher(uow_factory, submitter).run_once()

        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 0

    async def test_timeout_is_transient(self, uow_factory):
        [job] = await register(uow_factory)

        await make_dispatcher(uow_factory, SlowSubmitter(), submit_timeout=0.01).run_once()

        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.PENDING
        assert "timed out" in stored.last_error

    async def test_unexpected_error_is_retried(self, uow_factory):
        [job] = await register(uow_factory)

        await make_dispatcher(uow_factory, BrokenSubmitter()).run_once()

        stored = await get_job(uow_factory, job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_wrap_moves_only_after_unwrap_confirmed(uow_factory):
    """Wrapper on primary, mirror asks for it: unwrap primary, then wrap mirror."""
    await register(uow_factory)
    await apply(uow_factory, NftTransfer(meta(ChainSide.PRIMARY, 2), NODE, ZERO, ALICE))
    unwrap, wrap = await apply(uow_factory, WrapRequested(meta(ChainSide.MIRROR, 3), NODE, BOB, 1))

    primary_submitter = FakeSubmitter()
    mirror_submitter = FakeSubmitter()
    primary = make_dispatcher(uow_factory, primary_submitter, target=ChainSide.PRIMARY)
    mirror = make_dispatcher(uow_factory, mirror_submitter, postpone_seconds=0.0)

    # Mirror domain snapshot goes out; the wrap job waits on its dependency
    await mirror.run_once()
    assert [t for t, _ in mirror_submitter.submitted] == [JobType.MIRROR_DOMAIN]
    assert (await get_job(uow_factory, wrap.id)).status == JobStatus.PENDING

    await primary.run_once()
    assert primary_submitter.submitted == [(JobType.SET_WRAP_STATE, unwrap.payload)]
    assert (await get_job(uow_factory, unwrap.id)).status == JobStatus.DONE

    # Unwrap sent but the burn is not scanned yet: wrap is postponed
    await mirror.run_once()
    stored = await get_job(uow_factory, wrap.id)
    assert stored.status == JobStatus.PENDING
    assert stored.retry_count == 0
    assert len(mirror_submitter.submitted) == 1

    await apply(uow_factory, NftTransfer(meta(ChainSide.PRIMARY, 4), NODE, ALICE, ZERO))
    await mirror.run_once()

    assert mirror_submitter.submitted[-1] == (JobType.SET_WRAP_STATE, wrap.payload)
    assert (await get_job(uow_factory, wrap.id)).status == JobStatus.DONE


@pytest.mark.asyncio
async def test_precheck_decisions(uow_factory, submitter):
    await register(uow_factory)
    dispatcher = make_dispatcher(uow_factory, submitter)

    def wrap_job(state: WrapState, conflict: bool = False) -> SyncJob:
        payload = {"name_hash": NODE, "state": state.value, "version": 1}
        if conflict:
            payload["conflict"] = True
        return SyncJob(
            dedupe_key=f"wrap:{state.value}:{conflict}",
            job_type=JobType.SET_WRAP_STATE,
            target_chain=ChainSide.MIRROR,
            name_hash=NODE,
            version=1,
            payload=payload,
        )

    async with await uow_factory() as uow:
        # Nobody holds it
        assert await dispatcher.precheck(uow, wrap_job(WrapState.MIRROR)) is Precheck.SUBMIT
        assert await dispatcher.precheck(uow, wrap_job(WrapState.NONE)) is Precheck.SUPERSEDED
        assert (
            await dispatcher.precheck(uow, wrap_job(WrapState.NONE, conflict=True))
            is Precheck.SUBMIT
        )
        await uow.domains.set_wrap_state(NODE, WrapState.NONE, WrapState.PRIMARY)
        assert await dispatcher.precheck(uow, wrap_job(WrapState.MIRROR)) is Precheck.POSTPONE


class SettlingDispatcher(JobDispatcher):
    """Dispatcher that signals once a batch has been processed and saved."""

    def __init__(self, **options):
        super().__init__(**options)
        self.batch_saved = asyncio.Event()

    async def run_once(self) -> int:
        processed = await super().run_once()
        if processed:
            self.batch_saved.set()
        return processed


@pytest.mark.asyncio
async def test_dispatch_worker_recovers_orphans_and_runs(session, uow_factory, submitter):
    [job] = await register(uow_factory)
    async with await uow_factory() as uow:
        # Claimed by a dispatcher that then crashed
        await uow.sync_jobs.claim_batch(ChainSide.MIRROR)

    settings = Settings(
        DISPATCH_POLL_INTERVAL_SECONDS=0.01,
        JOB_IN_FLIGHT_TIMEOUT_SECONDS=-1,
        RECONCILE_INTERVAL_SECONDS=3600,
    )
    session_factory = async_sessionmaker(bind=session.bind, expire_on_commit=False)
    dispatcher = make_dispatcher(uow_factory, submitter, dispatcher_cls=SettlingDispatcher)

    task = asyncio.create_task(
        run_dispatch_worker(session_factory, settings, ChainSide.MIRROR, dispatcher=dispatcher)
    )
    await asyncio.wait_for(submitter.submitted_event.wait(), timeout=5)
    await asyncio.wait_for(dispatcher.batch_saved.wait(), timeout=5)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert [t for t, _ in submitter.submitted] == [JobType.MIRROR_DOMAIN]
    assert (await get_job(uow_factory, job.id)).status == JobStatus.DONE
