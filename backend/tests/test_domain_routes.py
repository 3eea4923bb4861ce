"""Integration tests for the read-only API.

- GET /api/domains/{identifier} and /records
- GET /api/domains?owner=, /expiring, /expired
- GET /api/indexer/status and /stats
- GET /health
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker

from chain_fakes import ALICE, BOB
from pns_sync.app import app
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide, Domain
from pns_sync.models.record import Record, RecordType
from pns_sync.models.sync_job import JobStatus, JobType, SyncJob
from pns_sync.services.namehash import namehash, record_key_hash
from pns_sync.services.scanner import MIRROR_GROUP, PRIMARY_GROUP

ALICE_NODE = namehash("alice.poly")
BOB_NODE = namehash("bob.poly")
OLD_NODE = namehash("old.poly")
FAR_FUTURE = 4_000_000_000


@pytest_asyncio.fixture
async def test_client(session, uow_factory):
    """Provide AsyncClient for testing API endpoints with database access."""
    app.state.uow_factory = uow_factory
    app.state.session_factory = async_sessionmaker(bind=session.bind, expire_on_commit=False)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def indexed(uow_factory):
    """Three domains, one expired, and a few records on alice.poly."""
    async with await uow_factory() as uow:
        await uow.domains.insert_if_absent(
            Domain(
                name_hash=ALICE_NODE,
                label="alice",
                owner_primary=ALICE,
                expiration=FAR_FUTURE,
                version=3,
                primary_version=3,
                mirror_version=2,
            )
        )
        await uow.domains.insert_if_absent(
            Domain(
                name_hash=BOB_NODE,
                label="bob",
                owner_primary=BOB,
                owner_mirror=ALICE,
                expiration=FAR_FUTURE - 100,
                version=1,
            )
        )
        await uow.domains.insert_if_absent(
            Domain(name_hash=OLD_NODE, label="old", owner_primary=ALICE, expiration=1_000)
        )
        await uow.domains.mark_expired(2_000)

        for key, record_type, value, tombstone in (
            ("email", RecordType.TEXT, b"alice@example.com", False),
            ("avatar", RecordType.TEXT, b"", True),
            ("60", RecordType.ADDRESS, bytes.fromhex("a1" * 20), False),
        ):
            await uow.records.insert_if_absent(
                Record(
                    name_hash=ALICE_NODE,
                    key_hash=record_key_hash(record_type, key),
                    key=key,
                    record_type=record_type,
                    value=value,
                    tombstone=tombstone,
                    source_chain=ChainSide.PRIMARY,
                    version=2,
                )
            )


@pytest.mark.asyncio
class TestDomainLookup:
    @pytest.mark.parametrize(
        "identifier", [ALICE_NODE, "0x" + ALICE_NODE[2:].upper(), "alice.poly", "alice", "ALICE"]
    )
    async def test_lookup_by_any_identifier(self, test_client, indexed, identifier):
        response = await test_client.get(f"/api/domains/{identifier}")

        assert response.status_code == 200
        data = response.json()
        assert data["name_hash"] == ALICE_NODE
        assert data["label"] == "alice"
        assert data["owner"] == ALICE
        assert data["wrap_state"] == "none"
        assert data["version"] == 3
        assert data["mirror_version"] == 2
        assert data["expired"] is False

    async def test_unknown_domain_returns_404(self, test_client, indexed):
        response = await test_client.get("/api/domains/nobody.poly")

        assert response.status_code == 404
        assert "nobody.poly" in response.json()["detail"]

    @pytest.mark.parametrize("identifier", ["ab", "-alice.poly", "al_ice"])
    async def test_unregistrable_name_is_rejected(self, test_client, indexed, identifier):
        response = await test_client.get(f"/api/domains/{identifier}")

        assert response.status_code == 422
        assert "Domain name" in response.json()["detail"]

    async def test_records_hide_tombstones_by_default(self, test_client, indexed):
        response = await test_client.get("/api/domains/alice/records")

        assert response.status_code == 200
        records = {r["key"]: r for r in response.json()}
        assert set(records) == {"email", "60"}
        assert records["email"]["value"] == "alice@example.com"
        assert records["60"]["value"] == "0x" + "a1" * 20
        assert records["60"]["record_type"] == RecordType.ADDRESS.value

    async def test_records_include_deleted(self, test_client, indexed):
        response = await test_client.get(
            "/api/domains/alice/records", params={"include_deleted": "true"}
        )

        records = {r["key"]: r for r in response.json()}
        assert records["avatar"]["deleted"] is True
        assert records["avatar"]["version"] == 2

    async def test_records_of_unknown_domain_returns_404(self, test_client, indexed):
        response = await test_client.get("/api/domains/nobody/records")
        assert response.status_code == 404


@pytest.mark.asyncio
class TestDomainListings:
    async def test_owner_listing_covers_both_chains(self, test_client, indexed):
        response = await test_client.get("/api/domains", params={"owner": "0x" + ALICE[2:].upper()})

        assert response.status_code == 200
        data = response.json()
        # Newest expiration first; bob.poly is delegated to alice on the mirror
        assert [d["label"] for d in data["domains"]] == ["alice", "bob", "old"]
        assert data["offset"] == 0
        assert data["limit"] == 50

    async def test_owner_listing_paginates(self, test_client, indexed):
        response = await test_client.get(
            "/api/domains", params={"owner": ALICE, "limit": 1, "offset": 1}
        )

        assert [d["label"] for d in response.json()["domains"]] == ["bob"]

    async def test_owner_is_required(self, test_client):
        response = await test_client.get("/api/domains")
        assert response.status_code == 422

    async def test_expired_listing(self, test_client, indexed):
        response = await test_client.get("/api/domains/expired")

        assert response.status_code == 200
        assert [d["label"] for d in response.json()] == ["old"]
        assert response.json()[0]["expired"] is True

    async def test_expiring_listing_excludes_far_future(self, test_client, indexed):
        response = await test_client.get("/api/domains/expiring", params={"within_days": 30})

        assert response.status_code == 200
        assert response.json() == []


@pytest.mark.asyncio
class TestIndexerStatus:
    async def test_no_checkpoints_is_unhealthy(self, test_client):
        response = await test_client.get("/api/indexer/status")

        assert response.status_code == 200
        data = response.json()
        assert data["healthy"] is False
        assert data["chains"] == []

    async def test_recent_tick_is_healthy(self, test_client, uow_factory):
        async with await uow_factory() as uow:
            await uow.checkpoints.ensure(ChainSide.PRIMARY, PRIMARY_GROUP, 1)
            await uow.checkpoints.advance(ChainSide.PRIMARY, PRIMARY_GROUP, 0, 120, 7)

        response = await test_client.get("/api/indexer/status")

        data = response.json()
        assert data["healthy"] is True
        assert data["total_events_processed"] == 7
        [chain] = data["chains"]
        assert chain["chain"] == "primary"
        assert chain["last_processed_block"] == 120
        assert chain["seconds_since_tick"] < 60

    async def test_failed_jobs_make_it_unhealthy(self, test_client, uow_factory):
        async with await uow_factory() as uow:
            await uow.checkpoints.ensure(ChainSide.PRIMARY, PRIMARY_GROUP, 1)
            await uow.checkpoints.advance(ChainSide.PRIMARY, PRIMARY_GROUP, 0, 10, 1)
            job, _ = await uow.sync_jobs.enqueue(
                SyncJob(
                    dedupe_key="mirror_domain:mirror:failed:1",
                    job_type=JobType.MIRROR_DOMAIN,
                    target_chain=ChainSide.MIRROR,
                    name_hash=ALICE_NODE,
                    version=1,
                )
            )
            job.mark_failed("execution reverted")
            await uow.sync_jobs.save_transition(job, JobStatus.PENDING)

        response = await test_client.get("/api/indexer/status")

        data = response.json()
        assert data["healthy"] is False
        assert data["failed_jobs"] == 1
        assert data["pending_jobs"] == 0

    async def test_stats_count_rows(self, test_client, indexed):
        response = await test_client.get("/api/indexer/stats")

        assert response.status_code == 200
        assert response.json() == {"domains": 3, "records": 2, "events_processed": 0}


@pytest.mark.asyncio
async def test_health_check(test_client):
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_tick_age_is_reported(test_client, uow_factory):
    started = utcnow()
    async with await uow_factory() as uow:
        await uow.checkpoints.ensure(ChainSide.MIRROR, MIRROR_GROUP, 1)
        await uow.checkpoints.touch(ChainSide.MIRROR, MIRROR_GROUP)

    response = await test_client.get(
        "/api/indexer/status", params={"max_tick_age_seconds": 3600}
    )

    [chain] = response.json()["chains"]
    assert chain["group"] == MIRROR_GROUP
    assert chain["seconds_since_tick"] <= (utcnow() - started).total_seconds() + 1
