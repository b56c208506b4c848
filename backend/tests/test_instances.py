"""セッションインスタンスの再構築・single-flight・TTL のテスト。"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from mcp_auth.models.state import AuthInfo, SessionMetadata
from mcp_auth.services.errors import SessionNotFoundError, StoreUnavailableError
from mcp_auth.services.instances import LiveInstance, McpInstanceManager, is_expired
from mcp_auth.services.stores.memory import MemorySessionMetadataStore
from mcp_auth.services.transport import BasicMcpServer, SessionTransport

AUTH = AuthInfo(provider="github", user_id="42", email="octo@example.com", scopes=["read:user"])


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class GatedMetadataStore(MemorySessionMetadataStore):
    """get() をゲートで止め、呼び出し回数を数えるストア。"""

    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.gets = 0
        self.fail = fail

    async def get(self, session_id: str) -> Optional[SessionMetadata]:
        self.gets += 1
        await self.gate.wait()
        if self.fail:
            raise StoreUnavailableError("metadata store down", operation="metadata.get")
        return await super().get(session_id)


@pytest.fixture
def metadata_store() -> MemorySessionMetadataStore:
    return MemorySessionMetadataStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(metadata_store, app_settings, clock) -> McpInstanceManager:
    return McpInstanceManager(metadata_store, app_settings=app_settings, clock=clock)


# -- 生成と再構築 ----------------------------------------------------------


@pytest.mark.asyncio
async def test_create_instance_stores_metadata_first(manager, metadata_store) -> None:
    instance = await manager.create_instance(auth_info=AUTH, metadata={"client": "inspector"})

    assert len(instance.session_id) == 32
    assert manager.is_cached(instance.session_id)
    assert instance.transport.initialized is False
    assert instance.auth_info == AUTH

    stored = await metadata_store.get(instance.session_id)
    assert stored.auth_info == AUTH
    assert stored.metadata == {"client": "inspector"}
    delta = stored.expires_at - stored.created_at
    assert delta == timedelta(seconds=1800)


@pytest.mark.asyncio
async def test_reconstruct_in_another_manager(metadata_store, app_settings) -> None:
    """別プロセス相当のマネージャがメタデータから同じ認証情報で再構築すること。"""
    first = McpInstanceManager(metadata_store, app_settings=app_settings)
    created = await first.create_instance(auth_info=AUTH)

    second = McpInstanceManager(metadata_store, app_settings=app_settings)
    assert second.is_cached(created.session_id) is False

    rebuilt = await second.get_or_recreate_instance(created.session_id)

    assert rebuilt is not created
    assert rebuilt.session_id == created.session_id
    assert rebuilt.auth_info == AUTH
    assert rebuilt.transport.initialized is True
    assert second.is_cached(created.session_id)
    assert second.metrics.get_counter("mcp_session_reconstruct_total", {"result": "success"}) == 1

    reply = await rebuilt.transport.handle_message({"jsonrpc": "2.0", "id": 1, "method": "ping"})
    assert reply == {"jsonrpc": "2.0", "id": 1, "result": {}}


@pytest.mark.asyncio
async def test_cached_instance_is_returned_and_touched(manager, clock) -> None:
    instance = await manager.create_instance()
    clock.now += 30

    again = await manager.get_or_recreate_instance(instance.session_id)

    assert again is instance
    assert instance.last_used == clock.now


@pytest.mark.asyncio
async def test_custom_server_factory(metadata_store, app_settings) -> None:
    manager = McpInstanceManager(
        metadata_store, server_factory=lambda: BasicMcpServer(name="custom"), app_settings=app_settings
    )
    instance = await manager.create_instance()
    assert instance.server.name == "custom"


@pytest.mark.asyncio
async def test_missing_or_expired_metadata(manager, metadata_store) -> None:
    with pytest.raises(SessionNotFoundError) as excinfo:
        await manager.get_or_recreate_instance("never-existed")
    assert excinfo.value.session_id == "never-existed"

    await metadata_store.set(
        "stale",
        SessionMetadata(session_id="stale", expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)),
    )
    with pytest.raises(SessionNotFoundError):
        await manager.get_or_recreate_instance("stale")

    assert manager.get_stats()["cached_instances"] == 0
    assert manager.metrics.get_counter("mcp_session_reconstruct_total", {"result": "not_found"}) == 2


# -- single-flight ---------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_reconstruction_is_single_flight(app_settings) -> None:
    store = GatedMetadataStore()
    writer = McpInstanceManager(store, app_settings=app_settings)
    await writer.store_session_metadata("sess-1", AUTH)
    reader = McpInstanceManager(store, app_settings=app_settings)

    tasks = [asyncio.create_task(reader.get_or_recreate_instance("sess-1")) for _ in range(5)]
    await asyncio.sleep(0)
    assert reader.get_stats()["in_flight_reconstructions"] == 1

    store.gate.set()
    results = await asyncio.gather(*tasks)

    assert store.gets == 1
    assert all(result is results[0] for result in results)
    assert reader.get_stats() == {
        "cached_instances": 1,
        "oldest_instance_age_seconds": pytest.approx(0.0, abs=1.0),
        "in_flight_reconstructions": 0,
    }


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_other_waiters(app_settings) -> None:
    """再構築を始めた呼び出し元がキャンセルされても、他の待機者は結果を受け取ること。"""
    store = GatedMetadataStore()
    await McpInstanceManager(store, app_settings=app_settings).store_session_metadata("sess-1", AUTH)
    manager = McpInstanceManager(store, app_settings=app_settings)

    first = asyncio.create_task(manager.get_or_recreate_instance("sess-1"))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(manager.get_or_recreate_instance("sess-1"))
    await asyncio.sleep(0)

    first.cancel()
    await asyncio.sleep(0)
    store.gate.set()
    instance = await waiter

    assert first.cancelled()
    assert instance.auth_info == AUTH
    assert store.gets == 1
    assert manager.is_cached("sess-1")
    assert manager.get_stats()["in_flight_reconstructions"] == 0


@pytest.mark.asyncio
async def test_store_outage_reaches_every_waiter(app_settings) -> None:
    store = GatedMetadataStore(fail=True)
    manager = McpInstanceManager(store, app_settings=app_settings)

    tasks = [asyncio.create_task(manager.get_or_recreate_instance("sess-1")) for _ in range(3)]
    await asyncio.sleep(0)
    store.gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert store.gets == 1
    assert all(isinstance(result, StoreUnavailableError) for result in results)
    assert manager.is_cached("sess-1") is False
    assert manager.get_stats()["in_flight_reconstructions"] == 0
    assert (
        manager.metrics.get_counter("mcp_session_reconstruct_total", {"result": "store_unavailable"})
        == 1
    )


@pytest.mark.asyncio
async def test_failed_reconstruction_can_be_retried(app_settings) -> None:
    store = GatedMetadataStore(fail=True)
    store.gate.set()
    manager = McpInstanceManager(store, app_settings=app_settings)
    await store.set(
        "sess-1",
        SessionMetadata(session_id="sess-1", expires_at=datetime.now(timezone.utc) + timedelta(minutes=5)),
    )

    with pytest.raises(StoreUnavailableError):
        await manager.get_or_recreate_instance("sess-1")

    store.fail = False
    instance = await manager.get_or_recreate_instance("sess-1")
    assert instance.session_id == "sess-1"
    assert store.gets == 2


# -- TTL と破棄 ------------------------------------------------------------


def test_is_expired_boundary() -> None:
    instance = LiveInstance(
        session_id="s",
        transport=SessionTransport("s", BasicMcpServer()),
        server=BasicMcpServer(),
        created_at=0.0,
        last_used=100.0,
    )
    assert is_expired(instance, 700.0, 600) is False
    assert is_expired(instance, 700.5, 600) is True


@pytest.mark.asyncio
async def test_idle_instance_is_evicted_and_rebuilt(manager, clock) -> None:
    instance = await manager.create_instance(auth_info=AUTH)
    clock.now += 601

    rebuilt = await manager.get_or_recreate_instance(instance.session_id)

    assert rebuilt is not instance
    assert instance.transport.closed is True
    assert instance.server.closed is True
    assert rebuilt.auth_info == AUTH


@pytest.mark.asyncio
async def test_cleanup_expired_instances(manager, clock) -> None:
    old = await manager.create_instance()
    clock.now += 400
    fresh = await manager.create_instance()
    clock.now += 300

    assert await manager.cleanup_expired_instances() == 1
    assert manager.is_cached(old.session_id) is False
    assert manager.is_cached(fresh.session_id) is True
    assert manager.get_stats()["oldest_instance_age_seconds"] == 300.0


@pytest.mark.asyncio
async def test_dispose_keeps_metadata(manager, metadata_store, app_settings) -> None:
    instance = await manager.create_instance(auth_info=AUTH)

    await manager.dispose()

    assert manager.get_stats()["cached_instances"] == 0
    assert instance.transport.closed is True
    assert await metadata_store.get(instance.session_id) is not None

    successor = McpInstanceManager(metadata_store, app_settings=app_settings)
    rebuilt = await successor.get_or_recreate_instance(instance.session_id)
    assert rebuilt.auth_info == AUTH


@pytest.mark.asyncio
async def test_delete_session_removes_everything(manager, metadata_store) -> None:
    instance = await manager.create_instance()

    await manager.delete_session(instance.session_id)

    assert manager.is_cached(instance.session_id) is False
    assert await metadata_store.get(instance.session_id) is None
    with pytest.raises(SessionNotFoundError):
        await manager.get_or_recreate_instance(instance.session_id)


@pytest.mark.asyncio
async def test_cleanup_task_lifecycle(manager) -> None:
    manager.start_cleanup(interval=3600)
    task = manager._cleanup_task
    manager.start_cleanup(interval=3600)
    assert manager._cleanup_task is task

    await manager.stop_cleanup()
    assert task.cancelled()


@pytest.mark.asyncio
async def test_reconstruction_timing_is_recorded(metadata_store, app_settings) -> None:
    await McpInstanceManager(metadata_store, app_settings=app_settings).create_instance(
        session_id="sess-t"
    )
    manager = McpInstanceManager(metadata_store, app_settings=app_settings)

    await manager.get_or_recreate_instance("sess-t")

    assert len(manager.metrics.get_observations("mcp_session_reconstruct_seconds")) == 1
    snapshot = manager.metrics.snapshot()
    assert snapshot["counters"]["mcp_session_reconstruct_total{result=success}"] == 1
    assert snapshot["observations"]["mcp_session_reconstruct_seconds"]["count"] == 1
