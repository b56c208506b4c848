"""プロトコルセッションのライブインスタンス管理と再構築。"""

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..config import Settings, settings
from ..models.state import AuthInfo, SessionMetadata
from .errors import SessionNotFoundError, StoreUnavailableError
from .metrics import MetricsRecorder
from .stores.base import SessionMetadataStore
from .transport import BasicMcpServer, McpServer, ServerFactory, SessionTransport, TransportOptions

logger = logging.getLogger(__name__)


@dataclass
class LiveInstance:
    """プロセス内でのみ保持するセッション実体（永続化しない）。"""

    session_id: str
    transport: SessionTransport
    server: McpServer
    created_at: float
    last_used: float

    @property
    def auth_info(self) -> Optional[AuthInfo]:
        return self.transport.auth_info


def is_expired(instance: LiveInstance, now: float, ttl_seconds: float) -> bool:
    """最終利用から ttl_seconds を超えたかを返す。"""
    return now - instance.last_used > ttl_seconds


class McpInstanceManager:
    """ライブインスタンスのキャッシュとメタデータからの再構築を担う。

    - キャッシュはプロセスローカル。メタデータストアのみが共有状態。
    - 同一 session_id の初回再構築は in-flight Future で 1 回に集約する。
    - dispose() はキャッシュのみを破棄し、メタデータには触れない。
    """

    def __init__(
        self,
        metadata_store: SessionMetadataStore,
        server_factory: ServerFactory = BasicMcpServer,
        app_settings: Optional[Settings] = None,
        *,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._metadata = metadata_store
        self._server_factory = server_factory
        self._settings = app_settings or settings
        self.metrics = metrics or MetricsRecorder()
        self._clock = clock
        self._instances: Dict[str, LiveInstance] = {}
        self._in_flight: Dict[str, "asyncio.Task[LiveInstance]"] = {}
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def metadata_store(self) -> SessionMetadataStore:
        return self._metadata

    @property
    def instance_ttl_seconds(self) -> int:
        return self._settings.instance_ttl_seconds

    # -- メタデータ ------------------------------------------------------

    async def store_session_metadata(
        self,
        session_id: str,
        auth_info: Optional[AuthInfo] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SessionMetadata:
        """created_at=now, expires_at=now+TTL でメタデータを保存する。"""
        now = datetime.now(timezone.utc)
        record = SessionMetadata(
            session_id=session_id,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.session_metadata_ttl_seconds),
            auth_info=auth_info,
            metadata=metadata or {},
        )
        await self._metadata.set(session_id, record)
        logger.debug("セッションメタデータを保存しました: %s", session_id[:8])
        return record

    async def get_session_metadata(self, session_id: str) -> Optional[SessionMetadata]:
        metadata = await self._metadata.get(session_id)
        if metadata is None or metadata.is_expired():
            return None
        return metadata

    # -- キャッシュ判定 --------------------------------------------------

    def is_cached(self, session_id: str) -> bool:
        """session_id のライブインスタンスがキャッシュにあるか。"""
        return session_id in self._instances

    def is_expired(self, instance: LiveInstance, now: Optional[float] = None) -> bool:
        """インスタンスのアイドル TTL 超過を判定する。"""
        return is_expired(
            instance, self._clock() if now is None else now, self.instance_ttl_seconds
        )

    def get_cached(self, session_id: str) -> Optional[LiveInstance]:
        return self._instances.get(session_id)

    # -- 生成・再構築 ----------------------------------------------------

    def _build_instance(
        self,
        session_id: str,
        options: Optional[TransportOptions],
        auth_info: Optional[AuthInfo],
    ) -> LiveInstance:
        server = self._server_factory()
        transport = SessionTransport(
            session_id,
            server,
            options or TransportOptions.from_settings(self._settings),
            auth_info=auth_info,
        )
        now = self._clock()
        return LiveInstance(
            session_id=session_id,
            transport=transport,
            server=server,
            created_at=now,
            last_used=now,
        )

    async def create_instance(
        self,
        session_id: Optional[str] = None,
        auth_info: Optional[AuthInfo] = None,
        options: Optional[TransportOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LiveInstance:
        """新規セッション: メタデータを保存してからキャッシュに登録する。"""
        session_id = session_id or uuid.uuid4().hex
        await self.store_session_metadata(session_id, auth_info, metadata)
        instance = self._build_instance(session_id, options, auth_info)
        self._instances[session_id] = instance
        self.metrics.increment("mcp_session_created_total")
        logger.info("新規セッションを作成しました: %s", session_id[:8])
        return instance

    async def get_or_recreate_instance(
        self, session_id: str, options: Optional[TransportOptions] = None
    ) -> LiveInstance:
        """キャッシュを返すか、メタデータから再構築する。

        Raises:
            SessionNotFoundError: メタデータが存在しないか期限切れ。
            StoreUnavailableError: メタデータストアに到達できない。
        """
        cached = self._instances.get(session_id)
        if cached is not None:
            if not self.is_expired(cached):
                cached.last_used = self._clock()
                return cached
            await self._evict(session_id)

        task = self._in_flight.get(session_id)
        if task is None:
            # 再構築は独立したタスクで行い、呼び出し元のキャンセルから切り離す
            task = asyncio.ensure_future(self._reconstruct(session_id, options))
            self._in_flight[session_id] = task
            task.add_done_callback(functools.partial(self._reconstruction_done, session_id))
        return await asyncio.shield(task)

    def _reconstruction_done(self, session_id: str, task: "asyncio.Task[LiveInstance]") -> None:
        if self._in_flight.get(session_id) is task:
            del self._in_flight[session_id]
        if not task.cancelled():
            # 待機者が全員キャンセルされた場合の未回収警告を防ぐ
            task.exception()

    async def _reconstruct(
        self, session_id: str, options: Optional[TransportOptions]
    ) -> LiveInstance:
        started = time.perf_counter()
        try:
            metadata = await self._metadata.get(session_id)
        except StoreUnavailableError:
            self.metrics.increment("mcp_session_reconstruct_total", {"result": "store_unavailable"})
            logger.error("メタデータストアに到達できないため再構築できません: %s", session_id[:8])
            raise

        if metadata is None or metadata.is_expired():
            self.metrics.increment("mcp_session_reconstruct_total", {"result": "not_found"})
            logger.warning("セッションメタデータが見つかりません: %s", session_id[:8])
            raise SessionNotFoundError(session_id)

        instance = self._build_instance(session_id, options, metadata.auth_info)
        instance.transport.mark_initialized()
        self._instances[session_id] = instance
        self.metrics.increment("mcp_session_reconstruct_total", {"result": "success"})
        self.metrics.observe("mcp_session_reconstruct_seconds", time.perf_counter() - started)
        logger.info(
            "セッションを再構築しました: %s (provider=%s)",
            session_id[:8],
            metadata.auth_info.provider if metadata.auth_info else "-",
        )
        return instance

    # -- 破棄 ------------------------------------------------------------

    async def _evict(self, session_id: str) -> None:
        instance = self._instances.pop(session_id, None)
        if instance is not None:
            await instance.transport.close()

    async def delete_session(self, session_id: str) -> None:
        """明示的なセッション終了。キャッシュとメタデータの両方を削除する。"""
        await self._evict(session_id)
        await self._metadata.delete(session_id)
        logger.info("セッションを終了しました: %s", session_id[:8])

    async def cleanup_expired_instances(self) -> int:
        """アイドル TTL を超えたインスタンスをキャッシュから外す。"""
        now = self._clock()
        expired = [sid for sid, inst in self._instances.items() if self.is_expired(inst, now)]
        for session_id in expired:
            await self._evict(session_id)
        if expired:
            logger.info("期限切れインスタンスを %d 件削除しました", len(expired))
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        oldest = min((inst.created_at for inst in self._instances.values()), default=None)
        return {
            "cached_instances": len(self._instances),
            "oldest_instance_age_seconds": round(now - oldest, 3) if oldest is not None else 0.0,
            "in_flight_reconstructions": len(self._in_flight),
        }

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired_instances()
            except Exception:
                logger.exception("インスタンスの定期クリーンアップに失敗しました")

    def start_cleanup(self, interval: Optional[float] = None) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        interval = interval or self._settings.cleanup_interval_seconds
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def dispose(self) -> None:
        """キャッシュのみ破棄する。メタデータは他プロセスの再構築用に残す。"""
        await self.stop_cleanup()
        for task in list(self._in_flight.values()):
            task.cancel()
        for session_id in list(self._instances):
            await self._evict(session_id)
        logger.info("インスタンスキャッシュを破棄しました")
