"""Service singletons and dependency injection for the Segmentry API."""

import hmac
import logging
from typing import Optional

import httpx
from fastapi import Header, HTTPException

from api.catalog_store import close_catalog_store, get_catalog_store
from api.job_store import close_job_store, get_job_store
from api.websocket_manager import WebSocketManager
from services.host_rate_limiter import HostAdmissionController
from services.notification_service import NotificationService
from services.playlist import PlaylistCache, PlaylistSynthesizer
from services.probe import ProbeEngine
from services.scheduler import ValidationScheduler
from services.segment_proxy import SegmentProxy
from services.segment_signer import SegmentSigner
from services.segment_store import SegmentStore, get_segment_store, reset_segment_store
from services.segment_validator import SegmentValidator
from services.validation_engine import JobRegistry, ValidationJobEngine
from services.video_status_service import VideoStatusService
from utils.config import load_config

logger = logging.getLogger(__name__)

# WebSocket pools: validation progress keyed by job id, notifications under one key
job_ws_manager = WebSocketManager()
notification_ws_manager = WebSocketManager()


class ServiceContainer:
    """Everything the routes need, wired from one config dict."""

    def __init__(self, config: dict):
        self.config = config
        self.catalog = None
        self.job_store = None
        self.notifications: Optional[NotificationService] = None
        self.admission: Optional[HostAdmissionController] = None
        self.probe_engine: Optional[ProbeEngine] = None
        self.store: Optional[SegmentStore] = None
        self.validator: Optional[SegmentValidator] = None
        self.registry = JobRegistry()
        self.engine: Optional[ValidationJobEngine] = None
        self.signer: Optional[SegmentSigner] = None
        self.playlists: Optional[PlaylistSynthesizer] = None
        self.proxy: Optional[SegmentProxy] = None
        self.status_service: Optional[VideoStatusService] = None
        self.scheduler: Optional[ValidationScheduler] = None

    async def start(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[SegmentStore] = None,
    ) -> None:
        """Connect stores and build services.

        Args:
            transport: httpx transport for upstream traffic and the webhook (tests)
            store: Mirror store override; chosen from config when omitted
        """
        config = self.config
        db_path = config["database_path"]

        self.catalog = await get_catalog_store(db_path)
        self.job_store = await get_job_store(db_path)
        self.notifications = NotificationService(db_path, ws_manager=notification_ws_manager)
        await self.notifications.connect()

        self.admission = HostAdmissionController.from_config(config)
        self.probe_engine = ProbeEngine.from_config(config, admission=self.admission, transport=transport)
        self.store = store or get_segment_store(config)
        self.validator = SegmentValidator.from_config(config, self.probe_engine, store=self.store)
        self.engine = ValidationJobEngine.from_config(
            config,
            job_store=self.job_store,
            catalog=self.catalog,
            validator=self.validator,
            registry=self.registry,
            notifications=self.notifications,
            publisher=publish_job_event,
            webhook_transport=transport,
        )
        self.signer = SegmentSigner.from_config(config)
        self.playlists = PlaylistSynthesizer(
            self.catalog,
            self.signer,
            cache=PlaylistCache(ttl_seconds=config.get("playlist_cache_ttl_seconds", 20)),
            default_segment_length=config.get("default_segment_length", 6.0),
            api_prefix=config.get("api_prefix", "/api"),
        )
        self.proxy = SegmentProxy(
            self.catalog,
            self.signer,
            self.probe_engine,
            store=self.store,
            default_segment_length=config.get("default_segment_length", 6.0),
        )
        self.status_service = VideoStatusService(
            self.catalog,
            self.probe_engine,
            notifications=self.notifications,
            validator=self.validator,
            suppression_seconds=config.get("notify_suppression_seconds", 600),
        )
        self.scheduler = ValidationScheduler.from_config(config, self.engine, self.status_service)
        logger.info("Services initialized")

    async def close(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.status_service is not None:
            await self.status_service.shutdown()
        if self.engine is not None:
            await self.engine.shutdown()
        if self.probe_engine is not None:
            await self.probe_engine.close()
        if self.store is not None:
            await self.store.close()
        if self.notifications is not None:
            await self.notifications.close()
        await close_job_store()
        await close_catalog_store()
        reset_segment_store()
        logger.info("Services closed")


# Service singleton
_container: ServiceContainer | None = None


async def init_services(
    config: dict | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    store: Optional[SegmentStore] = None,
) -> ServiceContainer:
    """Create and start the global service container."""
    global _container
    if _container is None:
        container = ServiceContainer(config or load_config())
        await container.start(transport=transport, store=store)
        _container = container
    return _container


async def close_services() -> None:
    global _container
    if _container is not None:
        await _container.close()
        _container = None


def get_services() -> ServiceContainer:
    """Get the started service container."""
    if _container is None:
        raise RuntimeError("Services not initialized. Call init_services() first.")
    return _container


async def publish_job_event(job_id: str, event: dict) -> None:
    await job_ws_manager.broadcast(job_id, event)


def is_admin_key(config: dict, provided: str | None) -> bool:
    """True when no admin key is configured or ``provided`` matches it."""
    expected = config.get("admin_api_key")
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    """Dependency guarding admin routes with the ``X-Admin-Key`` header."""
    if not is_admin_key(get_services().config, x_admin_key):
        raise HTTPException(status_code=401, detail="Admin key required")
