"""
Wiring.
Builds the store, gateway and services from an AppConfig so the CLI and the
server share one way of constructing them.
"""

from memora.application.config import AppConfig
from memora.application.study_service import StudyService
from memora.application.sync import SyncReconciler
from memora.domain.interfaces import ServerGateway
from memora.infrastructure.adapters.http_gateway import HttpServerGateway
from memora.infrastructure.mirror.store import LocalMirrorStore


def get_mirror_store(config: AppConfig) -> LocalMirrorStore:
    return LocalMirrorStore(config.mirror_path)


def get_server_gateway(config: AppConfig) -> ServerGateway:
    return HttpServerGateway(base_url=config.server_url, timeout=config.request_timeout)


def get_study_service(config: AppConfig, store: LocalMirrorStore) -> StudyService:
    return StudyService(store, tz=config.tz)


def get_reconciler(
    config: AppConfig, store: LocalMirrorStore, gateway: ServerGateway | None = None
) -> SyncReconciler:
    return SyncReconciler(
        store,
        gateway or get_server_gateway(config),
        config.tz,
        max_resync_attempts=config.max_resync_attempts,
        push_batch_size=config.push_batch_size,
        sync_interval=config.sync_interval,
        max_backoff=config.max_backoff,
    )
