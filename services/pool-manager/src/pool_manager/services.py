from dataclasses import dataclass

from redis.asyncio import Redis

from .assets import AssetProbe
from .config import PoolManagerSettings
from .invitations import InvitationHandler
from .notifier import ChangeNotifier, HttpWebhookSink
from .orchestrator import Orchestrator
from .pool import PoolController
from .reconciler import TaskLifecycleReconciler
from .store import StageStore, WorkerStore


@dataclass
class PoolServices:
    """Handlers sharing one Redis connection, built once per process."""

    workers: WorkerStore
    stages: StageStore
    invitations: InvitationHandler
    pool: PoolController
    reconciler: TaskLifecycleReconciler
    notifier: ChangeNotifier


def build_services(
    redis: Redis,
    orchestrator: Orchestrator,
    settings: PoolManagerSettings,
) -> PoolServices:
    workers = WorkerStore(redis)
    stages = StageStore(redis)
    return PoolServices(
        workers=workers,
        stages=stages,
        invitations=InvitationHandler(
            workers,
            stages,
            AssetProbe(settings.video_assets_bucket_url),
            terminal_ttl_seconds=settings.terminal_ttl_seconds,
        ),
        pool=PoolController(
            workers,
            orchestrator,
            min_warm_workers=settings.min_warm_workers,
            max_warm_workers=settings.max_warm_workers,
            terminal_ttl_seconds=settings.terminal_ttl_seconds,
            reap_grace_seconds=settings.reap_grace_seconds,
        ),
        reconciler=TaskLifecycleReconciler(
            workers, terminal_ttl_seconds=settings.terminal_ttl_seconds
        ),
        notifier=ChangeNotifier(
            [HttpWebhookSink(url) for url in settings.subscriber_urls],
            timeout=settings.notify_timeout_seconds,
        ),
    )
