# main.py — Balance Guard backend (resilient balances + change detection + admin surface)

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional

from argon2 import PasswordHasher, exceptions as argon2_exceptions
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from redis.asyncio import Redis
from web3 import Web3

from backup_tiers import BackupChain, DurableTier, LastKnownTier, OriginTier, SessionTier, TierKey
from backup_writer import BackupWriter
from detector import ChangeDetector, InvalidThreshold, ThresholdConfig
from emergency import ProvenanceTracker
from explorer import ExplorerClient
from notification_service import ExpoPushSink, LogSink, NotificationDispatcher, NotificationSink
from registry import TrackedWalletRegistry
from resolver import BalanceResolver
from settings import Settings, load_settings
from shared_cache import SharedBalanceCache, SharedBaselineStore
from snapshots import Network

logger = logging.getLogger("balance_guard")

# =========================================================
# Logging
# =========================================================
def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    fmt = "%(asctime)s - %(levelname)s - %(message)s"
    if settings.log_file:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(filename=settings.log_file, level=level, format=fmt)
    else:
        logging.basicConfig(level=level, format=fmt)
    logger.setLevel(level)

# =========================================================
# Service wiring
# =========================================================
@dataclass
class BalanceServices:
    settings: Settings
    chain: Any
    cache: Optional[SharedBalanceCache]
    backups: BackupChain
    writer: BackupWriter
    resolver: BalanceResolver
    thresholds: ThresholdConfig
    detector: ChangeDetector
    registry: TrackedWalletRegistry
    dispatcher: NotificationDispatcher
    provenance: ProvenanceTracker
    closers: List[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        await self.writer.drain()
        for closer in self.closers:
            try:
                result = closer()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Shutdown step failed: {e}")


def build_services(
    settings: Settings,
    sinks: Optional[List[NotificationSink]] = None,
    chain: Any = None,
    redis_client: Optional[Redis] = None,
) -> BalanceServices:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    if redis_client is None:
        redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    cache = SharedBalanceCache(redis_client, ttl_seconds=settings.cache_ttl_seconds)

    backups = BackupChain([
        SessionTier(settings.session_tier_capacity),
        OriginTier(settings.data_dir / "backups" / "local"),
        DurableTier(settings.durable_database_url, max_entries=settings.durable_max_entries),
        LastKnownTier(settings.data_dir / "backups" / "last_known"),
    ])
    closers: List[Any] = [redis_client.aclose]
    if chain is None:
        chain = ExplorerClient(settings.explorer_urls, timeout=settings.chain_timeout_seconds)
        closers.append(chain.aclose)
    writer = BackupWriter(cache, backups)
    provenance = ProvenanceTracker(settings.emergency_window_seconds)
    resolver = BalanceResolver(
        chain,
        cache,
        backups,
        writer,
        timeout=settings.chain_timeout_seconds,
        max_staleness=settings.cache_max_staleness_seconds,
        provenance=provenance,
    )
    registry = TrackedWalletRegistry(settings.registry_path)
    thresholds = ThresholdConfig(settings.change_threshold_percent)
    outbox: asyncio.Queue = asyncio.Queue()
    detector = ChangeDetector(
        resolver,
        SharedBaselineStore(cache),
        thresholds,
        registry=registry,
        outbox=outbox,
        concurrency=settings.detector_concurrency,
        cycle_timeout=settings.detector_cycle_timeout_seconds,
    )
    if sinks is None:
        push = ExpoPushSink(
            registry,
            push_url=settings.expo_push_url,
            dedupe_ttl_seconds=settings.notify_dedupe_ttl_seconds,
            sound_min_interval_seconds=settings.notify_sound_min_interval_seconds,
        )
        sinks = [LogSink(), push]
        closers.append(push.aclose)
    dispatcher = NotificationDispatcher(outbox, sinks)
    return BalanceServices(
        settings=settings,
        chain=chain,
        cache=cache,
        backups=backups,
        writer=writer,
        resolver=resolver,
        thresholds=thresholds,
        detector=detector,
        registry=registry,
        dispatcher=dispatcher,
        provenance=provenance,
        closers=closers,
    )

# =========================================================
# Helpers
# =========================================================
ph = PasswordHasher()

def success_response(data: Any, message: str = "Success") -> dict:
    return {"status": "ok", "message": message, "data": data}

def get_services(request: Request) -> BalanceServices:
    return request.app.state.services

def validate_address(address: str) -> str:
    if not Web3.is_address(address):
        raise HTTPException(status_code=400, detail=f"Invalid address: {address}")
    return address.lower()

def verify_admin_password(password: str, hashed: str) -> bool:
    try:
        return ph.verify(hashed, password)
    except argon2_exceptions.VerifyMismatchError:
        return False
    except Exception as e:
        logger.error(f"Error verifying admin password: {e}")
        return False

async def require_admin(
    request: Request,
    x_admin_password: Optional[str] = Header(default=None),
) -> None:
    hashed = get_services(request).settings.admin_password_hash
    if not hashed:
        raise HTTPException(status_code=503, detail="Admin password not configured")
    if not x_admin_password:
        raise HTTPException(status_code=401, detail="Admin password required")
    if not await asyncio.to_thread(verify_admin_password, x_admin_password, hashed):
        raise HTTPException(status_code=401, detail="Unauthorized")

# =========================================================
# Models
# =========================================================
class ThresholdUpdate(BaseModel):
    percent_change_threshold: Optional[float] = None
    absolute_change_threshold: Optional[str] = None

class TrackWalletBody(BaseModel):
    user_id: str
    address: str
    network: Network = Network.TESTNET
    label: Optional[str] = None

class RegisterDeviceBody(BaseModel):
    user_id: str
    tokens: List[str] = []

# =========================================================
# Admin routes
# =========================================================
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

@admin.get("/threshold")
async def get_threshold(services: BalanceServices = Depends(get_services)):
    return success_response(services.thresholds.current().as_dict())

@admin.put("/threshold")
async def set_threshold(body: ThresholdUpdate, services: BalanceServices = Depends(get_services)):
    if body.percent_change_threshold is None and "absolute_change_threshold" not in body.model_fields_set:
        raise HTTPException(status_code=400, detail="Nothing to update")
    try:
        if body.percent_change_threshold is not None:
            services.thresholds.set(body.percent_change_threshold)
        if "absolute_change_threshold" in body.model_fields_set:
            services.thresholds.set_absolute(body.absolute_change_threshold)
    except InvalidThreshold as e:
        raise HTTPException(status_code=400, detail=str(e))
    return success_response(services.thresholds.current().as_dict(), "Threshold updated")

@admin.post("/force_check")
async def force_check(
    user_id: Optional[str] = Query(default=None),
    services: BalanceServices = Depends(get_services),
):
    try:
        report = await services.detector.force_check(user_id)
        return success_response(report, "Check completed")
    except Exception as e:
        logger.exception("force_check error")
        raise HTTPException(status_code=500, detail=str(e))

@admin.get("/detector")
async def detector_status(services: BalanceServices = Depends(get_services)):
    return success_response({
        "threshold": services.thresholds.current().as_dict(),
        "interval_seconds": services.settings.detector_interval_seconds,
        "enabled": services.settings.enable_detector,
        "active_cycles": services.detector.states(),
        "last_sweep": services.detector.last_sweep,
        "notifications": services.dispatcher.stats(),
        "resolutions": services.provenance.counts(),
        "pending_backup_writes": services.writer.pending,
    })

# =========================================================
# Balance routes
# =========================================================
balances = APIRouter(prefix="/balances")

@balances.get("/{user_id}")
async def get_balances(
    user_id: str,
    address: str = Query(...),
    network: Network = Query(Network.TESTNET),
    services: BalanceServices = Depends(get_services),
):
    address = validate_address(address)
    snapshot = await services.resolver.resolve(user_id, address, network)
    data = snapshot.model_dump(mode="json")
    data["is_using_emergency"] = services.provenance.is_using_emergency(user_id)
    return success_response(data, f"Balances from {snapshot.source.value}")

@balances.get("/{user_id}/diagnostic")
async def get_diagnostic(
    user_id: str,
    address: str = Query(...),
    network: Network = Query(Network.TESTNET),
    services: BalanceServices = Depends(get_services),
):
    address = validate_address(address)
    key = TierKey.of(user_id, address, network)
    tiers = await asyncio.to_thread(services.backups.diagnostic, key)
    cached = await services.cache.get(user_id, address, network) if services.cache else None
    return success_response({
        "shared_cache": {
            "available": cached is not None,
            "captured_at": cached.captured_at.isoformat() if cached else None,
        },
        "tiers": tiers,
        "last_resolution": services.provenance.last(user_id, address, network),
        "is_using_emergency": services.provenance.is_using_emergency(user_id),
    })

@balances.get("/{user_id}/history")
async def get_history(
    user_id: str,
    address: str = Query(...),
    network: Network = Query(Network.TESTNET),
    limit: int = Query(50, ge=1, le=100),
    services: BalanceServices = Depends(get_services),
):
    address = validate_address(address)
    if services.cache is None:
        return success_response([])
    return success_response(await services.cache.history(user_id, address, network, limit))

@balances.delete("/{user_id}/backups")
async def clear_backups(
    user_id: str,
    address: str = Query(...),
    network: Network = Query(Network.TESTNET),
    services: BalanceServices = Depends(get_services),
):
    address = validate_address(address)
    key = TierKey.of(user_id, address, network)
    # in-flight fan-out writes would otherwise re-create what we delete
    await services.writer.drain()
    cleared = await asyncio.to_thread(services.backups.clear, key)
    if services.cache is not None:
        cleared["sharedCache"] = bool(await services.cache.clear(user_id, address, network))
    services.provenance.forget(user_id)
    logger.info(f"Backups cleared for user {user_id} ({address}, {network.value})")
    return success_response(cleared, "Backups cleared")

# =========================================================
# Registry routes
# =========================================================
router = APIRouter()

@router.get("/")
def root():
    return {"message": "Balance Guard backend running"}

@router.get("/health")
async def health(services: BalanceServices = Depends(get_services)):
    redis_ok = await services.cache.ping() if services.cache else False
    return success_response({
        "redis": redis_ok,
        "detector_enabled": services.settings.enable_detector,
        "last_sweep": services.detector.last_sweep,
    })

@router.post("/tracked_wallets")
async def track_wallet(body: TrackWalletBody, services: BalanceServices = Depends(get_services)):
    address = validate_address(body.address)
    try:
        wallet = await asyncio.to_thread(services.registry.upsert, body.user_id, address, body.network, body.label)
    except Exception as e:
        logger.exception("track_wallet error")
        raise HTTPException(status_code=500, detail=str(e))
    return success_response(wallet._asdict(), "Wallet tracked")

@router.delete("/tracked_wallets")
async def untrack_wallet(
    user_id: str = Query(...),
    address: str = Query(...),
    network: Network = Query(Network.TESTNET),
    services: BalanceServices = Depends(get_services),
):
    address = validate_address(address)
    removed = await asyncio.to_thread(services.registry.remove, user_id, address, network)
    if not removed:
        raise HTTPException(status_code=404, detail="Wallet not tracked")
    return success_response({"removed": True}, "Wallet untracked")

@router.post("/register_device")
async def register_device(body: RegisterDeviceBody, services: BalanceServices = Depends(get_services)):
    if not body.tokens:
        return success_response({"registered": 0}, "No tokens provided")
    try:
        count = await asyncio.to_thread(services.registry.register_tokens, body.user_id, body.tokens)
    except Exception as e:
        logger.exception("register_device error")
        raise HTTPException(status_code=500, detail=str(e))
    return success_response({"registered": count}, "Device tokens registered")

# =========================================================
# App factory + background tasks
# =========================================================
def create_app(services: Optional[BalanceServices] = None, settings: Optional[Settings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services
        if svc is None:
            cfg = settings or load_settings()
            configure_logging(cfg)
            svc = build_services(cfg)
        app.state.services = svc
        tasks = [asyncio.create_task(svc.dispatcher.run())]
        if svc.settings.enable_detector:
            tasks.append(asyncio.create_task(svc.detector.run_forever(svc.settings.detector_interval_seconds)))
        logger.info("Balance Guard started")
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await svc.aclose()
            logger.info("Balance Guard stopped")

    app = FastAPI(
        title="Balance Guard",
        description="Resilient token balances and change notifications",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.include_router(balances)
    app.include_router(admin)
    return app


app = create_app()

# =========================================================
# Dev entrypoint
# =========================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
