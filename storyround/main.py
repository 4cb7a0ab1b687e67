import logging
from contextlib import asynccontextmanager

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from redis.asyncio import Redis

from storyround import load_secrets
from storyround.models.config_models import RoundConfig
from storyround.round_engine import RoundEngine
from storyround.round_sync_manager import RoundSyncManager
from storyround.routers import restapi
from storyround.services.expiry_sweeper import ExpirySweeper
from storyround.services.market import HttpMarketProvider, MarketBuyService
from storyround.services.notifier import Notifier
from storyround.services.payment_pipeline import PaymentPipeline
from storyround.services.snapshot_store import SnapshotStore
from storyround.services.wallet import WalletService

logging.basicConfig(level=logging.INFO)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)


class RoundServices:
    """Everything the HTTP layer and the timers share."""

    def __init__(
        self,
        config: RoundConfig,
        sync: RoundSyncManager,
        engine: RoundEngine,
        pipeline: PaymentPipeline,
        sweeper: ExpirySweeper,
        scheduler: AsyncIOScheduler,
        redis: Redis,
        http_client: httpx.AsyncClient | None = None,
        relay_username: str | None = None,
        relay_password: str | None = None,
    ):
        self.config = config
        self.sync = sync
        self.engine = engine
        self.pipeline = pipeline
        self.sweeper = sweeper
        self.scheduler = scheduler
        self.redis = redis
        self.http_client = http_client
        self.relay_username = relay_username
        self.relay_password = relay_password


def build_services() -> RoundServices:
    """Wire the round services from the environment."""
    from storyround.db import Session, engine as db_engine

    load_secrets.require_secrets()
    config = load_secrets.load_round_config()

    http_client = httpx.AsyncClient(timeout=config.external_timeout)
    redis = Redis.from_url(load_secrets.redis_url, decode_responses=True, health_check_interval=30)
    scheduler = AsyncIOScheduler()

    sync = RoundSyncManager(SnapshotStore(db_engine, Session))
    providers = [
        HttpMarketProvider(f"provider{i + 1}", url, http_client, config.external_timeout)
        for i, url in enumerate(load_secrets.market_provider_urls)
    ]
    market = MarketBuyService(providers, config.market_max_retries, config.market_backoff_base)
    wallet = WalletService(
        load_secrets.wallet_service_url, http_client, config.external_timeout, config.market_max_retries
    )
    notifier = Notifier(redis)

    engine = RoundEngine(
        sync,
        wallet,
        notifier,
        config,
        scheduler,
        load_secrets.main_channel,
        load_secrets.submissions_channel,
        treasury_account=load_secrets.treasury_account,
    )
    pipeline = PaymentPipeline(
        sync,
        market,
        wallet,
        notifier,
        config,
        fee_wallet=load_secrets.fee_wallet,
        main_channel=load_secrets.main_channel,
        submissions_channel=load_secrets.submissions_channel,
        treasury_account=load_secrets.treasury_account,
        payment_redirect_url=load_secrets.payment_redirect_url,
    )
    sweeper = ExpirySweeper(sync, notifier, config)
    return RoundServices(
        config,
        sync,
        engine,
        pipeline,
        sweeper,
        scheduler,
        redis,
        http_client=http_client,
        relay_username=load_secrets.relay_username,
        relay_password=load_secrets.relay_password,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Restore the round and start the timers.
    This function is called to start the server.
    """
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services()
        app.state.services = services

    await services.sync.store.create_table()

    services.scheduler.add_job(
        services.sweeper.sweep, "interval", seconds=services.config.sweep_interval, id="expiry_sweep"
    )
    services.scheduler.add_job(
        services.engine.log_status,
        "interval",
        seconds=services.config.status_log_interval,
        id="status_log",
    )
    services.scheduler.start()
    await services.engine.start()
    try:
        yield
    finally:
        logging.info("Graceful shutdown...")
        services.scheduler.shutdown(wait=False)
        async with services.sync.lock:
            await services.sync.persist()
        if services.http_client is not None:
            await services.http_client.aclose()
        await services.redis.aclose()
        logging.info("Stop Server")


def create_app(services: RoundServices | None = None) -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    if services is not None:
        app.state.services = services
    app.include_router(restapi.rest_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("storyround.main:app", host="0.0.0.0", port=8080)
