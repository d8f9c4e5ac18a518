"""
FastAPI application factory.

Every long-lived collaborator (database, stores, quota gate, LLM client,
background worker, orchestrator) is built once on startup, hung on app.state
and closed on shutdown.
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.router import router
from .core.background import BackgroundWorker
from .core.config import Settings, get_settings
from .core.database import Database
from .core.flags import FeatureFlags, get_flags
from .core.redis import close_redis, create_redis
from .memory.extractor import MemoryExtractor
from .memory.store import SqlMemoryStore, SqlSettingsStore
from .orchestrator.turn import TurnOrchestrator
from .services.llm import LLMClient
from .services.quota import RedisQuotaGate, RoleStore, SqlQuotaGate
from .services.threads import ThreadStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    flags: Optional[FeatureFlags] = None,
    llm_client=None,
) -> FastAPI:
    settings = settings or get_settings()
    flags = flags or get_flags()

    app = FastAPI(
        title="Raven",
        description="Personal chat assistant with long-term memory",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )
    app.state.settings = settings
    app.state.flags = flags

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting Raven (env=%s)", settings.env)

        db = Database(settings.database_url, echo=settings.debug)
        await db.init_schema(include_memory=flags.create_memory_schema)

        roles = RoleStore(db)
        redis_client = None
        if flags.use_redis:
            redis_client = create_redis(settings)
            quota_gate = RedisQuotaGate(redis_client, roles, settings)
        else:
            quota_gate = SqlQuotaGate(db, roles, settings)

        llm = llm_client or LLMClient(settings, flags)
        threads = ThreadStore(db)
        memory_store = SqlMemoryStore(db)
        settings_store = SqlSettingsStore(db)
        worker = BackgroundWorker(settings.background_workers, settings.background_queue_size)
        worker.start()

        orchestrator = TurnOrchestrator(
            quota_gate=quota_gate,
            threads=threads,
            memory_store=memory_store,
            settings_store=settings_store,
            llm=llm,
            extractor=MemoryExtractor(llm, settings.memory_extraction_timeout_ms / 1000),
            worker=worker,
            flags=flags,
            history_window=settings.history_window,
            memory_fetch_limit=settings.memory_fetch_limit,
            memory_prompt_limit=settings.memory_prompt_limit,
            completion_timeout=settings.chat_turn_timeout_ms / 1000,
        )

        app.state.db = db
        app.state.redis = redis_client
        app.state.roles = roles
        app.state.llm = llm
        app.state.threads = threads
        app.state.memory_store = memory_store
        app.state.settings_store = settings_store
        app.state.worker = worker
        app.state.orchestrator = orchestrator

        logger.info(
            "Flags: auth=%s redis=%s llm=%s override=%s memory=%s auto_memory=%s memory_schema=%s",
            flags.use_auth, flags.use_redis, flags.llm_provider, flags.allow_provider_override,
            flags.enable_memory, flags.enable_auto_memory, flags.create_memory_schema,
        )
        logger.info("Raven is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.worker.shutdown()
        if llm_client is None:
            await app.state.llm.close()
        await close_redis(app.state.redis)
        await app.state.db.close()
        logger.info("Raven shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
