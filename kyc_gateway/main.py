"""KYC Gateway - FastAPI application."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kyc_gateway.api.deps import Services, set_services
from kyc_gateway.api.v1.router import v1_router
from kyc_gateway.config import Settings, settings
from kyc_gateway.jobs.errors import LifecycleError
from kyc_gateway.jobs.journal import CallbackJournal, IncidentJournal
from kyc_gateway.jobs.lifecycle import LifecycleEngine
from kyc_gateway.jobs.memory_store import InMemoryJobStore
from kyc_gateway.jobs.poller import ExpirySweeper, ReconciliationPoller
from kyc_gateway.jobs.store import JobStore
from kyc_gateway.logging_config import configure_logging, get_logger
from kyc_gateway.providers.base import Signer, VerificationProvider
from kyc_gateway.providers.mock import MockVerificationProvider
from kyc_gateway.providers.smileid import SmileIdProvider, SmileIdSigner

logger = get_logger(__name__)


def build_store(config: Settings) -> JobStore:
    if config.job_store_backend == "supabase":
        from kyc_gateway.db.supabase_client import get_supabase
        from kyc_gateway.jobs.supabase_store import SupabaseJobStore

        return SupabaseJobStore(
            get_supabase(config),
            table=config.supabase_jobs_table,
            timeout=config.supabase_timeout_seconds,
        )
    if config.job_store_backend != "memory":
        raise RuntimeError(f"Unknown JOB_STORE_BACKEND: {config.job_store_backend}")
    return InMemoryJobStore()


def build_providers(config: Settings) -> tuple[Signer, VerificationProvider]:
    if config.provider_mode == "mock":
        signer = SmileIdSigner(
            config.smile_partner_id or "mock-partner",
            config.smile_api_key or "mock-api-key",
            config.environment,
            config.smile_default_callback,
        )
        return signer, MockVerificationProvider()

    if config.provider_mode != "smileid":
        raise RuntimeError(f"Unknown PROVIDER_MODE: {config.provider_mode}")

    missing = config.missing_provider_fields()
    if missing:
        raise RuntimeError(f"Missing required SmileID configuration: {', '.join(missing)}")

    signer = SmileIdSigner(
        config.smile_partner_id,
        config.smile_api_key,
        config.environment,
        config.smile_default_callback,
    )
    provider = SmileIdProvider(
        config.provider_base_url,
        config.smile_partner_id,
        config.smile_api_key,
        config.smile_default_callback,
    )
    return signer, provider


def build_services(
    config: Settings,
    store: Optional[JobStore] = None,
    signer: Optional[Signer] = None,
    provider: Optional[VerificationProvider] = None,
) -> Services:
    """Assemble engine, poller and journals. Explicit collaborators win over config."""
    if signer is None or provider is None:
        default_signer, default_provider = build_providers(config)
        signer = signer or default_signer
        provider = provider or default_provider

    engine = LifecycleEngine.from_settings(
        config,
        store or build_store(config),
        signer,
        provider,
        incidents=IncidentJournal(),
    )
    poller = ReconciliationPoller.from_settings(config, engine)
    return Services(settings=config, engine=engine, poller=poller, callbacks=CallbackJournal())


def create_app(config: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging(config)
        active = services or build_services(config)
        sweeper = ExpirySweeper(active.engine, interval=config.expiry_sweep_seconds)

        logger.info(
            "service_starting",
            port=config.port,
            environment=config.environment,
            provider_mode=config.provider_mode,
            job_store=config.job_store_backend,
            callback=config.smile_default_callback,
        )

        set_services(active)
        app.state.services = active
        resumed = await active.poller.resume()
        if resumed:
            logger.info("pollers_resumed", jobs=resumed)
        await sweeper.start()

        yield

        logger.info("service_stopping")
        await sweeper.stop()
        await active.poller.stop()
        await active.engine.provider.close()
        set_services(None)

    app = FastAPI(
        title="KYC Gateway",
        description="Identity verification job lifecycle and callback/poll reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        return JSONResponse(
            status_code=exc.http_status,
            content={"detail": exc.message, "error": type(exc).__name__, "jobId": exc.job_id},
        )

    app.include_router(v1_router)
    return app


app = create_app()
