import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import SessionFactory, SessionRegistry, router
from .audit import AuditEmitter, AuditSink, RpcAuditSink, SqlAuditSink
from .auth import JwtAuthProvider
from .cache import TTLCache
from .core.config import Settings, get_settings
from .core.db import Base, get_engine, get_sessionmaker
from .permissions import PermissionService
from .rpc import build_rpc_client
from .session import SessionStateMachine
from .tenancy.context import ContextPreferenceStore, ContextResolver
from .tenancy.local_state import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .tenancy.locations import LocationAssignmentResolver
from .tenancy.queries import SqlRuleStore, SqlTenantStore
from .tenancy.stores import RuleStore, TenantStore

logger = logging.getLogger(__name__)


def build_local_store(settings: Settings, user_id: str) -> KeyValueStore:
    if settings.local_state_path:
        return JsonFileKeyValueStore(Path(settings.local_state_path) / f"{user_id}.json")
    return MemoryKeyValueStore()


def build_session_factory(
    settings: Settings,
    tenant_store: TenantStore,
    rule_store: RuleStore,
    cache: TTLCache,
    audit: AuditEmitter,
) -> SessionFactory:
    """Wire one SessionStateMachine per signed-in user."""
    permission_service = PermissionService(rule_store, cache=cache, audit=audit)
    locations = LocationAssignmentResolver(tenant_store, cache=cache)

    def factory(provider: JwtAuthProvider) -> SessionStateMachine:
        session = provider.session
        user_id = session.user.id if session else "anonymous"
        rpc = build_rpc_client(settings, session.access_token if session else None)
        local_store = build_local_store(settings, user_id)
        resolver = ContextResolver(locations, ContextPreferenceStore(local_store), rpc=rpc)
        return SessionStateMachine(
            auth=provider,
            tenant_store=tenant_store,
            context_resolver=resolver,
            permission_service=permission_service,
            local_store=local_store,
            audit=audit,
            rpc=rpc,
            cache=cache,
        )

    return factory


def create_app(
    settings: Optional[Settings] = None,
    tenant_store: Optional[TenantStore] = None,
    rule_store: Optional[RuleStore] = None,
    audit_sink: Optional[AuditSink] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uses_database = tenant_store is None or rule_store is None or audit_sink is None
    if uses_database:
        sessionmaker = get_sessionmaker()
        tenant_store = tenant_store or SqlTenantStore(sessionmaker)
        rule_store = rule_store or SqlRuleStore(sessionmaker)
        if audit_sink is None:
            rpc = build_rpc_client(settings)
            audit_sink = RpcAuditSink(rpc) if rpc is not None else SqlAuditSink(sessionmaker)

    cache = TTLCache(ttl_seconds=settings.permission_cache_ttl_seconds)
    audit = AuditEmitter(audit_sink)
    registry = SessionRegistry(
        settings,
        build_session_factory(settings, tenant_store, rule_store, cache, audit),
    )

    app = FastAPI(title="Salon Access")
    app.state.settings = settings
    app.state.sessions = registry
    app.state.cache = cache
    app.state.audit = audit

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.on_event("startup")
    async def on_startup():
        if uses_database:
            async with get_engine().begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Salon access service started")

    @app.on_event("shutdown")
    async def on_shutdown():
        await registry.close_all()
        await audit.drain()

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app
