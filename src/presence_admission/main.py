"""Composition root for the presence admission pipeline.

build_pipeline() wires every core service from Settings and a set of stores.
lifespan() owns the infrastructure:
- Redis client for the rate-limit counters and the policy cache
- SQLAlchemy async engine for policies, devices, attendance and the audit log
- Kafka producer for review/rejection alerts

With PRESENCE_USE_IN_MEMORY_STORES=true every store is process-local and no
external service is contacted.
"""

from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from presence_admission.adapters.alerts import KafkaAlertDispatcher, LoggingAlertDispatcher
from presence_admission.adapters.audit_log import AuditLogRepository
from presence_admission.adapters.face_client import HttpFaceRecognitionEvaluator
from presence_admission.adapters.memory_store import (
    InMemoryAttendanceStore,
    InMemoryAuditRepository,
    InMemoryCacheStore,
    InMemoryCounterStore,
    InMemoryDeviceStore,
    InMemoryPolicyStore,
)
from presence_admission.adapters.metrics import PrometheusMetricsRecorder
from presence_admission.adapters.redis_store import RedisCacheStore, RedisCounterStore
from presence_admission.adapters.repositories import AttendanceRepository, DeviceRepository, PolicyRepository
from presence_admission.core.audit import AuditService
from presence_admission.core.device_trust import DeviceTrustEvaluator
from presence_admission.core.factors import FactorEvaluatorRegistry
from presence_admission.core.interfaces import (
    IAlertDispatcher,
    IAttendanceStore,
    IAuditRepository,
    ICacheStore,
    ICounterStore,
    IDeviceStore,
    IFactorEvaluator,
    IPolicyStore,
)
from presence_admission.core.motion_guard import MotionGuard
from presence_admission.core.pipeline import AdmissionPipeline
from presence_admission.core.policy_admin import PolicyAdminService
from presence_admission.core.policy_cache import PolicyCache
from presence_admission.core.policy_evaluator import PolicyEvaluator
from presence_admission.core.rate_limiter import RateLimiter
from presence_admission.core.signer import Signer
from presence_admission.observability import configure_logging, get_logger
from presence_admission.settings import Settings

logger = get_logger(__name__)


@dataclass
class Stores:
    """The persistence collaborators of one pipeline."""

    counters: ICounterStore
    cache: ICacheStore
    policies: IPolicyStore
    devices: IDeviceStore
    attendance: IAttendanceStore
    audit: IAuditRepository


@dataclass
class Container:
    """Fully wired services sharing one set of stores."""

    settings: Settings
    stores: Stores
    factor_registry: FactorEvaluatorRegistry
    pipeline: AdmissionPipeline
    policy_admin: PolicyAdminService
    policy_cache: PolicyCache
    device_trust: DeviceTrustEvaluator
    rate_limiter: RateLimiter
    metrics: PrometheusMetricsRecorder


def in_memory_stores() -> Stores:
    """Process-local stores for single-node runs and tests."""
    return Stores(
        counters=InMemoryCounterStore(),
        cache=InMemoryCacheStore(),
        policies=InMemoryPolicyStore(),
        devices=InMemoryDeviceStore(),
        attendance=InMemoryAttendanceStore(),
        audit=InMemoryAuditRepository(),
    )


def build_pipeline(
    settings: Settings,
    stores: Stores,
    alerts: IAlertDispatcher | None = None,
    metrics: PrometheusMetricsRecorder | None = None,
    factor_evaluators: Iterable[IFactorEvaluator] = (),
) -> Container:
    """Wire every core service from settings.

    Args:
        settings: Service settings.
        stores: Persistence collaborators.
        alerts: Alert dispatcher; log-only when omitted.
        metrics: Metrics recorder; a fresh registry when omitted.
        factor_evaluators: Presence factor evaluators to register. The face
            evaluator is added automatically when face_service_url is set.

    Returns:
        The wired Container.
    """
    registry = FactorEvaluatorRegistry(factor_evaluators)
    if settings.face_service_url:
        registry.register(
            HttpFaceRecognitionEvaluator(
                base_url=settings.face_service_url,
                timeout_ms=settings.face_service_timeout_ms,
            )
        )

    metrics = metrics or PrometheusMetricsRecorder()
    audit = AuditService(stores.audit)
    rate_limiter = RateLimiter(
        stores.counters,
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    device_trust = DeviceTrustEvaluator(
        stores.devices,
        require_trusted_device=settings.require_trusted_device,
        min_trust_score=settings.min_trust_score,
    )
    policy_cache = PolicyCache(stores.cache, stores.policies, ttl_seconds=settings.policy_cache_ttl_seconds)

    pipeline = AdmissionPipeline(
        rate_limiter=rate_limiter,
        device_trust=device_trust,
        motion_guard=MotionGuard(
            max_speed_mps=settings.motion_max_speed_mps,
            teleport_distance_meters=settings.motion_teleport_distance_meters,
            min_time_delta_seconds=settings.motion_min_time_delta_seconds,
        ),
        policy_cache=policy_cache,
        policy_evaluator=PolicyEvaluator(registry, timeout_seconds=settings.factor_evaluation_timeout_seconds),
        signer=Signer(settings.signing_secret.get_secret_value()),
        attendance_store=stores.attendance,
        audit=audit,
        metrics=metrics,
        alerts=alerts or LoggingAlertDispatcher(),
    )

    logger.info(
        "Admission pipeline built",
        service=settings.service_name,
        factor_modes=[str(mode) for mode in registry.modes()],
        rate_limit=settings.rate_limit_max_requests,
        rate_limit_window_seconds=settings.rate_limit_window_seconds,
    )

    return Container(
        settings=settings,
        stores=stores,
        factor_registry=registry,
        pipeline=pipeline,
        policy_admin=PolicyAdminService(stores.policies, policy_cache, audit),
        policy_cache=policy_cache,
        device_trust=device_trust,
        rate_limiter=rate_limiter,
        metrics=metrics,
    )


@asynccontextmanager
async def lifespan(
    settings: Settings | None = None,
    factor_evaluators: Iterable[IFactorEvaluator] = (),
) -> AsyncGenerator[Container, None]:
    """Open infrastructure, yield a wired Container, and close everything on exit.

    Args:
        settings: Service settings; read from the environment when omitted.
        factor_evaluators: Presence factor evaluators to register.

    Yields:
        Container
    """
    settings = settings or Settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs)

    if settings.use_in_memory_stores:
        logger.info("Using in-memory stores", service=settings.service_name)
        yield build_pipeline(settings, in_memory_stores(), factor_evaluators=factor_evaluators)
        return

    logger.info("Initializing Redis client", service=settings.service_name)
    redis_client = Redis.from_url(settings.redis_url)

    logger.info("Initializing primary database", pool_size=settings.database_pool_size)
    engine = create_async_engine(settings.database_url, pool_size=settings.database_pool_size, pool_pre_ping=True)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    logger.info("Initializing Kafka alert dispatcher", bootstrap_servers=settings.kafka_bootstrap_servers)
    alerts = KafkaAlertDispatcher(bootstrap_servers=settings.kafka_bootstrap_servers, topic=settings.alert_topic)

    stores = Stores(
        counters=RedisCounterStore(redis_client, key_prefix=settings.redis_key_prefix),
        cache=RedisCacheStore(redis_client, key_prefix=settings.redis_key_prefix),
        policies=PolicyRepository(session_factory),
        devices=DeviceRepository(session_factory),
        attendance=AttendanceRepository(session_factory),
        audit=AuditLogRepository(session_factory),
    )

    try:
        await alerts.start()
        container = build_pipeline(settings, stores, alerts=alerts, factor_evaluators=factor_evaluators)
        logger.info("Presence admission startup complete", service=settings.service_name)
        yield container
    finally:
        logger.info("Shutting down presence admission")
        await alerts.stop()
        await redis_client.aclose()
        await engine.dispose()
        logger.info("Presence admission shutdown complete")
