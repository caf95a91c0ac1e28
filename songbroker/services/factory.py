"""Cached construction of the services shared by the API and the worker."""

from functools import lru_cache

from songbroker.config import get_settings
from songbroker.db.session import async_session_maker
from songbroker.services.maintenance import MaintenanceService
from songbroker.services.provider_client import ProviderClient
from songbroker.services.rate_limiter import RedisCounterStore
from songbroker.services.reconciler import StatusReconciler
from songbroker.services.retry_scheduler import RetryScheduler


@lru_cache
def get_counter_store() -> RedisCounterStore:
    return RedisCounterStore.from_url(get_settings().redis_url)


@lru_cache
def get_provider_client() -> ProviderClient:
    return ProviderClient(get_settings())


@lru_cache
def get_status_reconciler() -> StatusReconciler:
    return StatusReconciler(
        async_session_maker,
        get_provider_client(),
        get_counter_store(),
        get_settings(),
    )


@lru_cache
def get_retry_scheduler() -> RetryScheduler:
    from songbroker.worker import CeleryJobScheduler

    return RetryScheduler(
        async_session_maker,
        get_status_reconciler(),
        CeleryJobScheduler(),
        get_counter_store(),
        get_settings(),
    )


@lru_cache
def get_maintenance_service() -> MaintenanceService:
    return MaintenanceService(async_session_maker, get_settings())
