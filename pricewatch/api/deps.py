"""FastAPI dependencies."""

from fastapi import Depends

from pricewatch.adapters.registry import AdapterRegistry
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.db.store import CatalogStore, SqlCatalogStore
from pricewatch.worker.tasks import TaskRunner, task_runner


def get_store() -> CatalogStore:
    """Dependency for the catalog store."""
    return SqlCatalogStore(AsyncSessionLocal)


def get_task_runner() -> TaskRunner:
    """Dependency for the process-wide task runner."""
    return task_runner


def get_registry(store: CatalogStore = Depends(get_store)) -> AdapterRegistry:
    """Adapters for one request, separate from the instances a run is using."""
    return AdapterRegistry(store)
