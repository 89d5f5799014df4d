"""Tenant configuration: schema, platform defaults, and loading."""

from .loader import (
    ConfigLoader,
    FileTenantConfigStore,
    InMemoryTenantConfigStore,
    TenantConfigStore,
    parse_tenant_config,
)
from .schema import Scenario, TenantConfig

__all__ = [
    "ConfigLoader",
    "FileTenantConfigStore",
    "InMemoryTenantConfigStore",
    "Scenario",
    "TenantConfig",
    "TenantConfigStore",
    "parse_tenant_config",
]
