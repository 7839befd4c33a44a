"""Tests for TenantRegistry routing."""

from parley.common.config import TenantConfig
from parley.common.tenants import Tenant, TenantRegistry


class TestTenantRegistry:
    def test_lookup_by_page_id(self):
        registry = TenantRegistry.from_config([
            TenantConfig(tenant_id="t1", page_id="p1", access_token="tok", file_search_store=""),
        ])

        tenant = registry.find_by_page_id("p1")

        assert tenant.tenant_id == "t1"
        assert tenant.file_search_store is None
        assert tenant.credentials.access_token == "tok"

    def test_unknown_page(self):
        registry = TenantRegistry([Tenant("t1", "p1", "prompt")])
        assert registry.find_by_page_id("p2") is None
        assert registry.find_by_page_id(None) is None

    def test_reregister_moves_page(self):
        registry = TenantRegistry([Tenant("t1", "p1", "prompt")])
        registry.register(Tenant("t1", "p9", "prompt"))

        assert registry.find_by_page_id("p1") is None
        assert registry.get("t1").page_id == "p9"
        assert len(registry) == 1
