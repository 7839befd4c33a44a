"""
Tenant Registry

Maps the routing identifier of an inbound delivery (the Instagram page id)
to the tenant that owns it. Unknown page ids resolve to None so mis-routed
or test traffic never reaches another tenant's conversations.
"""

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .config import TenantConfig


@dataclass(frozen=True)
class ChannelCredentials:
    """What the reply channel needs to send on behalf of a tenant"""
    page_id: str
    access_token: str


@dataclass
class Tenant:
    """A registered business with its persona and credentials"""
    tenant_id: str
    page_id: str
    system_prompt: str
    access_token: str = ""
    name: str = ""
    file_search_store: Optional[str] = None

    @property
    def credentials(self) -> ChannelCredentials:
        return ChannelCredentials(page_id=self.page_id, access_token=self.access_token)

    @classmethod
    def from_config(cls, cfg: TenantConfig) -> "Tenant":
        return cls(
            tenant_id=cfg.tenant_id,
            page_id=cfg.page_id,
            system_prompt=cfg.system_prompt,
            access_token=cfg.access_token,
            name=cfg.name,
            file_search_store=cfg.file_search_store or None,
        )


class TenantRegistry:
    """Thread-safe lookup of tenants by page id and tenant id"""

    def __init__(self, tenants: Optional[Iterable[Tenant]] = None):
        self._lock = threading.Lock()
        self._by_page: Dict[str, Tenant] = {}
        self._by_id: Dict[str, Tenant] = {}
        for tenant in tenants or []:
            self.register(tenant)

    @classmethod
    def from_config(cls, tenant_configs: Iterable[TenantConfig]) -> "TenantRegistry":
        return cls(Tenant.from_config(cfg) for cfg in tenant_configs)

    def register(self, tenant: Tenant) -> None:
        """Add or replace a tenant"""
        with self._lock:
            previous = self._by_id.get(tenant.tenant_id)
            if previous is not None:
                self._by_page.pop(previous.page_id, None)
            self._by_page[tenant.page_id] = tenant
            self._by_id[tenant.tenant_id] = tenant

    def find_by_page_id(self, page_id: Optional[str]) -> Optional[Tenant]:
        if not page_id:
            return None
        with self._lock:
            return self._by_page.get(page_id)

    def get(self, tenant_id: str) -> Optional[Tenant]:
        with self._lock:
            return self._by_id.get(tenant_id)

    def all(self) -> List[Tenant]:
        with self._lock:
            return list(self._by_id.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
