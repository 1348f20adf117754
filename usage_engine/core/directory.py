"""
Client agent directory boundary.

Collectors resolve vendor agent ids to internal agents through a directory
owned by an external service. The engine only reads from it.
"""

from typing import Dict, Iterable, List, Protocol, Tuple

from usage_engine.storage.models import ClientAgentMapping
from usage_engine.storage.repository import UsageRepository


class DirectoryService(Protocol):
    def get_mappings(self, tenant_id: str, client_id: str, provider: str) -> List[ClientAgentMapping]:
        ...


class InMemoryDirectory:
    """Directory backed by a fixed list of mappings."""

    def __init__(self, mappings: Iterable[ClientAgentMapping] = ()):
        self._by_scope: Dict[Tuple[str, str, str], List[ClientAgentMapping]] = {}
        for mapping in mappings:
            key = (mapping.tenant_id, mapping.client_id, mapping.provider)
            self._by_scope.setdefault(key, []).append(mapping)

    def get_mappings(self, tenant_id: str, client_id: str, provider: str) -> List[ClientAgentMapping]:
        return list(self._by_scope.get((tenant_id, client_id, provider), []))


class RepositoryDirectory:
    """Directory read from the local ``client_agent_mapping`` table."""

    def __init__(self, repository: UsageRepository):
        self.repository = repository

    def get_mappings(self, tenant_id: str, client_id: str, provider: str) -> List[ClientAgentMapping]:
        return self.repository.get_mappings(tenant_id, client_id, provider)


def external_agent_index(mappings: Iterable[ClientAgentMapping]) -> Dict[str, str]:
    """Map external agent id -> internal agent id."""
    return {mapping.external_agent_id: mapping.agent_id for mapping in mappings}
