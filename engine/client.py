"""
EnvironmentClient interface consumed by the pipeline stages.

Implementations raise TransientClientError for timeouts, network errors,
HTTP 5xx and rate limiting, and PermanentClientError (or its subclass
AuthenticationError) for everything that will not succeed by retrying
immediately.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set, Callable, Awaitable

from models.environment import Environment


@dataclass
class Page:
    """One page of raw rows from the source entity"""
    rows: List[Dict[str, Any]]
    next_page_token: Optional[str] = None
    total_count: Optional[int] = None


@dataclass
class WriteReceipt:
    """Result of a successful single-row write"""
    identity: List[str] = field(default_factory=list)


@dataclass
class KeyFilter:
    """Restricts a page request to specific natural key values"""
    field_name: str
    keys: Set[str]


class EnvironmentClient(Protocol):
    """Typed read/write access to one environment's entity API"""

    async def list_entity_fields(self, entity: str) -> Sequence[str]:
        ...

    async def page_entity_rows(
        self,
        entity: str,
        page_token: Optional[str],
        key_filter: Optional[KeyFilter] = None,
        page_size: int = 500,
    ) -> Page:
        ...

    async def write_entity_row(self, entity: str, row: Dict[str, Any]) -> WriteReceipt:
        ...

    async def aclose(self) -> None:
        ...


# Builds the client for an environment
ClientFactory = Callable[[Environment], Awaitable[EnvironmentClient]]
