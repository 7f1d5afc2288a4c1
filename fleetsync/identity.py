"""Maps agent identifiers and installation names onto persisted entities."""

import structlog

from .models import Installation, Robot
from .outcome import Lookup, NotFound
from .repository import FleetRepository

logger = structlog.get_logger(__name__)


class IdentityResolver:
    """Never raises for unknown identifiers; callers get a ``NotFound`` outcome."""

    def __init__(self, repository: FleetRepository):
        self.repository = repository

    async def robot_for_agent(self, agent_id: str) -> Lookup[Robot]:
        result = await self.repository.robot_by_agent_id(agent_id)
        if isinstance(result, NotFound):
            logger.debug("Unknown agent", agent_id=agent_id)
        return result

    async def installation_named(self, name: str) -> Lookup[Installation]:
        return await self.repository.installation_by_name(name)
