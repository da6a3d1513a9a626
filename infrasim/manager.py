"""Caller-facing facade over the parser, the router and the organization store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from .parser import ParseResult, ResilientParser
from .schemas import Action, ComponentPatch, InfrastructureComponent, OrganizationRecord
from .storage import OrganizationStore, SearchResult
from .tools import CommandRouter, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class InfraMemoryManager:
    """Everything the presentation layer needs, as async operations."""

    store: OrganizationStore
    parser: ResilientParser
    router: CommandRouter

    async def initialize(self) -> None:
        await self.store.initialize()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    async def add(self, record: OrganizationRecord) -> str:
        return await self.store.add(record)

    async def update(self, record: OrganizationRecord) -> OrganizationRecord:
        return await self.store.update(record)

    async def get(self, record_id: str) -> OrganizationRecord:
        return await self.store.get(record_id)

    async def search(self, query: str, limit: int = 5) -> List[SearchResult]:
        return await self.store.search(query, limit)

    async def find_similar(self, record_id: str, limit: int = 5) -> List[SearchResult]:
        return await self.store.find_similar(record_id, limit)

    async def get_all(self) -> List[OrganizationRecord]:
        return await self.store.get_all()

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    async def add_component(
        self,
        record_id: str,
        component: Union[InfrastructureComponent, ComponentPatch, Mapping[str, Any]],
        *,
        layout_instructions: Optional[str] = None,
    ) -> InfrastructureComponent:
        return await self.store.add_component(
            record_id, component, layout_instructions=layout_instructions
        )

    async def remove_component(self, record_id: str, reference: str) -> InfrastructureComponent:
        return await self.store.remove_component(record_id, reference)

    async def update_component(
        self,
        record_id: str,
        reference: str,
        patch: Union[ComponentPatch, Mapping[str, Any]],
    ) -> InfrastructureComponent:
        return await self.store.update_component(record_id, reference, patch)

    async def get_components(self, record_id: str) -> List[InfrastructureComponent]:
        return await self.store.get_components(record_id)

    async def describe_layout(self, record_id: str) -> str:
        return await self.store.describe_layout(record_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def parse_command(
        self, text: str, *, context: Optional[Mapping[str, Any]] = None
    ) -> ParseResult:
        return await self.parser.parse_command(text, context=context)

    async def execute_action(self, action: Union[Action, Mapping[str, Any]]) -> ToolResult:
        return await self.router.execute(action)

    async def process_command(
        self, text: str, *, context: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Parse ``text`` (falling back to keywords) and execute the result."""

        started = time.perf_counter()
        parsed = await self.parse_command(text, context=context)
        if not parsed.success:
            logger.info("Executing keyword fallback for: %s", text)
        result = await self.execute_action(parsed.resolved_action)
        return {
            "parseResult": parsed.to_payload(),
            "executionResult": result.to_payload(),
            "totalDuration": round((time.perf_counter() - started) * 1000.0, 3),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


__all__ = ["InfraMemoryManager"]
