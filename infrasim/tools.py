"""Dispatch validated actions to the store, the mutation engine or the chat responder."""

from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic_core import to_jsonable_python

from .errors import ComponentNotFoundError, InfrasimError, RecordNotFoundError
from .interactions import InteractionLog
from .mutations import (
    MutationEngine,
    default_hostname,
    find_component,
    layout_position,
    random_private_ip,
    resolve_component,
)
from .prompts import build_chat_messages
from .schemas import (
    Action,
    ChatAction,
    ComponentKind,
    ControlSimulationAction,
    ControlSimulationParameters,
    CreateCompanyAction,
    ExpandInfrastructureAction,
    FidelityLevel,
    GenerateApiAction,
    InfrastructureComponent,
    LinkEntitiesAction,
    ModifyInfrastructureAction,
    OrganizationRecord,
    Port,
    Position,
    SearchCompaniesAction,
    validate_action,
)
from .storage import OrganizationStore

logger = logging.getLogger(__name__)


INDUSTRY_TAGS: Mapping[str, Tuple[str, ...]] = {
    "banking": ("Banking", "Financial Services"),
    "fintech": ("FinTech", "Payments", "Financial Technology"),
    "tech": ("Technology", "Innovation"),
    "healthcare": ("Healthcare", "Medical"),
    "logistics": ("Logistics", "Supply Chain"),
    "defense": ("Defense", "Security"),
    "retail": ("Retail", "E-commerce"),
    "energy": ("Energy", "Renewable"),
    "manufacturing": ("Manufacturing", "Industry 4.0"),
    "telecom": ("Telecom", "Communications"),
    "public": ("Government", "Public Services"),
}

API_PORTS: Mapping[str, int] = {"grpc": 50051, "websocket": 8080}
ROOT_POSITION = Position(x=400.0, y=300.0)
ROOT_ADDRESS = "192.168.1.1"
AUTO_COMPANY = "auto"


@dataclass
class ToolResult:
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.data is not None:
            payload["data"] = to_jsonable_python(self.data, by_alias=True, exclude_none=True)
        if self.error is not None:
            payload["error"] = self.error
        return payload


def generate_sector_tags(industry: str, user_tags: Sequence[str]) -> List[str]:
    tags: List[str] = list(INDUSTRY_TAGS.get(industry, ("Business",)))
    seen = {tag.lower() for tag in tags}
    for tag in user_tags:
        cleaned = tag.strip()
        if cleaned and cleaned.lower() not in seen:
            tags.append(cleaned)
            seen.add(cleaned.lower())
    return tags


def build_api_spec(
    service_name: str, endpoints: Sequence[Any], base_url: str, authentication: str
) -> Dict[str, Any]:
    """OpenAPI-style stub describing the requested endpoints plus a health check."""

    paths: Dict[str, Dict[str, Any]] = {}
    for endpoint in endpoints:
        operation: Dict[str, Any] = {
            "summary": endpoint.description or f"{endpoint.method} {endpoint.path}",
            "responses": {"200": {"description": "Successful response"}},
        }
        if endpoint.request_body:
            operation["requestBody"] = {"content": {"application/json": {"example": endpoint.request_body}}}
        if endpoint.response_body:
            operation["responses"]["200"]["content"] = {
                "application/json": {"example": endpoint.response_body}
            }
        paths.setdefault(endpoint.path, {})[endpoint.method.lower()] = operation
    paths.setdefault("/health", {}).setdefault(
        "get",
        {"summary": "Health check", "responses": {"200": {"description": "Service is healthy"}}},
    )
    return {
        "openapi": "3.0.0",
        "info": {"title": service_name, "version": "1.0.0"},
        "servers": [{"url": base_url}],
        "security": [] if authentication == "none" else [{authentication: []}],
        "paths": paths,
    }


def _has_word(text: str, *words: str) -> bool:
    return any(re.search(rf"\b{re.escape(word)}\b", text) for word in words)


def conversational_reply(message: str, context: Optional[Mapping[str, Any]] = None) -> str:
    """Deterministic keyword reply used when the model is unavailable."""

    lowered = message.lower()
    context = context or {}
    components = list(context.get("currentInfrastructure") or [])

    if _has_word(lowered, "infrastructure", "component", "server"):
        if components:
            return (
                f"I can see you currently have {len(components)} infrastructure components: "
                f"{', '.join(components)}. What would you like to do with your infrastructure? "
                "I can help you add new components, remove existing ones, or create connections between them."
            )
        return (
            "It looks like you don't have any infrastructure components yet. Would you like me to "
            "help you add some? I can add databases, web servers, APIs, load balancers, and more."
        )
    if _has_word(lowered, "database", "db"):
        return (
            "I can help you with database infrastructure! Try saying "
            '"Add a PostgreSQL database called UserDB".'
        )
    if _has_word(lowered, "api", "endpoint", "endpoints"):
        return (
            "APIs are a great way to connect your services! I can add API services to your "
            "infrastructure or generate API specifications."
        )
    if _has_word(lowered, "connect", "link", "communication"):
        if len(components) >= 2:
            return (
                f"You currently have: {', '.join(components)}. Which components would you like to "
                'connect? For example, "Connect the web app to the database".'
            )
        return "To connect components you'll need at least two infrastructure components first."
    if _has_word(lowered, "help") or "what can you do" in lowered or "how do i" in lowered:
        return (
            "I'm here to help you build and manage infrastructure. You can add components "
            '("Add a web server"), connect them ("Connect the API to the database"), remove them '
            '("Remove the load balancer") or ask me to "Describe the current infrastructure".'
        )
    if _has_word(lowered, "hello", "hi", "hey"):
        greeting = f" for {context['companyName']}" if context.get("companyName") else ""
        return (
            f"Hello! I'm your AI infrastructure assistant{greeting}. "
            "What would you like to work on today?"
        )
    if _has_word(lowered, "thank", "thanks"):
        return "You're welcome! I'm here whenever you need help with your infrastructure."
    return (
        f'I understand you\'re saying: "{message}". I\'m especially good at helping with '
        "infrastructure management. Is there anything specific you'd like to do with your infrastructure?"
    )


class ChatResponder:
    """Model-backed replies for the ``chat`` action with a keyword fallback."""

    def __init__(self, llm_client: Any = None, interactions: Optional[InteractionLog] = None) -> None:
        self.llm_client = llm_client
        self.interactions = interactions

    async def reply(self, message: str, context: Optional[Mapping[str, Any]] = None) -> Tuple[str, bool]:
        """Return ``(text, used_model)``."""

        if self.llm_client is None:
            return conversational_reply(message, context), False
        started = time.perf_counter()
        model_name = str(getattr(self.llm_client, "model", "unknown"))
        try:
            text = await self.llm_client.chat(build_chat_messages(message, context))
        except Exception as exc:
            logger.warning("Chat model unavailable, using keyword reply: %s", exc)
            self._record(model_name, message, "", started, error=str(exc))
            return conversational_reply(message, context), False
        self._record(model_name, message, text, started)
        if not text.strip():
            return conversational_reply(message, context), False
        return text.strip(), True

    def _record(
        self, model_name: str, prompt: str, response: str, started: float, error: Optional[str] = None
    ) -> None:
        if self.interactions is not None:
            self.interactions.record(
                "chat",
                model=model_name,
                prompt=prompt,
                response=response,
                duration_ms=(time.perf_counter() - started) * 1000.0,
                error=error,
            )


@dataclass
class SimulationState:
    """In-memory simulation controller used when no external one is supplied."""

    status: str = "stopped"
    tick_rate: int = 1000
    target_entity_id: Optional[str] = None

    async def control(self, parameters: ControlSimulationParameters) -> Dict[str, Any]:
        command = parameters.command
        if command == "pause" and self.status != "running":
            raise InfrasimError("Simulation is not running")
        if command == "resume" and self.status != "paused":
            raise InfrasimError("Simulation is not paused")

        if command == "reset":
            self.status, self.tick_rate, self.target_entity_id = "stopped", 1000, None
        else:
            self.status = {"start": "running", "stop": "stopped", "pause": "paused", "resume": "running"}[command]
        if parameters.tick_rate is not None:
            self.tick_rate = parameters.tick_rate
        if parameters.target_entity_id is not None:
            self.target_entity_id = parameters.target_entity_id
        return {
            "command": command,
            "status": self.status,
            "tickRate": self.tick_rate,
            "targetEntityId": self.target_entity_id,
        }


Handler = Callable[[Any], Awaitable[ToolResult]]


class CommandRouter:
    """Uniform dispatch from an action to its handler.

    Every failure raised by a handler is turned into an unsuccessful
    :class:`ToolResult`. Side effects that happened before the failure stay
    in place.
    """

    def __init__(
        self,
        store: OrganizationStore,
        *,
        engine: Optional[MutationEngine] = None,
        chat: Optional[ChatResponder] = None,
        simulation: Any = None,
        interactions: Optional[InteractionLog] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.rng = rng or random.Random()
        self.engine = engine or MutationEngine(self.rng)
        self.chat = chat or ChatResponder(interactions=interactions)
        self.simulation = simulation or SimulationState()
        self.interactions = interactions
        self._handlers: Dict[str, Handler] = {
            "createCompany": self._create_company,
            "generateApi": self._generate_api,
            "linkEntities": self._link_entities,
            "expandInfrastructure": self._expand_infrastructure,
            "modifyInfrastructure": self._modify_infrastructure,
            "searchCompanies": self._search_companies,
            "controlSimulation": self._control_simulation,
            "chat": self._chat,
        }

    async def __call__(self, action: Union[Action, Mapping[str, Any]]) -> ToolResult:
        return await self.execute(action)

    async def execute(self, action: Union[Action, Mapping[str, Any]]) -> ToolResult:
        if isinstance(action, Mapping):
            outcome = validate_action(action)
            if not outcome.ok:
                reasons = "; ".join(f"{path}: {reason}" for path, reason in outcome.errors)
                return ToolResult(success=False, message="Invalid action", error=reasons)
            action = outcome.value  # type: ignore[assignment]

        name = action.action  # type: ignore[union-attr]
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(
                success=False,
                message="Unknown action type",
                error=f"Action '{name}' is not supported",
            )

        started = time.perf_counter()
        try:
            result = await handler(action)
        except InfrasimError as exc:
            logger.warning("Tool action %s failed: %s", name, exc)
            result = ToolResult(success=False, message="Tool execution failed", error=str(exc))
        except Exception as exc:
            logger.exception("Tool action %s raised an unexpected error", name)
            result = ToolResult(success=False, message="Tool execution failed", error=str(exc))
        logger.info(
            "Tool action %s completed (success=%s) in %.1f ms",
            name,
            result.success,
            (time.perf_counter() - started) * 1000.0,
        )
        return result

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------
    async def _resolve_company(self, company_id: Optional[str]) -> OrganizationRecord:
        """Fetch a company by id; ``auto`` picks the first one and names are accepted."""

        records = await self.store.get_all()
        if not company_id or company_id == AUTO_COMPANY:
            if not records:
                raise RecordNotFoundError(company_id or AUTO_COMPANY)
            return records[0]
        for record in records:
            if record.id == company_id:
                return record
        lowered = company_id.lower()
        for record in records:
            if record.name.lower() == lowered:
                return record
        raise RecordNotFoundError(company_id)

    @staticmethod
    def _lookup(components: Sequence[InfrastructureComponent], reference: str) -> InfrastructureComponent:
        try:
            return find_component(components, reference)
        except ComponentNotFoundError:
            return resolve_component(components, reference)

    async def _owner_of(
        self, reference: str, other: str, company_id: Optional[str]
    ) -> Tuple[OrganizationRecord, InfrastructureComponent, InfrastructureComponent]:
        if company_id:
            record = await self._resolve_company(company_id)
            components = record.infrastructure or []
            return record, self._lookup(components, reference), self._lookup(components, other)
        for record in await self.store.get_all():
            components = record.infrastructure or []
            try:
                return record, self._lookup(components, reference), self._lookup(components, other)
            except ComponentNotFoundError:
                continue
        raise ComponentNotFoundError(reference, by_name=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _create_company(self, action: CreateCompanyAction) -> ToolResult:
        params = action.parameters
        sector_tags = generate_sector_tags(params.industry, params.tags)
        root = InfrastructureComponent(
            kind=ComponentKind.ORGANIZATION,
            name=params.name,
            hostname=default_hostname(params.name),
            ip=ROOT_ADDRESS,
            fidelity=FidelityLevel.CONCRETE,
            metadata={"description": params.description, "root": True},
            position=ROOT_POSITION.model_copy(),
        )
        metadata: Dict[str, Any] = {
            "industry": params.industry,
            "jurisdiction": params.jurisdiction,
            "compliance": list(params.compliance),
            "employees": params.employees,
            "founded": params.founded,
            "headquarters": params.headquarters,
            "source": "tool_creation",
        }
        record = OrganizationRecord(
            name=params.name,
            description=params.description,
            sector_tags=sector_tags,
            services=list(params.services),
            metadata={key: value for key, value in metadata.items() if value is not None},
            infrastructure=[root],
        )
        company_id = await self.store.add(record)
        similar = await self.store.find_similar(company_id, limit=3)
        return ToolResult(
            success=True,
            message=f"Successfully created company '{params.name}' with ID {company_id}",
            data={
                "companyId": company_id,
                "company": await self.store.get(company_id),
                "rootEntity": root,
                "sectorTags": sector_tags,
                "similarCompanies": [
                    {"id": hit.record.id, "name": hit.record.name, "similarity": hit.similarity}
                    for hit in similar
                ],
            },
        )

    async def _generate_api(self, action: GenerateApiAction) -> ToolResult:
        params = action.parameters
        company = await self._resolve_company(params.company_id)
        service_slug = re.sub(r"\s+", "-", params.service_name.lower())
        company_slug = re.sub(r"\s+", "", company.name.lower())
        hostname = f"{service_slug}.{company_slug}.local"
        base_url = f"https://{hostname}"
        spec = build_api_spec(params.service_name, params.endpoints, base_url, params.authentication)
        metadata: Dict[str, Any] = {
            "apiType": params.api_type,
            "authentication": params.authentication,
            "endpoints": [f"{ep.method} {ep.path}" for ep in params.endpoints],
            "openapi": spec,
        }
        if params.rate_limit is not None:
            metadata["rateLimit"] = params.rate_limit
        component = InfrastructureComponent(
            kind=ComponentKind.API_SERVICE,
            name=params.service_name,
            hostname=hostname,
            ip=random_private_ip(self.rng),
            fidelity=FidelityLevel.CONCRETE,
            ports=[Port(number=API_PORTS.get(params.api_type, 443), protocol="tcp", service=params.api_type)],
            metadata=metadata,
            position=layout_position(None, company.infrastructure or [], self.rng),
        )
        added = await self.store.add_component(company.id, component)
        return ToolResult(
            success=True,
            message=f"Generated {params.api_type.upper()} API '{params.service_name}' for {company.name}",
            data={
                "companyId": company.id,
                "company": company.name,
                "apiEntity": added,
                "endpointCount": len(params.endpoints),
                "apiSpec": spec,
            },
        )

    async def _link_entities(self, action: LinkEntitiesAction) -> ToolResult:
        params = action.parameters
        record, source, target = await self._owner_of(
            params.source_entity_id, params.target_entity_id, params.company_id
        )
        await self.store.link_components(
            record.id, source.id, target.id, bidirectional=params.bidirectional
        )
        connection = {
            "sourceEntityId": source.id,
            "targetEntityId": target.id,
            "connectionType": params.connection_type,
            "protocol": params.protocol or "tcp",
            "port": params.port,
            "bidirectional": params.bidirectional,
            "description": params.description,
        }
        return ToolResult(
            success=True,
            message=(
                f"Linked '{source.name}' to '{target.name}' with a {params.connection_type} connection"
            ),
            data={"companyId": record.id, "connection": connection},
        )

    async def _expand_infrastructure(self, action: ExpandInfrastructureAction) -> ToolResult:
        params = action.parameters
        company = await self._resolve_company(params.company_id)
        component = InfrastructureComponent(
            kind=params.entity_type,
            name=params.name,
            hostname=params.hostname,
            ip=random_private_ip(self.rng),
            fidelity=FidelityLevel.CONCRETE,
            ports=[port.model_copy() for port in params.ports],
            metadata={**params.metadata, "companyId": company.id, "expandedInfrastructure": True},
            position=layout_position(None, company.infrastructure or [], self.rng),
        )
        added = await self.store.add_component(company.id, component)
        return ToolResult(
            success=True,
            message=f"Added {params.entity_type.value} '{params.name}' to {company.name}'s infrastructure",
            data={"companyId": company.id, "company": company.name, "entity": added},
        )

    async def _modify_infrastructure(self, action: ModifyInfrastructureAction) -> ToolResult:
        params = action.parameters
        company = await self._resolve_company(params.company_id)
        result = self.engine.apply(company.infrastructure or [], params, company.name)
        if result.changed:
            company.infrastructure = result.components
            await self.store.update(company)

        data: Dict[str, Any] = {
            "companyId": company.id,
            "operation": result.operation,
            "changes": result.changes,
        }
        if result.component is not None:
            data["entityId"] = result.component.id
            data["entity"] = result.component
        if result.operation == "describe":
            data["description"] = result.message
            data["counts"] = result.previous.get("counts", {})
            message = "Generated infrastructure layout description"
        else:
            if result.previous:
                data["previousValues"] = result.previous
            message = result.message
        return ToolResult(success=True, message=message, data=data)

    async def _search_companies(self, action: SearchCompaniesAction) -> ToolResult:
        params = action.parameters
        hits = await self.store.search(params.query, params.limit)
        if params.industry:
            hits = [hit for hit in hits if hit.record.metadata.get("industry") == params.industry]
        if params.tags:
            wanted = [tag.lower() for tag in params.tags]
            hits = [
                hit
                for hit in hits
                if any(tag in sector.lower() for sector in hit.record.sector_tags for tag in wanted)
            ]
        return ToolResult(
            success=True,
            message=f"Found {len(hits)} companies matching '{params.query}'",
            data={
                "query": params.query,
                "count": len(hits),
                "results": [hit.to_payload() for hit in hits],
            },
        )

    async def _control_simulation(self, action: ControlSimulationAction) -> ToolResult:
        state = await self.simulation.control(action.parameters)
        return ToolResult(
            success=True,
            message=f"Simulation {action.parameters.command} command applied",
            data=state,
        )

    async def _chat(self, action: ChatAction) -> ToolResult:
        params = action.parameters
        context = params.context.to_payload() if params.context is not None else {}
        text, used_model = await self.chat.reply(params.message, context)
        return ToolResult(
            success=True,
            message=text,
            data={
                "conversationType": "ai_guided" if used_model else "fallback",
                "context": context,
                "userMessage": params.message,
            },
        )


__all__ = [
    "ChatResponder",
    "CommandRouter",
    "INDUSTRY_TAGS",
    "SimulationState",
    "ToolResult",
    "build_api_spec",
    "conversational_reply",
    "generate_sector_tags",
]
