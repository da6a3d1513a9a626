"""Typed data structures and validators for organizations, components and actions."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Generic, List, Literal, Mapping, Optional, Tuple, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

T = TypeVar("T")

Metadata = Dict[str, JsonValue]


def _default_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ComponentKind(str, Enum):
    WEB_APP = "web_app"
    DATABASE = "database"
    FIREWALL = "firewall"
    LOAD_BALANCER = "load_balancer"
    DNS_SERVER = "dns_server"
    NTP_SERVER = "ntp_server"
    API_SERVICE = "api_service"
    SOCIAL_AGENT = "social_agent"
    ORGANIZATION = "organization"


class FidelityLevel(str, Enum):
    VIRTUAL = "virtual"
    SEMI_REAL = "semi_real"
    CONCRETE = "concrete"


# Spellings models tend to produce for the same kinds.
_KIND_ALIASES = {
    "api": ComponentKind.API_SERVICE.value,
    "rest_api": ComponentKind.API_SERVICE.value,
    "time_server": ComponentKind.NTP_SERVER.value,
    "web_server": ComponentKind.WEB_APP.value,
    "webapp": ComponentKind.WEB_APP.value,
    "db": ComponentKind.DATABASE.value,
}

Industry = Literal[
    "banking",
    "fintech",
    "tech",
    "healthcare",
    "logistics",
    "defense",
    "retail",
    "energy",
    "manufacturing",
    "telecom",
    "public",
]


class WireModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _normalize_kind(value: Any) -> Any:
    if isinstance(value, str):
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        return _KIND_ALIASES.get(key, key)
    return value


# ----------------------------------------------------------------------
# Infrastructure graph
# ----------------------------------------------------------------------
class Port(WireModel):
    number: int = Field(ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"
    service: str = ""
    status: Literal["open", "closed", "filtered"] = "open"


class Position(WireModel):
    x: float = 0.0
    y: float = 0.0


class InfrastructureComponent(WireModel):
    """A node of an organization's infrastructure graph."""

    id: str = Field(default_factory=_new_id)
    kind: ComponentKind = Field(alias="type")
    name: str = Field(min_length=1)
    hostname: str = ""
    ip: str = ""
    fidelity: FidelityLevel = FidelityLevel.VIRTUAL
    ports: List[Port] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)
    position: Position = Field(default_factory=Position)
    connections: List[str] = Field(default_factory=list)

    @field_validator("kind", mode="before")
    @classmethod
    def coerce_kind(cls, value: Any) -> Any:
        return _normalize_kind(value)


class ComponentPatch(WireModel):
    """Partial component as produced by a model: every field is optional."""

    id: Optional[str] = None
    kind: Optional[ComponentKind] = Field(default=None, alias="type")
    name: Optional[str] = None
    hostname: Optional[str] = None
    ip: Optional[str] = None
    fidelity: Optional[FidelityLevel] = None
    ports: Optional[List[Port]] = None
    metadata: Optional[Metadata] = None
    position: Optional[Position] = None
    connections: Optional[List[str]] = None

    @field_validator("kind", mode="before")
    @classmethod
    def coerce_kind(cls, value: Any) -> Any:
        return _normalize_kind(value)

    def provided(self) -> Dict[str, Any]:
        """Fields that were explicitly supplied with a non-null value."""

        return {name: getattr(self, name) for name in self.model_fields_set if getattr(self, name) is not None}


# ----------------------------------------------------------------------
# Organizations
# ----------------------------------------------------------------------
class OrganizationRecord(WireModel):
    """An organization held by the memory store."""

    id: str = Field(default_factory=_new_id)
    name: str = Field(min_length=1)
    description: str = ""
    sector_tags: List[str] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)
    infrastructure: Optional[List[InfrastructureComponent]] = None
    created_at: datetime = Field(default_factory=_default_timestamp)
    updated_at: datetime = Field(default_factory=_default_timestamp)

    @model_validator(mode="after")
    def check_timestamps(self) -> "OrganizationRecord":
        if self.updated_at < self.created_at:
            raise ValueError("updatedAt must not precede createdAt")
        return self

    def search_document(self) -> str:
        """Text that represents the record inside the vector index."""

        parts = [self.name, self.description, " ".join(self.sector_tags), " ".join(self.services)]
        parts.extend(_flatten_value(value) for value in self.metadata.values())
        return " ".join(part for part in parts if part).lower()


def _flatten_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return " ".join(_flatten_value(item) for item in value)
    if isinstance(value, dict):
        return " ".join(_flatten_value(item) for item in value.values())
    return str(value)


# ----------------------------------------------------------------------
# Actions
# ----------------------------------------------------------------------
class CreateCompanyParameters(WireModel):
    name: str = Field(min_length=1, description="Company name")
    description: str = Field(min_length=10, description="What the company does")
    jurisdiction: Optional[str] = Field(default=None, description="Country or region of operation")
    industry: Industry = Field(description="Primary industry sector")
    tags: List[str] = Field(min_length=1, description="Sector tags and keywords")
    services: List[str] = Field(min_length=1, description="Core business services")
    compliance: List[str] = Field(default_factory=list, description="Regulatory standards")
    employees: Optional[int] = Field(default=None, gt=0)
    founded: Optional[int] = Field(default=None, ge=1800, le=2030)
    headquarters: Optional[str] = None


class CreateCompanyAction(WireModel):
    action: Literal["createCompany"]
    parameters: CreateCompanyParameters


class EndpointSpec(WireModel):
    path: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
    description: str = ""
    request_body: Optional[Metadata] = None
    response_body: Optional[Metadata] = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class GenerateApiParameters(WireModel):
    company_id: str = Field(min_length=1, description="Company to attach the API to, or 'auto'")
    api_type: Literal["rest", "graphql", "grpc", "websocket"] = "rest"
    service_name: str = Field(min_length=1)
    endpoints: List[EndpointSpec] = Field(min_length=1)
    authentication: Literal["none", "apikey", "oauth2", "jwt", "basic"] = "apikey"
    rate_limit: Optional[int] = Field(default=None, gt=0, description="Requests per minute")


class GenerateApiAction(WireModel):
    action: Literal["generateApi"]
    parameters: GenerateApiParameters


class LinkEntitiesParameters(WireModel):
    source_entity_id: str = Field(min_length=1)
    target_entity_id: str = Field(min_length=1)
    connection_type: Literal["api", "database", "messaging", "file_transfer", "vpn", "direct"]
    protocol: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    bidirectional: bool = True
    description: Optional[str] = None
    company_id: Optional[str] = None


class LinkEntitiesAction(WireModel):
    action: Literal["linkEntities"]
    parameters: LinkEntitiesParameters


class ExpandInfrastructureParameters(WireModel):
    company_id: str = Field(min_length=1)
    entity_type: ComponentKind
    name: str = Field(min_length=1)
    hostname: str = Field(min_length=1)
    ports: List[Port] = Field(default_factory=list)
    metadata: Metadata = Field(default_factory=dict)

    @field_validator("entity_type", mode="before")
    @classmethod
    def coerce_kind(cls, value: Any) -> Any:
        return _normalize_kind(value)


class ExpandInfrastructureAction(WireModel):
    action: Literal["expandInfrastructure"]
    parameters: ExpandInfrastructureParameters


class ModifyInfrastructureParameters(WireModel):
    company_id: str = Field(description="Company whose infrastructure is modified")
    operation: Literal["add", "remove", "update", "describe"]
    entity: Optional[ComponentPatch] = None
    entity_id: Optional[str] = None
    layout_instructions: Optional[str] = None


class ModifyInfrastructureAction(WireModel):
    action: Literal["modifyInfrastructure"]
    parameters: ModifyInfrastructureParameters


class SearchCompaniesParameters(WireModel):
    query: str = Field(min_length=1)
    industry: Optional[Industry] = None
    tags: Optional[List[str]] = None
    limit: int = Field(default=10, ge=1, le=50)


class SearchCompaniesAction(WireModel):
    action: Literal["searchCompanies"]
    parameters: SearchCompaniesParameters


class ControlSimulationParameters(WireModel):
    command: Literal["start", "stop", "pause", "resume", "reset"]
    tick_rate: Optional[int] = Field(default=None, ge=100, le=10000)
    target_entity_id: Optional[str] = None


class ControlSimulationAction(WireModel):
    action: Literal["controlSimulation"]
    parameters: ControlSimulationParameters


class ChatContext(WireModel):
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    current_infrastructure: Optional[List[str]] = None
    topic: Optional[str] = None


class ChatParameters(WireModel):
    message: str
    context: Optional[ChatContext] = None


class ChatAction(WireModel):
    action: Literal["chat"]
    parameters: ChatParameters


Action = Annotated[
    Union[
        CreateCompanyAction,
        GenerateApiAction,
        LinkEntitiesAction,
        ExpandInfrastructureAction,
        ModifyInfrastructureAction,
        SearchCompaniesAction,
        ControlSimulationAction,
        ChatAction,
    ],
    Field(discriminator="action"),
]

ACTION_ADAPTER: TypeAdapter[Action] = TypeAdapter(Action)

ACTION_NAMES: Tuple[str, ...] = (
    "createCompany",
    "generateApi",
    "linkEntities",
    "expandInfrastructure",
    "modifyInfrastructure",
    "searchCompanies",
    "controlSimulation",
    "chat",
)


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------
@dataclass
class ValidationOutcome(Generic[T]):
    """Either an accepted value or the ordered field-level errors."""

    value: Optional[T] = None
    errors: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None and not self.errors


def _format_errors(exc: ValidationError, tag: Optional[str] = None) -> List[Tuple[str, str]]:
    formatted: List[Tuple[str, str]] = []
    for error in exc.errors():
        loc = list(error.get("loc", ()))
        if tag is not None and loc and loc[0] == tag:
            loc = loc[1:]
        if not loc and str(error.get("type", "")).startswith("union_tag"):
            loc = ["action"]
        path = ".".join(str(part) for part in loc) or "<root>"
        formatted.append((path, str(error.get("msg", "invalid value"))))
    return formatted


def validate_action(candidate: Any) -> ValidationOutcome[Action]:
    """Validate ``candidate`` against the action union without raising."""

    tag = candidate.get("action") if isinstance(candidate, Mapping) else None
    try:
        value = ACTION_ADAPTER.validate_python(candidate)
    except ValidationError as exc:
        return ValidationOutcome(errors=_format_errors(exc, tag if isinstance(tag, str) else None))
    return ValidationOutcome(value=value)


def validate_record(candidate: Any) -> ValidationOutcome[OrganizationRecord]:
    try:
        value = OrganizationRecord.model_validate(candidate)
    except ValidationError as exc:
        return ValidationOutcome(errors=_format_errors(exc))
    return ValidationOutcome(value=value)


def validate_component(candidate: Any) -> ValidationOutcome[InfrastructureComponent]:
    try:
        value = InfrastructureComponent.model_validate(candidate)
    except ValidationError as exc:
        return ValidationOutcome(errors=_format_errors(exc))
    return ValidationOutcome(value=value)


def action_json_schema() -> str:
    """Render the action union as JSON Schema text for prompt injection."""

    return dumps_payload(ACTION_ADAPTER.json_schema(by_alias=True))


def dumps_payload(data: Mapping[str, Any]) -> str:
    """Render ``data`` as formatted JSON for prompt injection."""

    return json.dumps(data, ensure_ascii=False, indent=2)


__all__ = [
    "ACTION_ADAPTER",
    "ACTION_NAMES",
    "Action",
    "ChatAction",
    "ChatContext",
    "ChatParameters",
    "ComponentKind",
    "ComponentPatch",
    "ControlSimulationAction",
    "ControlSimulationParameters",
    "CreateCompanyAction",
    "CreateCompanyParameters",
    "EndpointSpec",
    "ExpandInfrastructureAction",
    "ExpandInfrastructureParameters",
    "FidelityLevel",
    "GenerateApiAction",
    "GenerateApiParameters",
    "InfrastructureComponent",
    "LinkEntitiesAction",
    "LinkEntitiesParameters",
    "Metadata",
    "ModifyInfrastructureAction",
    "ModifyInfrastructureParameters",
    "OrganizationRecord",
    "Port",
    "Position",
    "SearchCompaniesAction",
    "SearchCompaniesParameters",
    "ValidationOutcome",
    "WireModel",
    "action_json_schema",
    "dumps_payload",
    "validate_action",
    "validate_component",
    "validate_record",
]
