"""Prompt templates for command parsing and the infrastructure chat assistant."""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Tuple

from .schemas import action_json_schema, dumps_payload

COMMAND_PARSER_PROMPT = """
You are a JSON parser for infrastructure commands. Parse the user input and respond with valid JSON only.

RULES:
1. For adding/creating components: use "modifyInfrastructure" with operation "add"
2. For updating/changing properties: use "modifyInfrastructure" with operation "update"
3. For removing/deleting: use "modifyInfrastructure" with operation "remove"
4. For describing the current setup: use "modifyInfrastructure" with operation "describe"
5. For connecting components: use "linkEntities"
6. For creating a new organization: use "createCompany"
7. For finding organizations: use "searchCompanies"
8. For starting, stopping, pausing, resuming or resetting the simulation: use "controlSimulation"
9. For greetings, help and anything else: use "chat"

IMPORTANT: Always extract the component name if mentioned (e.g. "financial analytics", "UserDB", "load balancer").
Component types: web_app, database, firewall, load_balancer, dns_server, ntp_server, api_service, social_agent, organization.
Use "auto" as companyId when the organization is not named.

The reply must be a single JSON object that validates against this JSON Schema:
{schema}
""".strip()


CHAT_SYSTEM_PROMPT = """
You are an expert AI infrastructure assistant. Your role is to help users understand and manage their infrastructure through natural conversation and by suggesting specific tool actions.

SYSTEM INSTRUCTIONS:
- You have access to infrastructure management tools that can add, remove, update, and connect components
- When users ask about infrastructure operations, guide them toward specific actionable commands
- Be helpful and conversational while staying focused on infrastructure topics
- If users need to perform actions, suggest the exact phrases they should use

AVAILABLE INFRASTRUCTURE OPERATIONS:
1. Adding components: "Add a [type] called [name]" (e.g., "Add a PostgreSQL database called UserDB")
2. Updating properties: "Change the [property] of [component] to [value]" (e.g., "Change the IP of web server to 10.0.0.5")
3. Removing components: "Remove the [component]" (e.g., "Remove the load balancer")
4. Connecting components: "Connect [component1] to [component2]" (e.g., "Connect the web app to the database")
5. Describing infrastructure: "Describe the current infrastructure"

CURRENT CONTEXT:
{context}

Respond naturally as an infrastructure expert assistant.
""".strip()


FEW_SHOT_EXAMPLES: Tuple[Tuple[str, Mapping[str, object]], ...] = (
    (
        "Add a PostgreSQL database called UserDB on the left",
        {
            "action": "modifyInfrastructure",
            "parameters": {
                "companyId": "auto",
                "operation": "add",
                "entity": {"type": "database", "name": "UserDB"},
                "layoutInstructions": "left",
            },
        },
    ),
    (
        "Change the IP of web server to 10.0.0.5",
        {
            "action": "modifyInfrastructure",
            "parameters": {
                "companyId": "auto",
                "operation": "update",
                "entity": {"name": "web server", "ip": "10.0.0.5"},
            },
        },
    ),
    (
        "hello there",
        {
            "action": "chat",
            "parameters": {"message": "hello there", "context": {"topic": "infrastructure"}},
        },
    ),
)


def describe_context(context: Optional[Mapping[str, object]]) -> str:
    if not context:
        return "No infrastructure context available"
    lines: List[str] = []
    if context.get("companyName"):
        lines.append(f"Current organization: {context['companyName']}")
    components = context.get("currentInfrastructure")
    if isinstance(components, Sequence) and not isinstance(components, str) and components:
        lines.append(f"Current infrastructure components: {', '.join(str(c) for c in components)}")
    if context.get("topic"):
        lines.append(f"Topic: {context['topic']}")
    return "\n".join(lines) or "No infrastructure context available"


def build_command_messages(
    text: str,
    *,
    context: Optional[Mapping[str, object]] = None,
    examples: Sequence[Tuple[str, Mapping[str, object]]] = FEW_SHOT_EXAMPLES,
) -> List[Mapping[str, str]]:
    """Assemble the chat messages for one parsing attempt."""

    messages: List[Mapping[str, str]] = [
        {"role": "system", "content": COMMAND_PARSER_PROMPT.format(schema=action_json_schema())}
    ]
    for sample_input, sample_output in examples:
        messages.append({"role": "user", "content": sample_input})
        messages.append({"role": "assistant", "content": dumps_payload(sample_output)})
    if context:
        messages.append({"role": "system", "content": f"Context:\n{describe_context(context)}"})
    messages.append({"role": "user", "content": text})
    return messages


def build_chat_messages(
    message: str, context: Optional[Mapping[str, object]] = None
) -> List[Mapping[str, str]]:
    return [
        {"role": "system", "content": CHAT_SYSTEM_PROMPT.format(context=describe_context(context))},
        {"role": "user", "content": message},
    ]


__all__ = [
    "CHAT_SYSTEM_PROMPT",
    "COMMAND_PARSER_PROMPT",
    "FEW_SHOT_EXAMPLES",
    "build_chat_messages",
    "build_command_messages",
    "describe_context",
]
