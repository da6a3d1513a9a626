from __future__ import annotations

import io
import json

import pytest

from infrasim.runtime import _iter_commands
from infrasim.schemas import OrganizationRecord

CREATE_REPLY = json.dumps(
    {
        "action": "createCompany",
        "parameters": {
            "name": "PayFlow",
            "description": "Payment processing for small merchants",
            "industry": "fintech",
            "tags": ["payments"],
            "services": ["Card Processing"],
        },
    }
)


@pytest.mark.asyncio
async def test_process_command_parses_and_executes(make_manager, make_llm) -> None:
    manager = make_manager(make_llm([CREATE_REPLY]))

    envelope = await manager.process_command("Create a fintech company called PayFlow")

    assert set(envelope) == {"parseResult", "executionResult", "totalDuration", "timestamp"}
    assert envelope["parseResult"]["success"] is True
    assert envelope["parseResult"]["strategy"] == "direct"
    assert envelope["executionResult"]["success"] is True
    assert envelope["executionResult"]["data"]["company"]["name"] == "PayFlow"
    assert [record.name for record in await manager.get_all()] == ["PayFlow"]
    assert manager.parser.interactions is not None and len(manager.parser.interactions) == 1


@pytest.mark.asyncio
async def test_process_command_uses_keyword_fallback(make_manager, make_llm, sleeper) -> None:
    manager = make_manager(make_llm(default="Sorry, I only speak prose."))

    envelope = await manager.process_command("find banks in Europe")

    parsed = envelope["parseResult"]
    assert parsed["success"] is False
    assert parsed["attempts"] == 3
    assert parsed["fallback"]["action"] == "searchCompanies"
    assert sleeper.delays == [1.0, 2.0]
    assert envelope["executionResult"]["success"] is True
    assert envelope["executionResult"]["data"]["count"] == 0


@pytest.mark.asyncio
async def test_modify_infrastructure_add_update_remove(make_manager, make_llm) -> None:
    manager = make_manager(make_llm())
    company_id = await manager.add(
        OrganizationRecord(
            name="Acme Bank",
            description="Regional retail bank",
            sector_tags=["Banking"],
            services=["Lending"],
        )
    )

    added = await manager.execute_action(
        {
            "action": "modifyInfrastructure",
            "parameters": {
                "companyId": company_id,
                "operation": "add",
                "entity": {
                    "type": "database",
                    "name": "CoreDB",
                    "ip": "192.168.0.10",
                    "ports": [{"number": 5432, "service": "postgres"}],
                },
                "layoutInstructions": "left top",
            },
        }
    )
    assert added.success, added.error
    original = (await manager.get_components(company_id))[0]
    assert original.hostname == "coredb.local"
    assert 100 <= original.position.x <= 300

    updated = await manager.execute_action(
        {
            "action": "modifyInfrastructure",
            "parameters": {
                "companyId": company_id,
                "operation": "update",
                "entity": {"name": "coredb", "ip": "10.0.0.5"},
            },
        }
    )
    assert updated.success, updated.error
    assert updated.data["changes"] == ["ip"]
    assert updated.data["previousValues"]["ip"] == "192.168.0.10"
    current = (await manager.get_components(company_id))[0]
    assert current.ip == "10.0.0.5"
    assert current.name == "CoreDB"
    assert current.ports == original.ports
    assert current.id == original.id

    described = await manager.execute_action(
        {"action": "modifyInfrastructure", "parameters": {"companyId": "auto", "operation": "describe"}}
    )
    assert described.message == "Generated infrastructure layout description"
    assert described.data["counts"] == {"database": 1}

    removed = await manager.execute_action(
        {
            "action": "modifyInfrastructure",
            "parameters": {"companyId": company_id, "operation": "remove", "entity": {"name": "CoreDB"}},
        }
    )
    assert removed.success, removed.error
    assert await manager.get_components(company_id) == []


def test_iter_commands_accepts_text_and_json_lines() -> None:
    stream = io.StringIO(
        "\n".join(
            [
                "# comment",
                "Create a bank",
                "",
                json.dumps({"command": "Describe it", "context": {"companyName": "Acme"}}),
            ]
        )
    )

    entries = list(_iter_commands(stream))

    assert entries == [
        {"command": "Create a bank"},
        {"command": "Describe it", "context": {"companyName": "Acme"}},
    ]


def test_iter_commands_rejects_json_without_command() -> None:
    with pytest.raises(SystemExit):
        list(_iter_commands(io.StringIO('{"context": {}}')))


@pytest.mark.asyncio
async def test_component_surface_matches_modify_rules(make_manager, make_llm) -> None:
    manager = make_manager(make_llm())
    company_id = await manager.add(
        OrganizationRecord(name="Acme Bank", sector_tags=["Banking"], services=["Lending"])
    )

    added = await manager.add_component(
        company_id,
        {"type": "database", "name": "CoreDB", "ports": [{"number": 5432, "service": "postgres"}]},
    )
    updated = await manager.update_component(company_id, "coredb", {"ip": "10.0.0.5"})

    assert added.hostname == "coredb.local"
    assert added.ip.startswith("192.168.")
    assert updated.id == added.id
    assert updated.ip == "10.0.0.5"
    assert updated.name == "CoreDB"
    assert updated.ports == added.ports

    await manager.remove_component(company_id, "CoreDB")
    assert await manager.get_components(company_id) == []
