from __future__ import annotations

from datetime import datetime, timedelta, timezone

from infrasim.schemas import (
    ChatAction,
    ComponentKind,
    ComponentPatch,
    ExpandInfrastructureAction,
    InfrastructureComponent,
    OrganizationRecord,
    action_json_schema,
    validate_action,
    validate_record,
)


def test_chat_action_accepts_camel_case_context() -> None:
    outcome = validate_action(
        {
            "action": "chat",
            "parameters": {
                "message": "hello",
                "context": {"companyName": "Acme Bank", "currentInfrastructure": ["CoreDB"]},
            },
        }
    )

    assert outcome.ok
    assert isinstance(outcome.value, ChatAction)
    assert outcome.value.parameters.context.company_name == "Acme Bank"
    assert outcome.value.to_payload()["parameters"]["context"]["currentInfrastructure"] == ["CoreDB"]


def test_unknown_action_is_rejected_without_raising() -> None:
    outcome = validate_action({"action": "dropDatabase", "parameters": {}})

    assert not outcome.ok
    assert outcome.value is None
    assert outcome.errors[0][0] == "action"


def test_malformed_candidates_return_errors() -> None:
    for candidate in ("hello", None, 42, [], {"parameters": {}}):
        outcome = validate_action(candidate)
        assert not outcome.ok
        assert outcome.errors


def test_port_range_reports_field_path() -> None:
    outcome = validate_action(
        {
            "action": "expandInfrastructure",
            "parameters": {
                "companyId": "c-1",
                "entityType": "database",
                "name": "CoreDB",
                "hostname": "coredb.local",
                "ports": [{"number": 70000, "protocol": "tcp"}],
            },
        }
    )

    assert not outcome.ok
    assert ("parameters.ports.0.number" in {path for path, _ in outcome.errors})


def test_expand_accepts_kind_aliases() -> None:
    outcome = validate_action(
        {
            "action": "expandInfrastructure",
            "parameters": {
                "companyId": "c-1",
                "entityType": "rest_api",
                "name": "Payments",
                "hostname": "payments.local",
            },
        }
    )

    assert outcome.ok
    assert isinstance(outcome.value, ExpandInfrastructureAction)
    assert outcome.value.parameters.entity_type is ComponentKind.API_SERVICE


def test_create_company_constraints() -> None:
    outcome = validate_action(
        {
            "action": "createCompany",
            "parameters": {
                "name": "Acme",
                "description": "short",
                "industry": "banking",
                "tags": [],
                "services": ["Lending"],
            },
        }
    )

    paths = {path for path, _ in outcome.errors}
    assert "parameters.description" in paths
    assert "parameters.tags" in paths


def test_component_uses_type_on_the_wire() -> None:
    component = InfrastructureComponent.model_validate({"type": "time_server", "name": "Clock"})

    assert component.kind is ComponentKind.NTP_SERVER
    payload = component.to_payload()
    assert payload["type"] == "ntp_server"
    assert payload["ports"] == []
    assert "kind" not in payload


def test_patch_tracks_only_supplied_fields() -> None:
    patch = ComponentPatch.model_validate({"name": "CoreDB", "ip": "10.0.0.5", "hostname": None})

    assert patch.provided() == {"name": "CoreDB", "ip": "10.0.0.5"}


def test_record_timestamps_must_be_ordered() -> None:
    created = datetime(2024, 1, 2, tzinfo=timezone.utc)
    outcome = validate_record(
        {
            "name": "Acme Bank",
            "createdAt": created.isoformat(),
            "updatedAt": (created - timedelta(days=1)).isoformat(),
        }
    )

    assert not outcome.ok
    assert outcome.errors


def test_record_payload_uses_wire_names() -> None:
    record = OrganizationRecord(name="Acme Bank", sector_tags=["Banking"], services=["Lending"])
    payload = record.to_payload()

    assert payload["sectorTags"] == ["Banking"]
    assert "createdAt" in payload and "updatedAt" in payload
    assert "infrastructure" not in payload
    assert validate_record(payload).value == record


def test_search_document_flattens_metadata() -> None:
    record = OrganizationRecord(
        name="Acme Bank",
        description="Retail lending",
        sector_tags=["Banking"],
        services=["Lending"],
        metadata={"industry": "banking", "compliance": ["PCI-DSS", "SOX"], "employees": 120},
    )

    document = record.search_document()
    assert document == document.lower()
    assert "pci-dss sox" in document
    assert "120" in document


def test_action_schema_lists_every_variant() -> None:
    schema = action_json_schema()

    for name in ("createCompany", "modifyInfrastructure", "controlSimulation", "chat"):
        assert name in schema
