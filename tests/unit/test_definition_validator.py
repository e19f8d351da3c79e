import pytest

from sdbx.MODELS.service_definition import ServiceDefinition
from sdbx.MODELS.source_config import TrustLevel
from sdbx.PARSERS.definition_parser import DefinitionParser
from sdbx.PARSERS.definition_validator import SEVERITY_WARNING, DefinitionValidator, has_errors
from sdbx.REGISTRY.embedded_source import EmbeddedSource

from conftest import service_doc


def build(**kwargs):
    return ServiceDefinition.model_validate(service_doc("app", **kwargs))


def fields(issues):
    return {issue.field for issue in issues}


def test_valid_definition_has_no_errors():
    issues = DefinitionValidator().validate(build())
    assert not has_errors(issues)


@pytest.mark.parametrize("name", ["Bad_Name", "-lead", "trail-"])
def test_invalid_names(name):
    definition = ServiceDefinition.model_validate(service_doc(name))
    assert "metadata.name" in fields(DefinitionValidator().validate(definition))


def test_unknown_category():
    doc = service_doc("app")
    doc["metadata"]["category"] = "games"
    issues = DefinitionValidator().validate(ServiceDefinition.model_validate(doc))
    assert "metadata.category" in fields(issues)


def test_missing_image_repository():
    definition = build(spec={"image": {"repository": ""}})
    assert "spec.image.repository" in fields(DefinitionValidator().validate(definition))


def test_conditional_env_requires_gate():
    definition = build(spec={"environment": {"conditional": [{"name": "X", "value": "1"}]}})
    assert "spec.environment.conditional[0].when" in fields(DefinitionValidator().validate(definition))


def test_routing_port_range():
    definition = build(routing={"enabled": True, "port": 70000})
    assert "routing.port" in fields(DefinitionValidator().validate(definition))


def test_routing_path_must_be_absolute():
    definition = build(routing={"enabled": True, "port": 80, "path": "app"})
    assert "routing.path" in fields(DefinitionValidator().validate(definition))


def test_privileged_is_an_error():
    definition = build(spec={"container": {"privileged": True}})
    assert has_errors(DefinitionValidator().validate(definition))


def test_dangerous_capability_is_a_warning():
    definition = build(spec={"container": {"capabilities": {"add": ["SYS_ADMIN"]}}})
    issues = DefinitionValidator().validate(definition)
    assert [i.severity for i in issues if i.field == "spec.container.capabilities.add"] == [SEVERITY_WARNING]
    assert not has_errors(issues)


class TestTrustLevels:
    def test_capability_not_allowed(self):
        definition = build(spec={"container": {"capabilities": {"add": ["NET_ADMIN"]}}})
        issues = DefinitionValidator().validate(definition, TrustLevel())
        assert has_errors(issues)

    def test_capability_allowed(self):
        definition = build(spec={"container": {"capabilities": {"add": ["NET_ADMIN"]}}})
        issues = DefinitionValidator().validate(definition, TrustLevel(allowCapabilities=["NET_ADMIN"]))
        assert not has_errors(issues)

    def test_registry_restriction(self):
        definition = build(spec={"image": {"repository": "org/app", "registry": "ghcr.io"}})
        issues = DefinitionValidator().validate(definition, TrustLevel(allowedRegistries=["docker.io"]))
        assert "spec.image.registry" in fields(issues)

    def test_host_network(self):
        definition = build(spec={"networking": {"mode": "host"}})
        assert has_errors(DefinitionValidator().validate(definition, TrustLevel()))


def test_embedded_definitions_are_valid():
    source = EmbeddedSource(DefinitionParser())
    validator = DefinitionValidator()
    for name, definition in source.load_all().items():
        issues = validator.validate(definition)
        assert not has_errors(issues), f"{name}: {issues}"
