"""
Unit tests for the definition parser.
"""
import pytest
import yaml

from sdbx.MODELS.errors import DefinitionParseError, LockFileError
from sdbx.MODELS.lock_file import LockedImage, LockedService, LockedSource, LockFile, LockFileMetadata
from sdbx.MODELS.service_definition import RestartPolicyCondition
from sdbx.PARSERS.definition_parser import DefinitionParser

SERVICE_YAML = """
apiVersion: sdbx.io/v1
kind: Service
metadata:
  name: sonarr
  version: "4.0.0"
  category: media
  description: TV series manager
spec:
  image:
    repository: linuxserver/sonarr
  container:
    restart: no
  healthcheck:
    test: curl -f http://localhost:8989
routing:
  enabled: true
  port: 8989
conditions:
  requireAddon: true
"""


class TestParseService:
    def test_parse_fills_defaults(self):
        definition = DefinitionParser().parse_service(SERVICE_YAML)

        assert definition.name == "sonarr"
        assert definition.version == "4.0.0"
        assert definition.spec.image.tag == "latest"
        assert definition.spec.image.registry == "docker.io"
        assert definition.spec.container.name_template == "sdbx-{{ name }}"
        assert definition.spec.networking.mode == "bridge"
        assert definition.routing.subdomain == "sonarr"
        assert definition.routing.path == "/sonarr"
        assert definition.routing.path_routing.strategy == "stripPrefix"
        assert definition.integrations.watchtower.enabled
        assert definition.is_addon

    def test_bare_no_restart_policy(self):
        definition = DefinitionParser().parse_service(SERVICE_YAML)
        assert definition.spec.container.restart == RestartPolicyCondition.NO

    def test_string_healthcheck_uses_shell(self):
        definition = DefinitionParser().parse_service(SERVICE_YAML)
        assert definition.spec.healthcheck.test == ["CMD-SHELL", "curl -f http://localhost:8989"]

    def test_wrong_api_version(self):
        content = SERVICE_YAML.replace("sdbx.io/v1", "sdbx.io/v2")
        with pytest.raises(DefinitionParseError, match="apiVersion"):
            DefinitionParser().parse_service(content, "x/service.yaml")

    def test_wrong_kind(self):
        content = SERVICE_YAML.replace("kind: Service", "kind: Deployment")
        with pytest.raises(DefinitionParseError, match="kind"):
            DefinitionParser().parse_service(content)

    def test_malformed_yaml(self):
        with pytest.raises(DefinitionParseError):
            DefinitionParser().parse_service("metadata: [unclosed")

    def test_missing_name(self):
        content = SERVICE_YAML.replace("name: sonarr", "name: ''")
        with pytest.raises(DefinitionParseError, match="metadata.name"):
            DefinitionParser().parse_service(content)

    def test_definitions_are_immutable(self):
        definition = DefinitionParser().parse_service(SERVICE_YAML)
        with pytest.raises(Exception):
            definition.metadata.version = "5.0.0"


class TestOverrides:
    OVERRIDE_YAML = """
apiVersion: sdbx.io/v1
kind: ServiceOverride
metadata:
  name: sonarr
spec:
  image:
    tag: develop
  environment:
    additional:
      - name: EXTRA
        value: "1"
  volumes:
    additional:
      - hostPath: /mnt/tv
        containerPath: /tv
routing:
  subdomain: series
"""

    def test_apply_merges_fields(self):
        parser = DefinitionParser()
        base = parser.parse_service(SERVICE_YAML)
        override = parser.parse_override(self.OVERRIDE_YAML)

        merged = override.apply(base)

        assert merged.spec.image.repository == "linuxserver/sonarr"
        assert merged.spec.image.tag == "develop"
        assert [e.name for e in merged.spec.environment.static] == ["EXTRA"]
        assert merged.spec.volumes[-1].container_path == "/tv"
        assert merged.routing.subdomain == "series"
        assert merged.routing.path == "/sonarr"
        # The base is untouched
        assert base.spec.image.tag == "latest"

    def test_override_kind_is_checked(self):
        with pytest.raises(DefinitionParseError):
            DefinitionParser().parse_override(SERVICE_YAML)


class TestDiscovery:
    def test_discover_skips_hidden_directories(self, tmp_path, write_service):
        write_service(tmp_path, "alpha")
        write_service(tmp_path, "beta", subdir="addons")
        write_service(tmp_path, "ghost", subdir=".git")
        (tmp_path / "empty").mkdir()

        assert DefinitionParser().discover_services(str(tmp_path)) == ["alpha", "beta"]

    def test_discover_missing_root(self, tmp_path):
        assert DefinitionParser().discover_services(str(tmp_path / "missing")) == []

    def test_find_service_file_search_order(self, tmp_path, write_service):
        write_service(tmp_path, "alpha", subdir="core")
        write_service(tmp_path, "alpha", subdir="addons")

        path = DefinitionParser().find_service_file(str(tmp_path), "alpha")
        assert path.endswith("core/alpha/service.yaml") or path.endswith("core\\alpha\\service.yaml")


class TestLockFileIO:
    def make_lock(self):
        return LockFile(
            metadata=LockFileMetadata(generatedAt="2026-01-02T03:04:05Z", cliVersion="0.1.0", configHash="sha256:abc"),
            sources={
                "official": LockedSource(url="https://example.com/s.git", commit="deadbeef", branch="main"),
                "embedded": LockedSource(url="embedded", commit="embedded-0.1.0"),
            },
            services={
                "traefik": LockedService(source="embedded", definitionVersion="3.1.0",
                                         image=LockedImage(repository="traefik", tag="v3.1")),
            },
            installOrder=["traefik"],
        )

    def test_save_load_is_byte_stable(self, tmp_path):
        parser = DefinitionParser()
        path = tmp_path / ".sdbx.lock"
        parser.save_lock_file(self.make_lock(), str(path))
        first = path.read_text()

        parser.save_lock_file(parser.load_lock_file(str(path)), str(path))

        assert path.read_text() == first

    def test_document_is_sorted_and_compact(self):
        document = self.make_lock().to_document()
        assert list(document["sources"]) == ["embedded", "official"]
        assert "branch" not in document["sources"]["embedded"]
        assert "digest" not in document["services"]["traefik"]["image"]

    def test_unquoted_timestamp_loads_as_string(self, tmp_path):
        path = tmp_path / ".sdbx.lock"
        document = self.make_lock().to_document()
        text = yaml.safe_dump(document).replace("'2026-01-02T03:04:05Z'", "2026-01-02T03:04:05Z")
        path.write_text(text)

        lock = DefinitionParser().load_lock_file(str(path))
        assert lock.metadata.generated_at == "2026-01-02T03:04:05Z"

    def test_missing_lock_file(self, tmp_path):
        with pytest.raises(LockFileError):
            DefinitionParser().load_lock_file(str(tmp_path / "nope.lock"))

    def test_wrong_kind(self, tmp_path):
        path = tmp_path / ".sdbx.lock"
        path.write_text("apiVersion: sdbx.io/v1\nkind: Service\n")
        with pytest.raises(LockFileError):
            DefinitionParser().load_lock_file(str(path))
