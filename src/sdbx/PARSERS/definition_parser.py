# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parsers for service definition, override, source configuration and lock files.
"""
import logging
import os
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .. import API_VERSION
from ..MODELS.errors import DefinitionParseError, LockFileError
from ..MODELS.lock_file import KIND_LOCK_FILE, LockFile
from ..MODELS.service_definition import (
    KIND_SERVICE,
    KIND_SERVICE_OVERRIDE,
    ServiceDefinition,
    ServiceOverride,
    ServiceSpecOverride,
    ToggleIntegration,
)
from ..MODELS.source_config import KIND_SOURCE_CONFIG, SourceConfig
from ..UTILS.atomic_write import atomic_write_text

logger = logging.getLogger(__name__)

SERVICE_FILE = "service.yaml"
OVERRIDE_FILE = "override.yaml"
SERVICE_SUBDIRS = ("", "core", "addons")


class DefinitionParser:
    """
    Parser for sdbx YAML documents.
    """
    def parse_service(self, content: str, path: str = "<string>") -> ServiceDefinition:
        """
        Parses a service definition and fills in defaults.

        :param content: YAML content of a service.yaml file.
        :param path: Where the content came from, used in error messages.
        :return: The parsed definition.
        :raises DefinitionParseError: If the YAML is malformed, or apiVersion/kind are wrong.
        """
        data = self._load_document(content, path, KIND_SERVICE)
        try:
            definition = ServiceDefinition.model_validate(data)
        except ValidationError as e:
            raise DefinitionParseError(path, f"invalid service definition: {e}")
        if not definition.name:
            raise DefinitionParseError(path, "metadata.name is required")
        return self.apply_defaults(definition)

    def load_service(self, path: str) -> ServiceDefinition:
        with open(path, 'r') as f:
            content = f.read()
        return self.parse_service(content, path)

    def parse_override(self, content: str, path: str = "<string>") -> ServiceOverride:
        """
        Parses an override document.

        :raises DefinitionParseError: If the YAML is malformed or the kind is wrong.
        """
        data = self._load_document(content, path, KIND_SERVICE_OVERRIDE)
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise DefinitionParseError(path, "metadata must be a mapping")
        if data.get("spec") and not isinstance(data["spec"], dict):
            raise DefinitionParseError(path, "spec must be a mapping")
        try:
            return ServiceOverride(
                apiVersion=data.get("apiVersion", API_VERSION),
                kind=data.get("kind", KIND_SERVICE_OVERRIDE),
                name=metadata.get("name") or data.get("name", ""),
                spec=ServiceSpecOverride.from_raw(data["spec"]) if data.get("spec") else None,
                routing=data.get("routing"),
            )
        except ValidationError as e:
            raise DefinitionParseError(path, f"invalid service override: {e}")

    def load_override(self, path: str) -> ServiceOverride:
        with open(path, 'r') as f:
            content = f.read()
        return self.parse_override(content, path)

    def apply_defaults(self, definition: ServiceDefinition) -> ServiceDefinition:
        """
        Returns a copy of ``definition`` with name-derived defaults filled in.
        """
        name = definition.name
        spec = definition.spec
        spec_updates: Dict[str, Any] = {}

        container = spec.container
        if not container.name_template:
            spec_updates["container"] = container.model_copy(update={"name_template": "sdbx-{{ name }}"})

        image = spec.image
        image_updates = {}
        if not image.registry:
            image_updates["registry"] = "docker.io"
        if not image.tag:
            image_updates["tag"] = "latest"
        if image_updates:
            spec_updates["image"] = image.model_copy(update=image_updates)

        networking = spec.networking
        if not networking.mode and not networking.mode_template:
            spec_updates["networking"] = networking.model_copy(update={"mode": "bridge"})

        updates: Dict[str, Any] = {}
        if spec_updates:
            updates["spec"] = spec.model_copy(update=spec_updates)

        routing = definition.routing
        if routing.enabled:
            routing_updates: Dict[str, Any] = {}
            if not routing.subdomain:
                routing_updates["subdomain"] = name
            if not routing.path:
                routing_updates["path"] = f"/{name}"
            if not routing.path_routing.strategy:
                routing_updates["path_routing"] = routing.path_routing.model_copy(update={"strategy": "stripPrefix"})
            if routing_updates:
                updates["routing"] = routing.model_copy(update=routing_updates)

        if definition.integrations.watchtower is None:
            updates["integrations"] = definition.integrations.model_copy(
                update={"watchtower": ToggleIntegration(enabled=True)}
            )

        if not updates:
            return definition
        return definition.model_copy(update=updates)

    def discover_services(self, root: str) -> List[str]:
        """
        Finds service names under ``root``: every directory holding a
        service.yaml. Hidden directories are skipped.

        :param root: Directory to search.
        :return: Sorted, de-duplicated service names.
        """
        names = set()
        if not os.path.isdir(root):
            return []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if not d.startswith('.')]
            if SERVICE_FILE in filenames:
                names.add(os.path.basename(dirpath))
        return sorted(names)

    def find_service_file(self, root: str, name: str, filename: str = SERVICE_FILE) -> Optional[str]:
        """
        Looks for ``<root>/<name>``, then ``<root>/core/<name>``, then ``<root>/addons/<name>``.
        """
        for subdir in SERVICE_SUBDIRS:
            candidate = os.path.join(root, subdir, name, filename)
            if os.path.isfile(candidate):
                return candidate
        return None

    # Source configuration

    def load_source_config(self, path: str) -> SourceConfig:
        with open(path, 'r') as f:
            content = f.read()
        data = self._load_document(content, path, KIND_SOURCE_CONFIG)
        try:
            return SourceConfig.model_validate(data)
        except ValidationError as e:
            raise DefinitionParseError(path, f"invalid source configuration: {e}")

    def save_source_config(self, config: SourceConfig, path: str) -> None:
        data = config.model_dump(by_alias=True)
        atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, default_flow_style=False))

    # Lock files

    def load_lock_file(self, path: str) -> LockFile:
        """
        Loads a lock file.

        :raises LockFileError: If the file is missing, malformed or not a lock file.
        """
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise LockFileError(f"cannot read lock file {path}: {e}")
        except (yaml.YAMLError, ValueError) as e:
            raise LockFileError(f"malformed lock file {path}: {e}")
        if not isinstance(data, dict):
            raise LockFileError(f"malformed lock file {path}: expected a mapping")
        if data.get("kind") != KIND_LOCK_FILE:
            raise LockFileError(f"{path}: expected kind {KIND_LOCK_FILE}, got {data.get('kind')!r}")
        try:
            return LockFile.model_validate(_stringify_timestamps(data))
        except ValidationError as e:
            raise LockFileError(f"invalid lock file {path}: {e}")

    def dump_lock_file(self, lock: LockFile) -> str:
        return yaml.safe_dump(lock.to_document(), sort_keys=False, default_flow_style=False)

    def save_lock_file(self, lock: LockFile, path: str) -> None:
        atomic_write_text(path, self.dump_lock_file(lock))

    def _load_document(self, content: str, path: str, kind: str) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(content)
        except (yaml.YAMLError, ValueError) as e:
            raise DefinitionParseError(path, f"malformed YAML: {e}")
        if not isinstance(data, dict):
            raise DefinitionParseError(path, "expected a YAML mapping")
        if data.get("apiVersion") != API_VERSION:
            raise DefinitionParseError(path, f"unsupported apiVersion {data.get('apiVersion')!r}, expected {API_VERSION}")
        if data.get("kind") != kind:
            raise DefinitionParseError(path, f"expected kind {kind}, got {data.get('kind')!r}")
        return data


def _stringify_timestamps(value: Any) -> Any:
    # YAML resolves unquoted ISO timestamps to datetime objects
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _stringify_timestamps(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify_timestamps(v) for v in value]
    return value
