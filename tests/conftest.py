import os

import pytest
import yaml

from sdbx.MODELS.project_config import ProjectConfig
from sdbx.REGISTRY.embedded_source import EmbeddedSource


def service_doc(name, version="1.0.0", requires=(), optional=(), spec=None, **sections):
    """Builds a minimal service.yaml document."""
    body = {
        "image": {"repository": f"example/{name}", "tag": version},
        "dependencies": {"required": list(requires), "optional": list(optional)},
    }
    body.update(spec or {})
    doc = {
        "apiVersion": "sdbx.io/v1",
        "kind": "Service",
        "metadata": {"name": name, "version": version, "category": "utility", "description": f"{name} service"},
        "spec": body,
    }
    doc.update(sections)
    return doc


@pytest.fixture
def write_service():
    def _write(root, name, subdir="", **kwargs):
        directory = os.path.join(str(root), subdir, name)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, "service.yaml")
        with open(path, "w") as f:
            yaml.safe_dump(service_doc(name, **kwargs), f)
        return path
    return _write


@pytest.fixture
def no_embedded(tmp_path):
    """An embedded source with no definitions, so only the test's sources count."""
    return EmbeddedSource(root=str(tmp_path / "no-embedded"))


@pytest.fixture
def config():
    return ProjectConfig(domain="example.com", timezone="UTC", expose={"mode": "lan"})
