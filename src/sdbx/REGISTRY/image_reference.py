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
Image reference handling for service definitions.
Turns a definition's image block into the string a compose file expects.
"""

from dataclasses import dataclass
from typing import Optional

from ..MODELS.service_definition import ImageSpec


@dataclass(frozen=True)
class ImageReference:
    """
    A container image as declared by a definition.

    Examples:
        - linuxserver/plex + latest -> linuxserver/plex:latest
        - qdm12/gluetun on ghcr.io -> ghcr.io/qdm12/gluetun:latest
        - ghcr.io/authelia/authelia on ghcr.io -> ghcr.io/authelia/authelia:latest
    """

    repository: str
    tag: str = "latest"
    registry: str = "docker.io"
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def from_spec(cls, spec: ImageSpec, digest: Optional[str] = None) -> "ImageReference":
        return cls(
            repository=spec.repository,
            tag=spec.tag or cls.DEFAULT_TAG,
            registry=spec.registry or cls.DEFAULT_REGISTRY,
            digest=digest or None,
        )

    @property
    def has_registry_prefix(self) -> bool:
        return self.repository.startswith(f"{self.registry}/")

    @property
    def name(self) -> str:
        """Repository, qualified with the registry unless it is the default one."""
        if self.registry == self.DEFAULT_REGISTRY or self.has_registry_prefix:
            return self.repository
        return f"{self.registry}/{self.repository}"

    @property
    def compose_image(self) -> str:
        """The ``image:`` value for a compose service."""
        image = f"{self.name}:{self.tag}" if self.tag else self.name
        if self.digest:
            return f"{image}@{self.digest}"
        return image

    def __str__(self) -> str:
        return self.compose_image
