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
Models for the generated compose document.
"""
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel

PROJECT_NAME = "sdbx"
DEFAULT_NETWORKS = {"proxy": "sdbx_proxy", "vpn": "sdbx_vpn"}
DEFAULT_DEPENDS_CONDITION = "service_started"


class ComposeHealthCheck(BaseModel):
    test: List[str]
    interval: str = ""
    timeout: str = ""
    retries: int = 0
    start_period: str = ""


class ComposeService(BaseModel):
    """
    A single service entry in the compose document.
    """
    image: str
    container_name: str
    restart: str = ""
    environment: List[str] = []
    env_file: List[str] = []
    volumes: List[str] = []
    ports: List[str] = []
    networks: List[str] = []
    network_mode: str = ""
    depends_on: Dict[str, Dict[str, str]] = {}
    labels: List[str] = []
    healthcheck: Optional[ComposeHealthCheck] = None
    cap_add: List[str] = []
    cap_drop: List[str] = []
    devices: List[str] = []
    secrets: List[str] = []
    command: Optional[Union[str, List[str]]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Drops empty fields; compose treats absence and emptiness alike."""
        data = self.model_dump(exclude_none=True)
        if self.healthcheck is not None:
            data["healthcheck"] = {k: v for k, v in data["healthcheck"].items() if v not in ("", 0)}
        return {k: v for k, v in data.items() if v not in ("", [], {})}


class ComposeFile(BaseModel):
    """
    The whole compose document: services in install order, shared networks and file secrets.
    """
    name: str = PROJECT_NAME
    services: Dict[str, ComposeService] = {}
    networks: Dict[str, Dict[str, str]] = {}
    secrets: Dict[str, Dict[str, str]] = {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "services": {name: svc.to_dict() for name, svc in self.services.items()},
        }
        if self.networks:
            data["networks"] = dict(self.networks)
        if self.secrets:
            data["secrets"] = {name: self.secrets[name] for name in sorted(self.secrets)}
        return data

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
