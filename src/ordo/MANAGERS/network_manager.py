"""
Network management for the process runtime: networks are registry files and
service discovery is provided through environment variables.
"""
import json
import os
from typing import Dict, List, Optional

from ..MODELS.project_spec import NetworkSpec
from ..MODELS.service_spec import ServiceSpec


class NetworkManager:
    """
    Manages network records and name-based service discovery.
    """
    def __init__(self, networks_root: str):
        """
        Initializes the network manager.

        :param networks_root: Directory holding one JSON record per network.
        """
        self.networks_root = os.path.abspath(networks_root)
        os.makedirs(self.networks_root, exist_ok=True)

    def _record_path(self, name: str) -> str:
        return os.path.join(self.networks_root, f"{name}.json")

    def exists(self, name: str) -> bool:
        return os.path.isfile(self._record_path(name))

    def create(self, name: str, spec: NetworkSpec) -> None:
        """
        Writes the network record. Callers check ``exists`` first.
        """
        record = {"name": name, "driver": spec.driver, "internal": spec.internal, "members": []}
        with open(self._record_path(name), 'w') as f:
            json.dump(record, f)

    def remove(self, name: str) -> bool:
        path = self._record_path(name)
        if not os.path.exists(path):
            return False
        os.remove(path)
        return True

    def inspect(self, name: str) -> Optional[Dict]:
        if not self.exists(name):
            return None
        with open(self._record_path(name), 'r') as f:
            return json.load(f)

    def connect(self, name: str, service: str) -> None:
        """
        Records a service as a member of a network.
        """
        record = self.inspect(name)
        if record is None:
            raise KeyError(f"No such network: {name}")
        if service not in record["members"]:
            record["members"].append(service)
            with open(self._record_path(name), 'w') as f:
                json.dump(record, f)

    def get_service_discovery_env(self, peers: List[ServiceSpec]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1, DB_PORT=5432
        """
        env = {}
        for svc in peers:
            prefix = svc.name.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = "127.0.0.1"

            # Processes bind the container port directly; the first one is the "default" port
            if svc.ports:
                env[f"{prefix}_PORT"] = str(svc.ports[0].container)
        return env
