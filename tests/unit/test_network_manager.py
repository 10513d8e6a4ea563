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
Unit tests for the process runtime's network registry and service discovery.
"""
import pytest
from conftest import make_service
from ordo.MANAGERS.network_manager import NetworkManager
from ordo.MODELS.project_spec import NetworkSpec
from ordo.MODELS.service_spec import PortMapping


class TestNetworkManager:
    """Tests for NetworkManager."""

    def test_create_and_remove(self, tmp_path):
        nm = NetworkManager(str(tmp_path / "networks"))
        assert not nm.exists("test_default")
        nm.create("test_default", NetworkSpec(name="default"))
        assert nm.exists("test_default")
        assert nm.inspect("test_default") == {
            "name": "test_default", "driver": "bridge", "internal": False, "members": [],
        }
        assert nm.remove("test_default") is True
        assert nm.remove("test_default") is False
        assert nm.inspect("test_default") is None

    def test_connect(self, tmp_path):
        nm = NetworkManager(str(tmp_path / "networks"))
        nm.create("test_default", NetworkSpec(name="default"))
        nm.connect("test_default", "db")
        nm.connect("test_default", "db")
        nm.connect("test_default", "web")
        assert nm.inspect("test_default")["members"] == ["db", "web"]

    def test_connect_missing_network(self, tmp_path):
        nm = NetworkManager(str(tmp_path / "networks"))
        with pytest.raises(KeyError):
            nm.connect("test_backend", "db")

    def test_service_discovery_env(self, tmp_path):
        """Test generation of discovery variables."""
        nm = NetworkManager(str(tmp_path / "networks"))
        peers = [
            make_service("db", ports=(PortMapping(container=5432, host=15432),)),
            make_service("my-cache"),
        ]
        env = nm.get_service_discovery_env(peers)
        assert env == {
            "DB_HOST": "127.0.0.1",
            "DB_PORT": "5432",
            "MY_CACHE_HOST": "127.0.0.1",
        }
