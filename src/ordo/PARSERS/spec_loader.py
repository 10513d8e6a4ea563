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
Loader for compose-style stack documents.

The document is parsed, interpolated and validated in one pass. Every
variable reference is resolved here, so a missing variable fails the load
instead of a container start.
"""
import logging
import os
import re
import shlex
from collections.abc import Hashable
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import SpecError
from ..MODELS.project_spec import DEFAULT_NETWORK, NetworkSpec, ProjectSpec, VolumeSpec
from ..MODELS.service_spec import (
    EnvVar,
    PortMapping,
    ProbeKind,
    ProbePolicy,
    RestartCondition,
    RestartPolicy,
    ServiceSpec,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator, InterpolationError

logger = logging.getLogger(__name__)

_RESTART_ALIASES = {
    "no": RestartCondition.NEVER,
    "never": RestartCondition.NEVER,
    "none": RestartCondition.NEVER,
    "always": RestartCondition.ALWAYS,
    "any": RestartCondition.ALWAYS,
    "unless-stopped": RestartCondition.ALWAYS,
    "on-failure": RestartCondition.ON_FAILURE,
}


class UniqueKeyLoader(yaml.SafeLoader):
    """
    Safe YAML loader that rejects duplicate keys in a mapping.
    PyYAML silently keeps the last one, which would hide a duplicate service.
    """
    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                # The base implementation reports unhashable keys
                continue
            if key in seen:
                raise SpecError(
                    f"Duplicate key '{key}' (line {key_node.start_mark.line + 1})"
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class SpecLoader:
    """
    Parser for stack documents.
    """
    def __init__(self,
                 context: Optional[Mapping[str, str]] = None,
                 project_name: Optional[str] = None,
                 env_file: str = ".env"):
        """
        Initializes the loader with an optional environment context for interpolation.

        :param context: Variables for interpolation. Defaults to the process environment.
        :param project_name: Overrides the project name from the document.
        :param env_file: Name of the dotenv file read next to the document.
        """
        self.context = dict(context) if context is not None else dict(os.environ)
        self.project_name = project_name
        self.env_file = env_file

    def load(self, path: str) -> ProjectSpec:
        """
        Loads a stack document from a path.

        :param path: Path to the document.
        :return: The validated project.
        :raises SpecError: If the file is missing or invalid.
        """
        if not os.path.isfile(path):
            raise SpecError(f"File not found: {path}")
        with open(path, 'r') as f:
            content = f.read()
        return self.load_from_string(content, base_dir=os.path.dirname(os.path.abspath(path)))

    def load_from_string(self, content: str, base_dir: str = ".") -> ProjectSpec:
        """
        Loads a stack document from a string.

        :param content: YAML content.
        :param base_dir: Directory relative paths and the dotenv file resolve against.
        :return: The validated project.
        """
        base_dir = os.path.abspath(base_dir)
        context = self._build_context(base_dir)

        try:
            data = yaml.load(content, Loader=UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise SpecError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise SpecError("Document must be a mapping")

        try:
            data = EnvironmentInterpolator.interpolate_tree(data, context)
        except InterpolationError as e:
            raise SpecError(e.message, field=e.path) from e

        name = self._project_name(data, base_dir)

        services_data = data.get('services')
        if not services_data or not isinstance(services_data, dict):
            raise SpecError("At least one service must be declared", field="services")

        volumes = self._parse_volumes(data.get('volumes'))
        networks = self._parse_networks(data.get('networks'))

        services = {}
        for service_name, spec in services_data.items():
            services[str(service_name)] = self._parse_service(
                str(service_name), spec, base_dir, context
            )

        if any(not svc.networks or DEFAULT_NETWORK in svc.networks for svc in services.values()):
            networks.setdefault(DEFAULT_NETWORK, NetworkSpec(name=DEFAULT_NETWORK))
        services = {
            key: svc if svc.networks else svc.model_copy(update={'networks': (DEFAULT_NETWORK,)})
            for key, svc in services.items()
        }

        self._check_references(services, volumes, networks)

        logger.info("Loaded project %s with %d service(s)", name, len(services))
        return ProjectSpec(name=name, services=services, volumes=volumes, networks=networks)

    def _build_context(self, base_dir: str) -> Dict[str, str]:
        """
        Variables from the dotenv file next to the document, overridden by the loader context.
        """
        merged: Dict[str, str] = {}
        env_path = os.path.join(base_dir, self.env_file)
        if os.path.isfile(env_path):
            merged.update({k: v or '' for k, v in dotenv_values(env_path).items()})
        merged.update(self.context)
        return merged

    def _project_name(self, data: Dict[str, Any], base_dir: str) -> str:
        raw = self.project_name or data.get('name') or os.path.basename(base_dir) or "default"
        name = re.sub(r'[^a-z0-9_-]', '', str(raw).lower())
        if not name:
            raise SpecError(f"Invalid project name: {raw!r}", field="name")
        return name

    def _parse_volumes(self, data: Any) -> Dict[str, VolumeSpec]:
        volumes = {}
        for name, spec in self._top_level(data, 'volumes').items():
            spec = spec or {}
            field = f"volumes.{name}"
            try:
                volumes[name] = VolumeSpec(
                    name=name,
                    driver=spec.get('driver', 'local'),
                    external=bool(spec.get('external', False)),
                )
            except ValidationError as e:
                raise self._validation_error(e, field) from e
        return volumes

    def _parse_networks(self, data: Any) -> Dict[str, NetworkSpec]:
        networks = {}
        for name, spec in self._top_level(data, 'networks').items():
            spec = spec or {}
            field = f"networks.{name}"
            try:
                networks[name] = NetworkSpec(
                    name=name,
                    driver=spec.get('driver', 'bridge'),
                    internal=bool(spec.get('internal', False)),
                    external=bool(spec.get('external', False)),
                )
            except ValidationError as e:
                raise self._validation_error(e, field) from e
        return networks

    def _top_level(self, data: Any, section: str) -> Dict[str, Dict[str, Any]]:
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise SpecError("Must be a mapping", field=section)
        for name, spec in data.items():
            if spec is not None and not isinstance(spec, dict):
                raise SpecError("Must be a mapping", field=f"{section}.{name}")
        return {str(name): spec for name, spec in data.items()}

    def _parse_service(self,
                       name: str,
                       spec: Any,
                       base_dir: str,
                       context: Mapping[str, str]) -> ServiceSpec:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param base_dir: Directory env files resolve against.
        :param context: Interpolation context, used for bare environment names.
        :return: A ServiceSpec instance.
        """
        field = f"services.{name}"
        if not isinstance(spec, dict):
            raise SpecError("Service definition must be a mapping", field=field)
        if not spec.get('image'):
            raise SpecError("Image is required", field=f"{field}.image")

        try:
            return ServiceSpec(
                name=name,
                image=str(spec['image']),
                command=tuple(self._command(spec.get('command'), f"{field}.command")),
                working_dir=spec.get('working_dir'),
                environment=self._environment(spec, base_dir, context, field),
                volumes=tuple(self._volumes(spec.get('volumes') or [], field, base_dir)),
                networks=tuple(self._names(spec.get('networks'), f"{field}.networks")),
                ports=tuple(self._ports(spec.get('ports') or [], field)),
                restart=self._restart(spec, field),
                depends_on=tuple(self._names(spec.get('depends_on'), f"{field}.depends_on")),
                readiness=self._readiness(spec, field),
                stop_grace_period=self._duration(
                    spec.get('stop_grace_period', 10), f"{field}.stop_grace_period"
                ),
            )
        except ValidationError as e:
            raise self._validation_error(e, field) from e

    def _environment(self,
                     spec: Dict[str, Any],
                     base_dir: str,
                     context: Mapping[str, str],
                     field: str) -> Tuple[EnvVar, ...]:
        """
        Merges env files and explicit entries; explicit entries override files.
        """
        environment: Dict[str, str] = {}

        for env_file in self._to_list(spec.get('env_file'), f"{field}.env_file"):
            path = os.path.join(base_dir, env_file)
            if not os.path.isfile(path):
                raise SpecError(f"Env file not found: {env_file}", field=f"{field}.env_file")
            for key, value in dotenv_values(path).items():
                environment[key] = value or ''

        env_spec = spec.get('environment') or []
        if isinstance(env_spec, list):
            for entry in env_spec:
                entry = str(entry)
                if '=' in entry:
                    key, value = entry.split('=', 1)
                    environment[key] = value
                else:
                    environment[entry] = self._passthrough(entry, environment, context, field)
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if value is None:
                    environment[str(key)] = self._passthrough(str(key), environment, context, field)
                else:
                    environment[str(key)] = self._scalar(value)
        else:
            raise SpecError("Must be a list or mapping", field=f"{field}.environment")

        return tuple(EnvVar(name=k, value=v) for k, v in environment.items())

    @staticmethod
    def _passthrough(name: str,
                     environment: Mapping[str, str],
                     context: Mapping[str, str],
                     field: str) -> str:
        """
        Value of a bare ``KEY`` entry: the context first, then an env file.

        :raises SpecError: If neither provides it.
        """
        if name in context:
            return context[name]
        if name in environment:
            return environment[name]
        raise SpecError(f"Variable {name} is not set", field=f"{field}.environment.{name}")

    def _volumes(self, entries: Any, field: str, base_dir: str) -> List[VolumeMount]:
        """
        Parses short and long mount syntax. Host paths become absolute.
        """
        if not isinstance(entries, list):
            raise SpecError("Must be a list", field=f"{field}.volumes")
        mounts = []
        for index, v in enumerate(entries):
            entry_field = f"{field}.volumes[{index}]"
            if isinstance(v, str):
                parts = v.split(':')
                if len(parts) == 1:
                    raise SpecError("Anonymous volumes are not supported", field=entry_field)
                if len(parts) > 3 or (len(parts) == 3 and parts[2] not in ('ro', 'rw')):
                    raise SpecError(f"Invalid volume: {v}", field=entry_field)
                mounts.append(VolumeMount(
                    source=parts[0],
                    target=parts[1],
                    read_only=len(parts) == 3 and parts[2] == 'ro',
                ))
            elif isinstance(v, dict):
                if not v.get('source') or not v.get('target'):
                    raise SpecError("Volume needs source and target", field=entry_field)
                mounts.append(VolumeMount(
                    source=str(v['source']),
                    target=str(v['target']),
                    read_only=bool(v.get('read_only', False)),
                ))
            else:
                raise SpecError(f"Invalid volume: {v!r}", field=entry_field)
        return [
            m if m.is_named else m.model_copy(update={'source': os.path.abspath(
                os.path.join(base_dir, os.path.expanduser(m.source))
            )})
            for m in mounts
        ]

    def _ports(self, entries: Any, field: str) -> List[PortMapping]:
        if not isinstance(entries, list):
            raise SpecError("Must be a list", field=f"{field}.ports")
        ports = []
        for index, p in enumerate(entries):
            entry_field = f"{field}.ports[{index}]"
            try:
                if isinstance(p, int):
                    ports.append(PortMapping(container=p))
                elif isinstance(p, str):
                    parts = p.split('/')[0].split(':')
                    if len(parts) == 1:
                        ports.append(PortMapping(container=int(parts[0])))
                    else:
                        # host ip, if any, is parts[0] of a three part entry
                        ports.append(PortMapping(container=int(parts[-1]), host=int(parts[-2])))
                elif isinstance(p, dict):
                    published = p.get('published')
                    ports.append(PortMapping(
                        container=int(p['target']),
                        host=int(published) if published is not None else None,
                    ))
                else:
                    raise SpecError(f"Invalid port: {p!r}", field=entry_field)
            except (KeyError, TypeError, ValueError) as e:
                raise SpecError(f"Invalid port {p!r}: {e}", field=entry_field) from e
        return ports

    def _restart(self, spec: Dict[str, Any], field: str) -> RestartPolicy:
        """
        Reads ``restart`` and the compose ``deploy.restart_policy`` block.
        """
        options: Dict[str, Any] = {}

        restart = spec.get('restart')
        if restart is not None:
            # Unquoted `no` reaches us as a YAML boolean
            restart = 'no' if restart is False else str(restart)
            condition, _, count = restart.partition(':')
            if condition not in _RESTART_ALIASES:
                raise SpecError(f"Unknown restart policy: {restart}", field=f"{field}.restart")
            options['condition'] = _RESTART_ALIASES[condition]
            if count:
                if not count.isdigit():
                    raise SpecError(f"Invalid restart count: {count}", field=f"{field}.restart")
                options['max_restarts'] = int(count)

        deploy = self._mapping(spec.get('deploy'), f"{field}.deploy").get('restart_policy')
        if deploy:
            policy_field = f"{field}.deploy.restart_policy"
            deploy = self._mapping(deploy, policy_field)
            condition = str(deploy.get('condition', 'any'))
            if condition not in _RESTART_ALIASES:
                raise SpecError(f"Unknown restart condition: {condition}", field=policy_field)
            options['condition'] = _RESTART_ALIASES[condition]
            if 'max_attempts' in deploy:
                options['max_restarts'] = deploy['max_attempts']
            if 'delay' in deploy:
                options['backoff'] = self._duration(deploy['delay'], f"{policy_field}.delay")
            if 'window' in deploy:
                options['backoff_ceiling'] = self._duration(deploy['window'], f"{policy_field}.window")

        return RestartPolicy(**options)

    def _readiness(self, spec: Dict[str, Any], field: str) -> ProbePolicy:
        """
        Reads an ``x-readiness`` block, falling back to a compose ``healthcheck``.
        Without either, the service is ready once its container runs.
        """
        readiness = spec.get('x-readiness')
        if readiness is not None:
            probe_field = f"{field}.x-readiness"
            if not isinstance(readiness, dict):
                raise SpecError("Must be a mapping", field=probe_field)
            options: Dict[str, Any] = {'kind': readiness.get('kind', ProbeKind.RUNNING.value)}
            for key in ('host', 'port', 'path', 'max_attempts'):
                if key in readiness:
                    options[key] = readiness[key]
            if 'retries' in readiness:
                options['max_attempts'] = readiness['retries']
            if 'command' in readiness:
                command = readiness['command']
                if isinstance(command, str):
                    options['command'] = ('/bin/sh', '-c', command)
                else:
                    options['command'] = tuple(self._command(command, f"{probe_field}.command"))
            for key in ('interval', 'timeout', 'start_period', 'deadline'):
                if readiness.get(key) is not None:
                    options[key] = self._duration(readiness[key], f"{probe_field}.{key}")
            if 'deadline' in readiness and readiness['deadline'] is None:
                options['deadline'] = None
            return ProbePolicy(**options)

        healthcheck = spec.get('healthcheck')
        if healthcheck:
            probe_field = f"{field}.healthcheck"
            healthcheck = self._mapping(healthcheck, probe_field)
            if healthcheck.get('disable'):
                return ProbePolicy()
            test = healthcheck.get('test')
            if isinstance(test, str):
                command: Tuple[str, ...] = ('/bin/sh', '-c', test)
            elif isinstance(test, list) and test:
                if test[0] == 'NONE':
                    return ProbePolicy()
                if test[0] == 'CMD-SHELL':
                    command = ('/bin/sh', '-c', ' '.join(str(t) for t in test[1:]))
                elif test[0] == 'CMD':
                    command = tuple(str(t) for t in test[1:])
                else:
                    command = tuple(str(t) for t in test)
            else:
                raise SpecError("Healthcheck needs a test", field=f"{probe_field}.test")
            options = {
                'kind': ProbeKind.EXEC,
                'command': command,
                'max_attempts': healthcheck.get('retries', 3),
                'deadline': None,
            }
            for key in ('interval', 'timeout', 'start_period'):
                if healthcheck.get(key) is not None:
                    options[key] = self._duration(healthcheck[key], f"{probe_field}.{key}")
            return ProbePolicy(**options)

        return ProbePolicy()

    def _check_references(self,
                          services: Dict[str, ServiceSpec],
                          volumes: Dict[str, VolumeSpec],
                          networks: Dict[str, NetworkSpec]) -> None:
        """
        Cross-checks names between services and top-level sections.
        """
        for name, svc in services.items():
            field = f"services.{name}"
            for dep in svc.depends_on:
                if dep == name:
                    raise SpecError("Service cannot depend on itself", field=f"{field}.depends_on")
                if dep not in services:
                    raise SpecError(f"Unknown service '{dep}'", field=f"{field}.depends_on")
            for mount in svc.volumes:
                if mount.is_named and mount.source not in volumes:
                    raise SpecError(f"Undeclared volume '{mount.source}'", field=f"{field}.volumes")
            for network in svc.networks:
                if network not in networks:
                    raise SpecError(f"Undeclared network '{network}'", field=f"{field}.networks")

    def _names(self, val: Any, field: str) -> List[str]:
        """
        Names from a list, or from the keys of a mapping (long compose syntax).
        """
        if val is None:
            return []
        if isinstance(val, dict):
            return [str(key) for key in val]
        if isinstance(val, list):
            return [str(item) for item in val]
        raise SpecError("Must be a list or mapping", field=field)

    def _to_list(self, val: Any, field: str) -> List[str]:
        """
        Helper to ensure a value is a list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        if not isinstance(val, list):
            raise SpecError("Must be a string or list", field=field)
        return [str(v) for v in val]

    def _command(self, val: Any, field: str) -> List[str]:
        """
        Helper to ensure a value is a list of strings; strings are split like a shell would.
        """
        if val is None:
            return []
        if isinstance(val, str):
            try:
                return shlex.split(val)
            except ValueError as e:
                raise SpecError(f"Invalid command: {e}", field=field) from e
        if not isinstance(val, list):
            raise SpecError("Must be a string or list", field=field)
        return [str(v) for v in val]

    def _mapping(self, value: Any, field: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise SpecError("Must be a mapping", field=field)
        return value

    def _duration(self, value: Any, field: str) -> float:
        try:
            return parse_duration(value)
        except ValueError as e:
            raise SpecError(str(e), field=field) from e

    def _scalar(self, value: Any) -> str:
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    def _validation_error(self, error: ValidationError, field: str) -> SpecError:
        """
        Maps the first pydantic error to the offending field path.
        """
        first = error.errors()[0]
        loc = '.'.join(str(part) for part in first['loc'])
        return SpecError(first['msg'], field=f"{field}.{loc}" if loc else field)
