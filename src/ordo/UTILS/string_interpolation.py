"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Any, Dict, Mapping


class InterpolationError(Exception):
    """
    Raised when a string cannot be interpolated.

    ``path`` is the dotted location of the value inside the document, when known.
    """
    def __init__(self, message: str, path: str = ""):
        self.message = message
        self.path = path
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class MissingVariable(InterpolationError, KeyError):
    """
    Raised when a referenced variable is unset and no default applies.
    """
    def __init__(self, variable: str, message: str = "", path: str = ""):
        self.variable = variable
        super().__init__(message or f"Variable {variable} is not set", path)


class InvalidInterpolation(InterpolationError):
    """
    Raised for a malformed reference such as ``${}``, ``${1X}`` or an unclosed ``${``.
    """


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?error}, ${VAR?error} and $$ as a literal dollar sign.
    Defaults and alternate values may contain references themselves, as in
    ``${DB_HOST:-${HOSTNAME}}``; they are only resolved when used.
    """
    name_pattern = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
    modifier_pattern = re.compile(r':?[-+?]')

    @classmethod
    def interpolate(cls, template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises MissingVariable: If a variable is not found and no default is provided.
        :raises InvalidInterpolation: If a reference is malformed.
        """
        parts = []
        pos = 0
        while True:
            start = template.find('$', pos)
            if start < 0:
                parts.append(template[pos:])
                break
            parts.append(template[pos:start])
            following = template[start + 1:start + 2]
            if following == '$':
                parts.append('$')
                pos = start + 2
            elif following == '{':
                end = cls._closing_brace(template, start + 1)
                parts.append(cls._braced(template[start + 2:end], context))
                pos = end + 1
            else:
                match = cls.name_pattern.match(template, start + 1)
                if match:
                    parts.append(cls._lookup(match.group(), context))
                    pos = match.end()
                else:
                    # A lone '$' is kept as written
                    parts.append('$')
                    pos = start + 1
        return ''.join(parts)

    @classmethod
    def _closing_brace(cls, template: str, opening: int) -> int:
        """
        Index of the brace closing the one at ``opening``, skipping nested references.
        """
        depth = 0
        index = opening
        while index < len(template):
            char = template[index]
            if template.startswith('$$', index):
                index += 2
                continue
            if char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return index
            index += 1
        raise InvalidInterpolation(f"Invalid interpolation format: unclosed reference in {template!r}")

    @classmethod
    def _braced(cls, body: str, context: Mapping[str, str]) -> str:
        match = cls.name_pattern.match(body)
        if not match:
            raise InvalidInterpolation(f"Invalid interpolation format for ${{{body}}}")
        var_name = match.group()
        rest = body[match.end():]
        if not rest:
            return cls._lookup(var_name, context)
        modifier = cls.modifier_pattern.match(rest)
        if not modifier:
            raise InvalidInterpolation(f"Invalid interpolation format for ${{{body}}}")
        modifier = modifier.group()
        word = rest[len(modifier):]

        value = context.get(var_name)
        # The ':' forms treat an empty value like an unset one
        is_set = bool(value) if modifier.startswith(':') else value is not None

        if modifier in (':-', '-'):
            return value if is_set else cls.interpolate(word, context)
        if modifier in (':+', '+'):
            return cls.interpolate(word, context) if is_set else ''
        if not is_set:
            raise MissingVariable(var_name, word or f"Variable {var_name} is required")
        return value

    @staticmethod
    def _lookup(var_name: str, context: Mapping[str, str]) -> str:
        value = context.get(var_name)
        if value is None:
            raise MissingVariable(var_name)
        return value

    @classmethod
    def interpolate_tree(cls, node: Any, context: Mapping[str, str], path: str = "") -> Any:
        """
        Interpolates every string value of a parsed YAML document.

        Mapping keys are left untouched. A failure is re-raised carrying the
        dotted path of the value.

        :param node: Parsed document (dicts, lists and scalars).
        :param context: The environment variables context.
        :param path: Dotted path of ``node`` inside the document.
        """
        if isinstance(node, dict):
            result: Dict[Any, Any] = {}
            for key, value in node.items():
                child = f"{path}.{key}" if path else str(key)
                result[key] = cls.interpolate_tree(value, context, child)
            return result
        if isinstance(node, list):
            return [
                cls.interpolate_tree(item, context, f"{path}[{index}]")
                for index, item in enumerate(node)
            ]
        if isinstance(node, str):
            try:
                return cls.interpolate(node, context)
            except InterpolationError as e:
                if not e.path:
                    e.path = path
                raise
        return node
