"""
Compose-style variable interpolation for configuration text.
"""
import re
from typing import Dict, List, Mapping

# $$ | ${VAR} | ${VAR:-default} | ${VAR:+alt} | ${VAR:?message} | $VAR
_PATTERN = re.compile(
    r'\$(?:(?P<escaped>\$)'
    r'|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?::(?P<modifier>[-+?])(?P<arg>[^}]*))?\}'
    r'|(?P<named>[A-Za-z_][A-Za-z0-9_]*))'
)


class InterpolationError(ValueError):
    """Raised for ${VAR:?message} when VAR is unset or empty."""


class EnvironmentInterpolator:
    """
    Substitutes variables in a template from a context mapping.

    Unset variables without a modifier resolve to an empty string, as Docker
    Compose does; their names are collected in ``missing``.
    """
    def __init__(self, context: Mapping[str, str]):
        self.context: Dict[str, str] = dict(context)
        self.missing: List[str] = []

    def interpolate(self, template: str) -> str:
        """
        :param template: Text containing variable references.
        :return: The interpolated text.
        :raises InterpolationError: For a required variable that is unset.
        """
        return _PATTERN.sub(self._replace, template)

    def _replace(self, match: "re.Match") -> str:
        if match.group("escaped"):
            return "$"

        name = match.group("braced") or match.group("named")
        value = self.context.get(name)
        modifier = match.group("modifier")
        arg = match.group("arg") or ""

        if modifier == "-":
            return value if value else arg
        if modifier == "+":
            return arg if value else ""
        if modifier == "?":
            if not value:
                raise InterpolationError(arg or f"Required variable {name} is not set")
            return value

        if value is None:
            if name not in self.missing:
                self.missing.append(name)
            return ""
        return value
