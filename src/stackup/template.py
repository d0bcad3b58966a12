"""Per-host template rendering."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import jinja2
import yaml


def _environment() -> jinja2.Environment:
    return jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        autoescape=False,
        keep_trailing_newline=True,
    )


class Renderer:
    """A template parsed once and rendered for any number of clients.

    The compiled template is never mutated by :meth:`render`, so a single
    renderer can be shared by concurrent dispatches.
    """

    def __init__(self, source: str, name: str = "template") -> None:
        self.name = name
        self._template = _environment().from_string(source)

    @classmethod
    def from_file(cls, path: str | Path) -> Renderer:
        path = Path(path)
        return cls(path.read_text(), name=str(path))

    def render(self, client: Any, variables: Mapping[str, Any]) -> bytes:
        """Render for ``client``; the template sees ``client`` and ``vars``."""
        return self._template.render(client=client, vars=variables).encode("utf-8")

    def __repr__(self) -> str:
        return f"Renderer({self.name!r})"


def load_variables(path: str | Path) -> dict[str, Any]:
    """Decode a YAML variable file into a string-keyed mapping."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"expected a mapping, got {type(data).__name__}")
    return {str(key): value for key, value in data.items()}
