"""
Template loading and rendering utilities using Jinja2.

Templates use ``${name}`` placeholders. Every placeholder is a required
variable: rendering with a mapping that lacks one raises ``MissingVariable``,
extra entries in the mapping are ignored.
"""

import json
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateNotFound,
    UndefinedError,
    meta,
)

from ops_provision.exceptions import MissingVariable, TemplateNotFoundError

# Templates shipped inside the package
DEFAULT_TEMPLATES = Path(__file__).parent.parent / "templates"


def _json_string(value) -> str:
    return json.dumps(str(value))


def _env_value(value) -> str:
    # Double-quoted, backslash-escaped; what python-dotenv and compose accept
    return json.dumps(str(value))


def create_environment(search_dirs: list[str] | None = None) -> Environment:
    """
    Create a Jinja2 environment with ``${`` / ``}`` variable delimiters.

    Args:
        search_dirs: Directories to load named templates from, in priority order

    Returns:
        Configured Jinja2 Environment
    """
    env = Environment(
        loader=FileSystemLoader(search_dirs) if search_dirs else None,
        variable_start_string="${",
        variable_end_string="}",
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters["json_string"] = _json_string
    env.filters["env_value"] = _env_value
    return env


@dataclass(frozen=True)
class Template:
    """A named text blueprint and the variables it needs."""

    name: str
    source: str
    required: frozenset[str]


class TemplateRenderer:
    """
    Loads templates by name and renders them.

    Supports an override directory searched before the packaged defaults.
    """

    def __init__(self, override_dir: Path | None = None):
        """
        Initialize template renderer.

        Args:
            override_dir: Optional directory whose templates shadow the defaults
        """
        self.override_dir = Path(override_dir) if override_dir else None
        self.default_templates = DEFAULT_TEMPLATES
        self._env: Environment | None = None
        self._template_cache: dict[str, Template] = {}

    @property
    def env(self) -> Environment:
        """Get or create the Jinja2 environment (cached)."""
        if self._env is None:
            search_dirs = []

            if self.override_dir is not None and self.override_dir.exists():
                search_dirs.append(str(self.override_dir))

            search_dirs.append(str(self.default_templates))

            self._env = create_environment(search_dirs)

        return self._env

    def template_from_string(self, name: str, source: str) -> Template:
        """Build a Template from inline source text."""
        ast = self.env.parse(source)
        return Template(
            name=name,
            source=source,
            required=frozenset(meta.find_undeclared_variables(ast)),
        )

    def load(self, template_name: str) -> Template:
        """
        Load a template by name, preferring the override directory.

        Args:
            template_name: Template file name (e.g., "Caddyfile.j2")

        Returns:
            Cached Template
        """
        if template_name not in self._template_cache:
            try:
                source, _, _ = self.env.loader.get_source(self.env, template_name)
            except TemplateNotFound as e:
                raise TemplateNotFoundError(template_name) from e
            self._template_cache[template_name] = self.template_from_string(
                template_name, source
            )

        return self._template_cache[template_name]

    def render(self, template: Template, variables: dict[str, str]) -> str:
        """
        Fill ``template`` with ``variables``.

        Pure: identical inputs give identical output and nothing is written.

        Raises:
            MissingVariable: If a placeholder has no entry in ``variables``
        """
        missing = sorted(template.required - set(variables))
        if missing:
            raise MissingVariable(missing[0], template.name)

        compiled = self.env.from_string(template.source)
        try:
            return compiled.render(variables)
        except UndefinedError as e:
            # Attribute lookups on a provided variable can still be undefined
            raise MissingVariable(str(e), template.name) from e

    def render_named(self, template_name: str, variables: dict[str, str]) -> str:
        """Load ``template_name`` and render it."""
        return self.render(self.load(template_name), variables)
