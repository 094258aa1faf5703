"""Template rendering for the configuration form.

Templates use ``[[NAME]]`` placeholders rather than Jinja's default braces so
the same files can be consumed by the host application's substitution
engine. Placeholders without a value render as empty strings.

Only placeholders are interpreted: Jinja block and comment syntax is switched
off, so braces in override templates are emitted verbatim. Placeholder names
must be identifiers (letters, digits and underscores), which is what
:meth:`TemplateEngine.form_context` produces from a render map.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    TemplateError,
    select_autoescape,
)
from markupsafe import Markup

FORM_TEMPLATE = "config_form.html"
DISABLED_TOKEN = "[[DISABLED]]"

# Delimiters that never occur in form markup; disables Jinja statements and comments.
_UNUSED_BLOCK = ("\x00%", "%\x00")
_UNUSED_COMMENT = ("\x00#", "#\x00")


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


def _placeholder_name(token: str) -> str:
    if token.startswith("[[") and token.endswith("]]"):
        return token[2:-2]
    return token


@dataclass(frozen=True)
class TemplateEngine:
    """Render built-in templates, optionally shadowed by an override directory."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates found under *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("samlconf", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            variable_start_string="[[",
            variable_end_string="]]",
            block_start_string=_UNUSED_BLOCK[0],
            block_end_string=_UNUSED_BLOCK[1],
            comment_start_string=_UNUSED_COMMENT[0],
            comment_end_string=_UNUSED_COMMENT[1],
            autoescape=select_autoescape(["html"]),
            keep_trailing_newline=True,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template {template_name}: {exc}") from exc

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render to *destination* atomically; return ``False`` when unchanged."""
        content = self.render_to_string(template_name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent), prefix=f".{destination.name}."
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_path, destination)
            os.chmod(destination, mode)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    @staticmethod
    def form_context(tokens: Mapping[str, str], *, disabled: bool) -> dict[str, object]:
        """Translate a render map into template variables."""
        context: dict[str, object] = {
            _placeholder_name(token): value for token, value in tokens.items()
        }
        context[_placeholder_name(DISABLED_TOKEN)] = Markup("DISABLED") if disabled else ""
        return context

    def render_form(
        self,
        tokens: Mapping[str, str],
        *,
        disabled: bool,
        template_name: str = FORM_TEMPLATE,
    ) -> str:
        """Substitute a render map into the configuration form template."""
        return self.render_to_string(template_name, self.form_context(tokens, disabled=disabled))


__all__ = ["DISABLED_TOKEN", "FORM_TEMPLATE", "TemplateEngine", "TemplateRenderError"]
