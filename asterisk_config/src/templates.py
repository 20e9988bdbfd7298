from __future__ import annotations

import enum
import logging

import jinja2
from jinja2 import StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from asterisk_config.src.errors import AsteriskConfigError, TemplateRenderError, TemplateSyntaxError
from asterisk_config.src.resolver import Resolver

LOGGER = logging.getLogger(__name__)


class RenderMode(enum.Enum):
    LEARN = "learn"
    RENDER = "render"


def build_environment(resolver: Resolver) -> SandboxedEnvironment:
    """Return a Jinja environment exposing only the resolver's template functions."""
    environment = SandboxedEnvironment(
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    environment.globals.update(resolver.template_functions())
    environment.globals["pod_namespace"] = resolver.default_namespace
    return environment


def _line_context(source: str, lineno: int | None) -> str:
    if not lineno:
        return ""
    lines = source.splitlines()
    if 0 < lineno <= len(lines):
        return lines[lineno - 1].strip()
    return ""


def render_template(
    source: str,
    resolver: Resolver,
    mode: RenderMode,
    name: str = "<template>",
    environment: SandboxedEnvironment | None = None,
) -> str | None:
    """Evaluate *source* against *resolver*.

    RENDER mode returns the rendered text and raises on any failure.  LEARN
    mode runs the same evaluation purely for its resolver side effects (the
    watches it arms); failures are logged and ``None`` is returned, so a
    template that depends on a resource which does not exist yet cannot stop
    the other templates from being learned.
    """
    environment = environment or build_environment(resolver)
    try:
        template = environment.from_string(source)
        return template.render()
    except jinja2.TemplateSyntaxError as exc:
        error: AsteriskConfigError = TemplateSyntaxError(
            name, exc.lineno, exc.message or str(exc), _line_context(source, exc.lineno)
        )
        error.__cause__ = exc
    except AsteriskConfigError as exc:
        error = exc
    except Exception as exc:
        error = TemplateRenderError(f"failed to render {name}: {exc}")
        error.__cause__ = exc

    if mode is RenderMode.LEARN:
        LOGGER.warning("Ignoring error while learning %s: %s", name, error)
        return None
    raise error
