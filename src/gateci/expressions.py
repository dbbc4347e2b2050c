# expressions.py
# `${{ ... }}` placeholders used in step commands, env values and
# concurrency group templates.
#
#   ${{ matrix.command }}
#   ${{ env.RUST_VERSION }}
#   ${{ workflow }}-${{ pr_number || ref }}
#
# An expression is one or more alternatives separated by `||`. Each
# alternative is a dotted lookup path or a quoted literal; the first one
# that resolves to a non-empty value wins.

from __future__ import annotations

import re
from typing import Any, Mapping

from .errors import DefinitionError

_PLACEHOLDER = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_PATH = re.compile(r"^[A-Za-z_][\w-]*(\.[A-Za-z_][\w-]*)*$")


def _lookup(path: str, scope: Mapping[str, Any]) -> Any:
    node: Any = scope
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def evaluate_expression(expr: str, scope: Mapping[str, Any]) -> str:
    for alt in (a.strip() for a in expr.split("||")):
        if len(alt) >= 2 and alt[0] == alt[-1] and alt[0] in "'\"":
            value: Any = alt[1:-1]
        elif _PATH.match(alt):
            value = _lookup(alt, scope)
        else:
            raise DefinitionError(f"Unsupported expression: {alt!r} in ${{{{ {expr} }}}}")
        if value is not None and value != "":
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)
    return ""


def interpolate(template: str, scope: Mapping[str, Any]) -> str:
    """Replace every ${{ expr }} in template using scope."""
    if "${{" not in template:
        return template
    return _PLACEHOLDER.sub(lambda m: evaluate_expression(m.group(1), scope), template)


def truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")
