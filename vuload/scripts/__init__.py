"""
Load scripts.

A script is a module exposing a ``SCRIPT`` object: its target functions keyed
by the names scenarios reference in ``exec``, and the custom metrics it
records. Bundled scripts are registered by short name; any other importable
module path works too.
"""

import importlib
import logging
from dataclasses import dataclass, field
from typing import Mapping

from ..framework.models import MetricSpec
from ..framework.worker import TargetFunction

logger = logging.getLogger(__name__)

REGISTRY: dict[str, str] = {
    "catalog": "vuload.scripts.catalog",
}


class ScriptLoadError(Exception):
    """Raised when a script cannot be imported or is malformed."""


@dataclass(frozen=True)
class Script:
    """
    A load script.

    Attributes:
        name: Script name
        functions: Target functions keyed by exec name
        metrics: Custom metrics the script records
    """

    name: str
    functions: Mapping[str, TargetFunction] = field(default_factory=dict)
    metrics: tuple[MetricSpec, ...] = ()

    def get_function(self, name: str) -> TargetFunction:
        try:
            return self.functions[name]
        except KeyError:
            raise ScriptLoadError(
                f"Script '{self.name}' has no function '{name}'"
            ) from None


def load_script(name: str) -> Script:
    """
    Load a script by registry name or module path.

    Args:
        name: Registered name (e.g. "catalog") or dotted module path

    Returns:
        The module's ``SCRIPT``

    Raises:
        ScriptLoadError: If the module cannot be imported or has no SCRIPT
    """
    module_path = REGISTRY.get(name, name)
    try:
        module = importlib.import_module(module_path)
    except ImportError as exc:
        raise ScriptLoadError(f"Cannot import script '{name}': {exc}") from exc

    script = getattr(module, "SCRIPT", None)
    if not isinstance(script, Script):
        raise ScriptLoadError(f"Module '{module_path}' does not define a SCRIPT")
    logger.debug(
        "Loaded script %s (%d function(s), %d metric(s))",
        script.name, len(script.functions), len(script.metrics),
    )
    return script
