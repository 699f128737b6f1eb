"""Load hooks from YAML configuration.

Example file::

    python_path:
      - ~/my-hooks
    hooks:
      expert_call:
        - id: audit
          module: my_hooks.audit
          function: on_expert_call
          priority: high
          config:
            verbose: true

Each entry's function is imported by dotted module path and may be sync or
async. When ``config`` is given it is passed to the function as a
``config=`` keyword argument. Broken entries are logged and skipped.
"""

from __future__ import annotations

import functools
import importlib
import logging
import os
import sys
from pathlib import Path
from typing import Any

from . import HookDefinition, HookEvent, HookFn, HookPriority
from .chain import HookDispatcher

logger = logging.getLogger("llm-router.hooks")

try:
    import yaml
except ImportError:
    yaml = None  # type: ignore[assignment]


def load_hooks_from_config(config_path: Path, dispatcher: HookDispatcher) -> int:
    """Load hooks from a YAML config file into ``dispatcher``.

    Returns the number of hooks successfully registered.
    """
    if yaml is None:
        logger.warning("pyyaml not installed, cannot load hooks config")
        return 0

    try:
        config = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        logger.error("Failed to parse hooks config: %s", config_path, exc_info=True)
        return 0

    if not isinstance(config, dict):
        logger.warning("Hooks config %s is not a mapping", config_path)
        return 0

    # Add custom python paths
    for p in config.get("python_path", []) or []:
        expanded = os.path.expanduser(os.path.expandvars(str(p)))
        if expanded not in sys.path:
            sys.path.insert(0, expanded)

    count = 0
    for event_name, hook_list in (config.get("hooks") or {}).items():
        try:
            event = HookEvent(event_name)
        except ValueError:
            logger.warning("Unknown hook event: %s", event_name)
            continue

        if not isinstance(hook_list, list):
            logger.warning("Hook list for %s is not a list", event_name)
            continue

        for hook_def in hook_list:
            hook = _build_hook(event, hook_def)
            if hook is None:
                continue
            dispatcher.register(hook)
            count += 1

    logger.debug("Loaded %d hooks from %s", count, config_path)
    return count


def _build_hook(event: HookEvent, hook_def: Any) -> HookDefinition | None:
    if not isinstance(hook_def, dict):
        logger.warning("Ignoring malformed hook entry for %s: %r", event.value, hook_def)
        return None

    hook_id = hook_def.get("id") or hook_def.get("name")
    if not hook_id:
        logger.warning("Hook entry for %s has no id", event.value)
        return None

    try:
        fn = _load_hook_function(hook_def)
        priority = HookPriority(hook_def.get("priority", "normal"))
    except Exception:
        logger.error("Failed to load hook %s", hook_id, exc_info=True)
        return None

    hook_config = hook_def.get("config") or {}
    if hook_config:
        fn = functools.partial(fn, config=hook_config)

    return HookDefinition(
        id=str(hook_id),
        event=event,
        handler=fn,
        priority=priority,
        enabled=bool(hook_def.get("enabled", True)),
        name=hook_def.get("name"),
        description=hook_def.get("description", ""),
    )


def _load_hook_function(hook_def: dict) -> HookFn:
    """Import and return a hook function from a module path."""
    module = importlib.import_module(hook_def["module"])
    fn = getattr(module, hook_def["function"])
    if not callable(fn):
        raise TypeError(f"{hook_def['module']}.{hook_def['function']} is not callable")
    return fn
