#!/usr/bin/env python3
"""
llm-router - Route requests through a phase-based workflow of LLM experts.

Experts are called through an OpenAI-compatible (LiteLLM) proxy.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="llm-router",
        description="Route requests through intent, delegation, verification and recovery phases",
    )
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug output")
    parser.add_argument("--config", "-c", type=Path, help="Config file (default: ~/.config/llm-router/config.yaml)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run
    run_p = subparsers.add_parser("run", help="Run the full workflow for a request")
    run_p.add_argument("request", nargs="+", help="Request text")
    run_p.add_argument("--max-attempts", type=int, help="Override workflow max_attempts")
    run_p.add_argument("--no-verify", action="store_true", help="Skip the verification phase")
    run_p.add_argument("--json", action="store_true", help="Print the result as JSON")

    # intent
    intent_p = subparsers.add_parser("intent", help="Classify a request without calling experts")
    intent_p.add_argument("request", nargs="+", help="Request text")

    # classify-error
    classify_p = subparsers.add_parser("classify-error", help="Show the category and recovery strategy for an error")
    classify_p.add_argument("message", nargs="+", help="Error message")
    classify_p.add_argument("--attempt", type=int, default=0, help="Previous attempt count")

    # experts subcommands
    experts_p = subparsers.add_parser("experts", help="Expert registry")
    experts_sub = experts_p.add_subparsers(dest="experts_command")
    experts_sub.add_parser("list", help="List experts and their fallback chains")
    show_p = experts_sub.add_parser("show", help="Show expert details")
    show_p.add_argument("name", help="Expert id")

    # hooks subcommands
    hooks_p = subparsers.add_parser("hooks", help="Hook registry")
    hooks_sub = hooks_p.add_subparsers(dest="hooks_command")
    hooks_sub.add_parser("list", help="List registered hooks")

    # config subcommands
    config_p = subparsers.add_parser("config", help="Configuration")
    config_sub = config_p.add_subparsers(dest="config_command")
    config_sub.add_parser("show", help="Show the effective configuration")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    # Dispatch
    if args.command == "run":
        return cmd_run(args)
    elif args.command == "intent":
        return cmd_intent(args)
    elif args.command == "classify-error":
        return cmd_classify_error(args)
    elif args.command == "experts":
        return cmd_experts(args)
    elif args.command == "hooks":
        return cmd_hooks(args)
    elif args.command == "config":
        return cmd_config(args)
    else:
        parser.print_help()
        return 1


def _load_config(args: argparse.Namespace):
    """Load config, printing the error and returning None when it is invalid."""
    from .config import load_config
    from .errors import ConfigError

    try:
        return load_config(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None


def cmd_run(args: argparse.Namespace) -> int:
    """Run the workflow and print its summary."""
    from .errors import RouterError
    from .session import RouterSession

    config = _load_config(args)
    if config is None:
        return 1

    overrides = {}
    if args.max_attempts is not None:
        overrides["max_attempts"] = args.max_attempts
    if args.no_verify:
        overrides["enable_verification"] = False

    async def _run():
        session = RouterSession(config)
        try:
            return await session.run_workflow(" ".join(args.request), overrides or None)
        finally:
            await session.aclose()

    try:
        result = asyncio.run(_run())
    except RouterError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.output)
    return 0 if result.success else 1


def cmd_intent(args: argparse.Namespace) -> int:
    from .workflow.intent import (
        COMPLEXITY_DESCRIPTIONS,
        INTENT_DESCRIPTIONS,
        assess_complexity,
        classify_intent,
        recommended_experts,
    )

    request = " ".join(args.request)
    intent = classify_intent(request)
    complexity = assess_complexity(request)
    print(f"Intent:     {intent.value} ({INTENT_DESCRIPTIONS[intent]})")
    print(f"Complexity: {complexity.value} ({COMPLEXITY_DESCRIPTIONS[complexity]})")
    print(f"Experts:    {', '.join(recommended_experts(intent))}")
    return 0


def cmd_classify_error(args: argparse.Namespace) -> int:
    from .recovery import classify_error, get_recovery_strategy

    config = _load_config(args)
    if config is None:
        return 1

    message = " ".join(args.message)
    category = classify_error(message)
    strategy = get_recovery_strategy(category, args.attempt, config.recovery)
    print(f"Category:     {category.value}")
    print(f"Retry:        {'yes' if strategy.should_retry else 'no'}")
    print(f"Delay:        {strategy.retry_delay_ms}ms")
    print(f"Max retries:  {strategy.max_retries}")
    if strategy.fallback_action:
        print(f"Fallback:     {strategy.fallback_action.value}")
    print(f"Message:      {strategy.user_message}")
    return 0


def cmd_experts(args: argparse.Namespace) -> int:
    """Handle experts commands."""
    from .errors import ConfigError, UnknownExpertError
    from .experts import ExpertRegistry, load_experts_file

    config = _load_config(args)
    if config is None:
        return 1

    try:
        registry = ExpertRegistry.with_defaults()
        if config.experts_file is not None:
            load_experts_file(config.experts_file, registry)
    except ConfigError as e:
        print(f"Expert config error: {e}", file=sys.stderr)
        return 1

    if args.experts_command == "list":
        print("Available experts:")
        for expert in registry:
            chain = " -> ".join(expert.fallbacks) or "(none)"
            print(f"  {expert.id:<12} {expert.model:<20} fallbacks: {chain}")
        return 0

    elif args.experts_command == "show":
        try:
            expert = registry.get(args.name)
        except UnknownExpertError as e:
            print(str(e), file=sys.stderr)
            return 1

        print(f"Expert: {expert.id}")
        if expert.name:
            print(f"Name: {expert.name}")
        print(f"Model: {expert.model}")
        print(f"Temperature: {expert.temperature}")
        print(f"Max tokens: {expert.max_tokens}")
        print(f"Fallbacks: {', '.join(expert.fallbacks) or '(none)'}")
        if expert.role:
            print()
            print(expert.role)
        return 0

    else:
        print("Usage: llm-router experts {list|show}")
        return 1


def cmd_hooks(args: argparse.Namespace) -> int:
    """Handle hooks commands."""
    from .errors import RouterError
    from .session import RouterSession

    if args.hooks_command != "list":
        print("Usage: llm-router hooks {list}")
        return 1

    config = _load_config(args)
    if config is None:
        return 1

    try:
        session = RouterSession(config)
    except RouterError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    hooks = session.dispatcher.list_hooks()
    if not hooks:
        print("No hooks registered")
        return 0

    print("Registered hooks:")
    for hook in hooks:
        state = "enabled" if hook.enabled else "disabled"
        print(f"  {hook.id:<32} {hook.event.value:<16} {hook.priority.value:<7} {state}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Handle config commands."""
    from .config import _require_yaml, get_config_file

    if args.config_command != "show":
        print("Usage: llm-router config {show}")
        return 1

    config = _load_config(args)
    if config is None:
        return 1

    _require_yaml()
    import yaml

    print(f"# Source: {config.source_path or get_config_file()} "
          f"({'loaded' if config.source_path else 'defaults'})")
    print(yaml.safe_dump(config.to_dict(), sort_keys=False), end="")
    return 0


if __name__ == "__main__":
    sys.exit(main())
