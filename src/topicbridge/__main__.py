"""
Process entry: python -m topicbridge run|check [--config PATH]
"""

from __future__ import annotations

import argparse
import importlib
import json
import signal
import sys
from pathlib import Path
from typing import Any, List, Optional

from .bridge.controller import BridgeController
from .errors import ConfigurationError
from .kernel.settings import BridgeSettings, load_settings
from .ports.source import SourceMessagingClient
from .ports.telegram import TelegramChatClient
from .util.obslog import setup_root_json_logging


def load_source_client(settings: BridgeSettings) -> SourceMessagingClient:
    target = settings.source.client.strip()
    if ":" not in target:
        raise ConfigurationError("source.client must look like 'package.module:ClassName'")
    module_name, _, attr = target.partition(":")
    try:
        cls = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"cannot import source client {target}: {e}") from e
    client = cls(**dict(settings.source.options))
    if not isinstance(client, SourceMessagingClient):
        raise ConfigurationError(f"{target} is not a SourceMessagingClient")
    return client


def _cmd_check(settings: BridgeSettings) -> int:
    print(json.dumps(settings.masked(), indent=2, ensure_ascii=False))
    try:
        settings.require_destination()
        load_source_client(settings)
    except ConfigurationError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1
    print("[info] configuration OK")
    return 0


def _cmd_run(settings: BridgeSettings) -> int:
    setup_root_json_logging(component="topicbridge", level=settings.log_level)
    try:
        source = load_source_client(settings)
    except ConfigurationError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1

    destination = TelegramChatClient(
        settings.destination.resolved_token(),
        poll_timeout=settings.destination.poll_timeout,
        max_per_minute=settings.destination.max_per_minute,
    )
    bridge = BridgeController(settings, source, destination)

    def handle_signal(signum: int, frame: Any) -> None:
        print(f"\n[signal] Received signal {signum}, stopping...", file=sys.stderr)
        bridge.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    if not bridge.start():
        print(f"[error] Failed to start bridge: {bridge.last_error}", file=sys.stderr)
        return 1

    print(f"[info] Bridge started for chat {settings.destination.chat_id}", file=sys.stderr)
    print("[info] Press Ctrl+C to stop", file=sys.stderr)
    while not bridge.wait_stopped(1.0):
        pass
    return 0 if bridge.enabled else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="topicbridge", description="Bridge DM threads into forum topics.")
    parser.add_argument("command", choices=["run", "check"])
    parser.add_argument("--config", type=Path, default=None, help="settings YAML (default: $TOPICBRIDGE_HOME/bridge.yaml)")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1

    if args.command == "check":
        return _cmd_check(settings)
    return _cmd_run(settings)


if __name__ == "__main__":
    sys.exit(main())
