"""CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import replace
from typing import Optional

from .config import EngineConfig, default_config, load_config, resolve_api_key, save_config
from .devices import list_input_devices, list_output_devices
from .errors import LiveSessionError
from .logging_utils import setup_logging
from .models import Language, PracticeMode, Proficiency, SessionConfig, VoiceName
from .session import LiveSession

DEFAULT_CONFIG_PATH = "lingualive_config.yml"


def _load_or_default(path: str) -> EngineConfig:
    if path and os.path.exists(path):
        return load_config(path)
    return default_config()


def _print_devices(output: bool, match: Optional[str]) -> int:
    devices = list_output_devices() if output else list_input_devices()
    if match:
        devices = [d for d in devices if match.lower() in d.get("name", "").lower()]
    for device in devices:
        name = device.get("name", "Unknown")
        index = device.get("index", "?")
        if output:
            line = f"[{index}] {name} (outputs: {device.get('max_output_channels', 0)})"
        else:
            line = f"[{index}] {name} (inputs: {device.get('max_input_channels', 0)})"
        if "default_samplerate" in device:
            line = f"{line} [rate={device.get('default_samplerate')}]"
        print(line)
    return 0


def _check(config: EngineConfig) -> int:
    checks = []
    checks.append(("API key", bool(resolve_api_key(config.agent.api_key))))
    checks.append(
        (
            "Secure endpoint (wss://)",
            config.agent.endpoint.startswith("wss://") or config.agent.allow_insecure,
        )
    )
    try:
        inputs = list_input_devices()
        outputs = list_output_devices()
    except LiveSessionError as exc:
        print(f"Audio API: unavailable ({exc})")
        inputs, outputs = [], []
    checks.append(("Input device", bool(inputs)))
    checks.append(("Output device", bool(outputs)))

    for label, ok in checks:
        print(f"{'OK ' if ok else 'FAIL'} {label}")
    return 0 if all(ok for _, ok in checks) else 1


async def _talk(config: EngineConfig, session_config: SessionConfig) -> int:
    session = LiveSession(config)
    printed = 0
    if not await session.connect(session_config):
        error = session.last_error
        print(f"Connection failed: {error.message if error else 'unknown error'}")
        if error and error.reason:
            print(f"Reason: {error.reason}")
        return 1

    print("Connected. Speak now; press Ctrl+C to end the session.")
    try:
        while session.is_connected:
            messages = session.messages
            while printed < len(messages) and messages[printed].is_final:
                message = messages[printed]
                print(f"{message.speaker.value}: {message.text.strip()}")
                printed += 1
            await asyncio.sleep(0.1)
    finally:
        await session.aclose()

    for message in session.messages[printed:]:
        print(f"{message.speaker.value}: {message.text.strip()}")
    if session.last_error:
        print(f"Session ended: {session.last_error.message}")
        return 1
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(prog="lingualive")
    sub = parser.add_subparsers(dest="command")

    devices_cmd = sub.add_parser("devices")
    devices_cmd.add_argument("--match", help="Filter device names by substring.")
    devices_cmd.add_argument(
        "--output", action="store_true", help="List output devices instead of inputs."
    )

    check_cmd = sub.add_parser("check")
    check_cmd.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Config.")

    config_cmd = sub.add_parser("config")
    config_cmd.add_argument("--path", default=DEFAULT_CONFIG_PATH, help="Output path.")
    config_cmd.add_argument("--force", action="store_true", help="Overwrite existing.")

    talk_cmd = sub.add_parser("talk")
    talk_cmd.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Config.")
    talk_cmd.add_argument("--language", choices=[item.value for item in Language])
    talk_cmd.add_argument("--proficiency", choices=[p.value for p in Proficiency])
    talk_cmd.add_argument("--mode", choices=[m.value for m in PracticeMode])
    talk_cmd.add_argument("--voice", choices=[v.value for v in VoiceName])
    talk_cmd.add_argument("--log-dir", default="logs", help="Log directory.")
    talk_cmd.add_argument("--debug", action="store_true", help="Debug logging.")

    args = parser.parse_args()
    if args.command == "devices":
        return _print_devices(bool(args.output), args.match)

    if args.command == "check":
        return _check(_load_or_default(args.config))

    if args.command == "config":
        if os.path.exists(args.path) and not args.force:
            print(f"{args.path} exists; use --force to overwrite.")
            return 1
        save_config(args.path, default_config())
        print(f"Wrote {args.path}")
        return 0

    if args.command == "talk":
        config = _load_or_default(args.config)
        _, log_path = setup_logging(
            args.log_dir, level=logging.DEBUG if args.debug else logging.INFO
        )
        overrides = {
            key: value
            for key, value in (
                ("language", args.language),
                ("proficiency", args.proficiency),
                ("mode", args.mode),
                ("voice", args.voice),
            )
            if value
        }
        session_config = replace(config.session, **overrides)
        print(f"Logging to {log_path}")
        try:
            return asyncio.run(_talk(config, session_config))
        except KeyboardInterrupt:
            return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
