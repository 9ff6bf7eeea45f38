#!/usr/bin/env python3
"""Command-line entry point: ``cliprelay <command> [options]``."""

from __future__ import annotations

import argparse
import datetime as _dt
import sys
from typing import Callable

from cliprelay import capture, encoder, uploader
from cliprelay.audio_devices import discover_capture_devices
from cliprelay.config import active_config_path, configure_logging, get_cfg
from cliprelay.errors import ClipRelayError

DELEGATED: dict[str, Callable[[list[str] | None], int]] = {
    "record": capture.main,
    "encode": encoder.main,
    "upload": uploader.main,
}


def _cmd_list(args: argparse.Namespace) -> int:
    from cliprelay.pipeline import Services

    services = Services.from_config()
    clips = services.clips.list_clips()
    if not clips:
        print("[cli] no clips stored", flush=True)
        return 0
    for clip in clips:
        created = _dt.datetime.fromtimestamp(clip.created_at).strftime("%Y-%m-%d %H:%M")
        print(
            f"{clip.id}  {clip.status:<9}  {created}  {clip.duration_seconds:7.1f}s  "
            f"{clip.size_bytes:>9}  {clip.filename or clip.title}",
            flush=True,
        )
    return 0


def _cmd_delete(args: argparse.Namespace) -> int:
    from cliprelay.pipeline import Services

    services = Services.from_config()
    status = 0
    for clip_id in args.clip_ids:
        try:
            services.delete_clip(clip_id)
        except ClipRelayError as exc:
            print(f"[cli] {clip_id}: {exc}", flush=True)
            status = 1
            continue
        print(f"[cli] deleted {clip_id}", flush=True)
    return status


def _cmd_devices(args: argparse.Namespace) -> int:
    devices = discover_capture_devices()
    if not devices:
        print("[cli] no capture devices found", flush=True)
        return 1
    for device in devices:
        print(f"{device.identifier:>3}  {device.label}  {device.default_sample_rate} Hz", flush=True)
    return 0


def _cmd_recover(args: argparse.Namespace) -> int:
    from cliprelay.pipeline import Services

    services = Services.from_config()
    queued = services.recover_unfinished_clips()
    for clip_id in queued:
        services.encode_worker.wait(clip_id)
        error = services.encode_worker.error_for(clip_id)
        print(f"[cli] recovered {clip_id}: {error or 'ok'}", flush=True)
    services.shutdown()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cliprelay", description="Capture, encode and upload audio clips")
    parser.add_argument("--config-info", action="store_true", help="Print the active config file and exit")
    sub = parser.add_subparsers(dest="command")
    for name in DELEGATED:
        sub.add_parser(name, add_help=False, help=f"see 'cliprelay {name} --help'")
    sub.add_parser("list", help="List stored clips, newest first").set_defaults(func=_cmd_list)
    delete = sub.add_parser("delete", help="Delete clips with their segments and checkpoints")
    delete.add_argument("clip_ids", nargs="+")
    delete.set_defaults(func=_cmd_delete)
    sub.add_parser("devices", help="List audio capture devices").set_defaults(func=_cmd_devices)
    sub.add_parser("recover", help="Encode clips left unfinished by a crash").set_defaults(func=_cmd_recover)
    return parser


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    configure_logging(get_cfg())
    if argv and argv[0] in DELEGATED:
        try:
            return DELEGATED[argv[0]](argv[1:])
        except ClipRelayError as exc:
            print(f"[cli] {exc}", flush=True)
            return 1

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.config_info:
        print(f"[cli] active config: {active_config_path() or '(built-in defaults)'}", flush=True)
        return 0
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    try:
        return int(args.func(args))
    except ClipRelayError as exc:
        print(f"[cli] {exc}", flush=True)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
