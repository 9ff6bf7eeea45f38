#!/usr/bin/env python3
"""
Development launcher for cliprelay.

- Re-encodes clips left unfinished by a previous crash
- Records one clip until Ctrl-C (or --seconds elapse)
- Waits for the encode, then uploads it if an upload URL is configured
"""

import argparse
import asyncio
import time

from cliprelay.config import configure_logging, get_cfg
from cliprelay.errors import ClipRelayError, DeviceUnavailable
from cliprelay.pipeline import Services
from cliprelay.targets import UploadTarget


def record(services, title, seconds, device):
    capture = services.capture_controller()
    try:
        clip_id = capture.start(title, device)
    except DeviceUnavailable as exc:
        print(f"[dev] {exc}; falling back to the default device", flush=True)
        clip_id = capture.start(title, None)
    print(f"[dev] recording {clip_id} (Ctrl-C to stop)", flush=True)
    deadline = time.monotonic() + seconds if seconds else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.25)
            print(f"\r[dev] {capture.duration_seconds:6.1f}s  level {capture.volume:4.2f}", end="", flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        print(flush=True)
        capture.stop()
    return clip_id


def main():
    parser = argparse.ArgumentParser(description="Record a clip, encode it and upload it")
    parser.add_argument("--title", default="dev clip")
    parser.add_argument("--seconds", type=float, default=0.0, help="0 records until Ctrl-C")
    parser.add_argument("--device", default=None)
    parser.add_argument("--url", default=None)
    args = parser.parse_args()

    cfg = get_cfg()
    configure_logging(cfg)
    services = Services.from_config(cfg)

    for clip_id in services.recover_unfinished_clips():
        print(f"[dev] re-encoding unfinished clip {clip_id}", flush=True)

    clip_id = record(services, args.title, args.seconds, args.device or cfg["audio"].get("device") or None)
    services.encode_worker.wait(clip_id)
    error = services.encode_worker.error_for(clip_id)
    if error is not None:
        print(f"[dev] encode failed: {error}", flush=True)
        return 1
    clip = services.clips.get(clip_id)
    print(f"[dev] {clip.filename}: {clip.size_bytes} bytes, md5 {clip.digest}", flush=True)

    url = args.url or cfg["upload"].get("url")
    if not url:
        print("[dev] no upload URL configured; keeping the clip local", flush=True)
        services.shutdown()
        return 0
    manager = services.upload_manager()
    try:
        result = asyncio.run(
            manager.upload(clip_id, UploadTarget.for_url(url), lambda done, total: print(f"[dev] {done}/{total}", flush=True))
        )
    except ClipRelayError as exc:
        print(f"[dev] upload failed: {exc}", flush=True)
        return 1
    finally:
        services.shutdown()
    print(f"[dev] uploaded via {result.strategy}", flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
