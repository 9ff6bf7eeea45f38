#!/usr/bin/env python3
"""Resumable, checkpointed upload of encoded clips.

Two server capabilities are supported behind one flow:

* ``byte-range``: the target answers ``HEAD`` with ``Accept-Ranges: bytes``.
  Chunks are ``PUT`` to the target URL with a ``Content-Range`` header and the
  resume point comes from ``X-Upload-Offset`` (or ``Content-Length``).
* ``session``: ``POST <url>/init`` opens an upload id, chunks go to
  ``PUT <url>/chunk?uploadId=&offset=``, ``GET <url>/status`` reports the
  resume point and ``POST <url>/finish`` completes the transfer.

Progress is persisted in the checkpoint store after every acknowledged chunk,
so an interrupted upload re-sends at most one chunk.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

import aiohttp

from cliprelay.checkpoints import CheckpointStore
from cliprelay.errors import (
    ClipRelayError,
    NetworkTransient,
    UploadError,
    UploadRejected,
    UploadUnauthorized,
)
from cliprelay.models import STATUS_READY, STRATEGY_BYTE_RANGE, STRATEGY_SESSION, Clip, UploadCheckpoint
from cliprelay.retry import (
    FAILURE_NETWORK,
    FAILURE_REJECTED,
    FAILURE_TIMEOUT,
    FAILURE_UNAUTHORIZED,
    RetryPolicy,
    classify_status,
    next_attempt,
)
from cliprelay.storage import ClipStore, FrameStore
from cliprelay.targets import StaticPairing, UploadTarget

_LOG = logging.getLogger("cliprelay.uploader")

DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024
USER_AGENT = "cliprelay/0.1"

ProgressCallback = Callable[[int, int], None]
SessionFactory = Callable[[], aiohttp.ClientSession]


@dataclass(frozen=True)
class UploadResult:
    clip_id: str
    target_key: str
    strategy: str
    offset: int
    total: int
    digest: str
    resumed_from: int


@dataclass(frozen=True)
class _Reply:
    status: int
    headers: Mapping[str, str]
    body: bytes

    def json(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return payload if isinstance(payload, dict) else {}


# (method, url, request kwargs) for a given chunk size
RequestBuilder = Callable[[int], tuple[str, str, dict[str, Any]]]


def _parse_offset(value: Any) -> int | None:
    try:
        offset = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return offset if offset >= 0 else None


def _default_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})


class UploadManager:
    def __init__(
        self,
        clips: ClipStore,
        frames: FrameStore,
        checkpoints: CheckpointStore,
        policy: RetryPolicy | None = None,
        *,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        session_factory: SessionFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.clips = clips
        self.frames = frames
        self.checkpoints = checkpoints
        self.policy = policy or RetryPolicy()
        self.max_file_bytes = int(max_file_bytes)
        self._session_factory = session_factory or _default_session
        self._sleep = sleep
        self._running: dict[tuple[str, str], asyncio.Task[UploadResult]] = {}

    async def upload(
        self,
        clip_id: str,
        target: UploadTarget,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """Upload ``clip_id`` to ``target``, resuming from any checkpoint.

        A second call for the same (clip, target) while a transfer is running
        awaits that transfer instead of starting another one.
        """
        key = (clip_id, target.key)
        task = self._running.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._upload(clip_id, target, on_progress))
            self._running[key] = task

            def _forget(done: asyncio.Task[UploadResult], key: tuple[str, str] = key) -> None:
                if self._running.get(key) is done:
                    del self._running[key]

            task.add_done_callback(_forget)
        else:
            _LOG.info("joining running upload of %s to %s", clip_id, target.key)
        return await task

    async def _upload(
        self,
        clip_id: str,
        target: UploadTarget,
        on_progress: ProgressCallback | None,
    ) -> UploadResult:
        clip = self.clips.get(clip_id)
        if clip.status != STATUS_READY:
            raise UploadRejected(f"{clip_id} is not ready for upload (status {clip.status})")
        total = self.frames.size_bytes(clip_id)
        if total <= 0:
            raise UploadRejected(f"{clip_id} has no encoded bytes")
        if total > self.max_file_bytes:
            raise UploadRejected(
                f"{clip_id} is {total} bytes, above the {self.max_file_bytes} byte limit",
                total=total,
            )
        with self.checkpoints.lease(clip_id, target.key):
            checkpoint = self._load_checkpoint(clip, target)
            if checkpoint.completed:
                _LOG.info("%s already uploaded to %s", clip_id, target.key)
                if on_progress is not None:
                    on_progress(total, total)
                return UploadResult(
                    clip_id, target.key, checkpoint.strategy or STRATEGY_BYTE_RANGE,
                    total, total, clip.digest, total,
                )
            async with self._session_factory() as http:
                transfer = _Transfer(self, http, clip, target, total, checkpoint, on_progress)
                return await transfer.run()

    def _load_checkpoint(self, clip: Clip, target: UploadTarget) -> UploadCheckpoint:
        checkpoint = self.checkpoints.load(clip.id, target.key)
        if checkpoint.digest and checkpoint.digest != clip.digest:
            _LOG.warning("%s was re-encoded since the last upload to %s; restarting", clip.id, target.key)
            checkpoint = UploadCheckpoint(clip_id=clip.id, target_key=target.key)
        if not checkpoint.digest:
            checkpoint.digest = clip.digest
        return checkpoint


class _Transfer:
    """State of one upload attempt for a single (clip, target) pair."""

    def __init__(
        self,
        manager: UploadManager,
        http: aiohttp.ClientSession,
        clip: Clip,
        target: UploadTarget,
        total: int,
        checkpoint: UploadCheckpoint,
        on_progress: ProgressCallback | None,
    ) -> None:
        self.manager = manager
        self.policy = manager.policy
        self.http = http
        self.clip = clip
        self.target = target
        self.total = total
        self.checkpoint = checkpoint
        self.on_progress = on_progress
        self.chunk_size = self.policy.chunk_bytes
        self._timeout = aiohttp.ClientTimeout(total=self.policy.timeout_sec)

    # ---------- flow ----------
    async def run(self) -> UploadResult:
        checkpoints = self.manager.checkpoints
        if self.checkpoint.strategy is None:
            self.checkpoint.strategy = await self._probe()
            checkpoints.save(self.checkpoint)
            _LOG.info("%s -> %s: using %s upload", self.clip.id, self.target.key, self.checkpoint.strategy)

        if self.checkpoint.strategy == STRATEGY_SESSION:
            remote = await self._session_resume_point()
        else:
            remote = await self._byte_range_resume_point()
        offset = min(self.total, max(remote, self.checkpoint.offset))
        if offset != self.checkpoint.offset:
            self.checkpoint.offset = offset
            checkpoints.save(self.checkpoint)
        resumed_from = offset
        if resumed_from:
            _LOG.info("resuming %s at byte %d of %d", self.clip.id, resumed_from, self.total)
        self._report(offset)

        while offset < self.total:
            offset = await self._send_chunk(offset)

        if self.checkpoint.strategy == STRATEGY_SESSION:
            await self._finish_session()
        self.checkpoint = checkpoints.mark_completed(self.clip.id, self.target.key)
        _LOG.info("uploaded %s to %s (%d bytes)", self.clip.id, self.target.key, self.total)
        return UploadResult(
            clip_id=self.clip.id,
            target_key=self.target.key,
            strategy=self.checkpoint.strategy or STRATEGY_BYTE_RANGE,
            offset=offset,
            total=self.total,
            digest=self.clip.digest,
            resumed_from=resumed_from,
        )

    def _report(self, offset: int) -> None:
        if self.on_progress is not None:
            self.on_progress(offset, self.total)

    async def _probe(self) -> str:
        try:
            reply = await self._send("HEAD", self.target.url, {})
        except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
            _LOG.debug("capability probe of %s failed: %r", self.target.url, exc)
            return STRATEGY_SESSION
        accept_ranges = reply.headers.get("Accept-Ranges", "")
        if 200 <= reply.status < 300 and accept_ranges.strip().lower() == "bytes":
            return STRATEGY_BYTE_RANGE
        return STRATEGY_SESSION

    async def _byte_range_resume_point(self) -> int:
        reply = await self._call(
            "resume probe",
            lambda _size: ("HEAD", self.target.url, {}),
            accept=(404,),
        )
        if reply.status == 404:
            return 0
        for header in ("X-Upload-Offset", "Content-Length"):
            offset = _parse_offset(reply.headers.get(header))
            if offset is not None:
                return offset
        return 0

    async def _session_resume_point(self) -> int:
        if self.checkpoint.session_id:
            session_id = self.checkpoint.session_id
            reply = await self._call(
                "session status",
                lambda _size: ("GET", self.target.endpoint("status"), {"params": {"uploadId": session_id}}),
                accept=(404, 410),
            )
            if reply.status not in (404, 410):
                offset = _parse_offset(reply.headers.get("X-Upload-Offset"))
                if offset is None:
                    offset = _parse_offset(reply.json().get("offset"))
                return offset or 0
            _LOG.warning("upload session %s expired on %s; starting over", session_id, self.target.url)
            self.checkpoint.session_id = None
            self.checkpoint.offset = 0
        await self._init_session()
        return 0

    async def _init_session(self) -> None:
        payload = {"sizeBytes": self.total, "md5": self.clip.digest, "filename": self.clip.filename}
        reply = await self._call(
            "session init",
            lambda _size: ("POST", self.target.endpoint("init"), {"json": payload}),
        )
        session_id = reply.json().get("uploadId")
        if not session_id:
            raise UploadRejected(
                f"{self.target.url} did not return an upload id",
                offset=self.checkpoint.offset,
                total=self.total,
                status=reply.status,
            )
        self.checkpoint.session_id = str(session_id)
        self.manager.checkpoints.save(self.checkpoint)

    async def _send_chunk(self, offset: int) -> int:
        frames = self.manager.frames
        sent: dict[str, int] = {}

        def build(size: int) -> tuple[str, str, dict[str, Any]]:
            data = frames.read_range(self.clip.id, offset, min(self.total, offset + size))
            sent["end"] = offset + len(data)
            headers = {
                "Content-Type": "application/octet-stream",
                "Content-MD5": base64.b64encode(hashlib.md5(data).digest()).decode("ascii"),
            }
            if self.checkpoint.strategy == STRATEGY_SESSION:
                params = {"uploadId": self.checkpoint.session_id or "", "offset": str(offset)}
                return "PUT", self.target.endpoint("chunk"), {"data": data, "headers": headers, "params": params}
            headers["Content-Range"] = f"bytes {offset}-{sent['end'] - 1}/{self.total}"
            return "PUT", self.target.url, {"data": data, "headers": headers}

        await self._call(f"chunk at {offset}", build, chunked=True)
        end = sent["end"]
        if end <= offset:
            raise UploadRejected(
                f"no bytes available at offset {offset}", offset=offset, total=self.total
            )
        self.checkpoint = self.manager.checkpoints.record_ack(self.clip.id, self.target.key, offset, end)
        self._report(end)
        return end

    async def _finish_session(self) -> None:
        payload = {
            "uploadId": self.checkpoint.session_id,
            "sizeBytes": self.total,
            "md5": self.clip.digest,
        }
        await self._call(
            "session finish",
            lambda _size: ("POST", self.target.endpoint("finish"), {"json": payload}),
        )

    # ---------- transport ----------
    async def _send(self, method: str, url: str, kwargs: dict[str, Any]) -> _Reply:
        headers = {**self.target.headers(), **kwargs.pop("headers", {})}
        async with self.http.request(method, url, headers=headers, timeout=self._timeout, **kwargs) as resp:
            body = await resp.read()
            return _Reply(resp.status, resp.headers, body)

    async def _call(
        self,
        label: str,
        build: RequestBuilder,
        *,
        accept: tuple[int, ...] = (),
        chunked: bool = False,
    ) -> _Reply:
        attempt = 0
        while True:
            method, url, kwargs = build(self.chunk_size)
            reply: _Reply | None = None
            try:
                reply = await self._send(method, url, kwargs)
                failure = None if reply.status in accept else classify_status(reply.status)
                detail = f"HTTP {reply.status}"
            except asyncio.TimeoutError:
                failure, detail = FAILURE_TIMEOUT, f"timed out after {self.policy.timeout_sec}s"
            except aiohttp.ClientError as exc:
                failure, detail = FAILURE_NETWORK, repr(exc)
            if failure is None:
                assert reply is not None
                return reply

            decision = next_attempt(attempt, failure, self.chunk_size, self.policy)
            if chunked and decision.chunk_size != self.chunk_size:
                _LOG.info("chunk size %d -> %d after %s", self.chunk_size, decision.chunk_size, failure)
                self.chunk_size = decision.chunk_size
            if not decision.retry:
                raise self._error(failure, f"{label} failed: {detail}", reply)
            _LOG.warning(
                "%s to %s failed (%s); retry %d/%d in %.1fs",
                label, self.target.key, detail, attempt + 1, self.policy.retries, decision.delay,
            )
            await self.manager._sleep(decision.delay)
            attempt += 1

    def _error(self, failure: str, message: str, reply: _Reply | None) -> UploadError:
        status = reply.status if reply is not None else None
        context = {"offset": self.checkpoint.offset, "total": self.total, "status": status}
        if failure == FAILURE_UNAUTHORIZED:
            if self.target.paired:
                self.target.invalidate_credentials()
            return UploadUnauthorized(message, **context)
        if failure == FAILURE_REJECTED:
            return UploadRejected(message, **context)
        return NetworkTransient(message, **context)


def _print_progress(offset: int, total: int) -> None:
    pct = (offset * 100 // total) if total else 100
    print(f"[uploader] {offset}/{total} bytes ({pct}%)", flush=True)


def main(argv: list[str] | None = None) -> int:
    from cliprelay.config import get_cfg
    from cliprelay.pipeline import Services

    parser = argparse.ArgumentParser(description="Upload an encoded clip, resuming where it stopped")
    parser.add_argument("clip_id")
    parser.add_argument("--url", default=None, help="Remote upload URL (defaults to upload.url)")
    parser.add_argument("--device", default=None, help="Paired device address, e.g. 192.168.1.20:8080")
    parser.add_argument("--token", default=None, help="Bearer token for the paired device")
    parser.add_argument("--device-id", default=None)
    args = parser.parse_args(argv)

    if args.device:
        if not args.token:
            parser.error("--device requires --token")
        pairing = StaticPairing(args.device, args.token, device_id=args.device_id)
        target = UploadTarget.from_pairing(pairing)
        if target is None:
            parser.error(f"invalid device address: {args.device!r}")
    else:
        url = args.url or str(get_cfg()["upload"].get("url") or "")
        if not url:
            parser.error("no upload URL: pass --url or set upload.url / UPLOAD_URL")
        target = UploadTarget.for_url(url)

    services = Services.from_config()
    manager = services.upload_manager()
    try:
        result = asyncio.run(manager.upload(args.clip_id, target, _print_progress))
    except ClipRelayError as exc:
        print(f"[uploader] {args.clip_id}: {exc}", flush=True)
        return 1
    print(
        f"[uploader] {result.clip_id} uploaded via {result.strategy} "
        f"({result.total} bytes, resumed from {result.resumed_from}, md5 {result.digest})",
        flush=True,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
