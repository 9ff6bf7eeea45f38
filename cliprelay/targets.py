"""Upload targets: plain remote URLs and paired local devices."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

_LOG = logging.getLogger("cliprelay.targets")


@dataclass(frozen=True)
class PairedTarget:
    url: str
    token: str
    device_id: str | None = None
    expires_at: float | None = None

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.time() > self.expires_at


class PairingProvider(Protocol):
    """Contract consumed from the device-pairing subsystem."""

    def current_target(self) -> PairedTarget | None: ...

    def invalidate_token(self) -> None: ...


class StaticPairing:
    """In-memory pairing credentials, e.g. supplied on the command line."""

    def __init__(
        self,
        device: str,
        token: str,
        *,
        device_id: str | None = None,
        ttl_sec: float | None = None,
    ) -> None:
        self._device = normalize_device_url(device)
        self._token: str | None = token or None
        self._device_id = device_id
        self._expires_at = time.time() + ttl_sec if ttl_sec else None

    def current_target(self) -> PairedTarget | None:
        if not self._device or not self._token:
            return None
        target = PairedTarget(self._device, self._token, self._device_id, self._expires_at)
        if target.expired:
            return None
        return target

    def invalidate_token(self) -> None:
        if self._token:
            _LOG.warning("pairing token for %s invalidated; re-pair required", self._device)
        self._token = None
        self._expires_at = None


def normalize_device_url(raw: str) -> str:
    """Reduce ``host[:port]`` or a full URL to ``scheme://host[:port]``."""

    value = (raw or "").strip()
    if not value:
        return ""
    if "://" not in value:
        value = f"http://{value}"
    parts = urlsplit(value)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        return ""
    return f"{parts.scheme}://{parts.netloc}"


def parse_launch_params(query: str) -> dict[str, str]:
    """Extract ``device``, ``action`` and ``session`` from a pairing link query."""

    params = parse_qs((query or "").lstrip("?"))

    def first(name: str) -> str:
        values = params.get(name) or [""]
        return values[0].strip()

    return {
        "device": normalize_device_url(first("device")),
        "action": first("action").lower(),
        "session": first("session"),
    }


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class UploadTarget:
    url: str
    token: str | None = None
    device_id: str | None = None
    pairing: PairingProvider | None = field(default=None, compare=False, repr=False)

    @classmethod
    def for_url(cls, url: str) -> "UploadTarget":
        if not url or "://" not in url:
            raise ValueError(f"upload URL must be absolute: {url!r}")
        return cls(url=url.rstrip("/"))

    @classmethod
    def from_pairing(cls, pairing: PairingProvider) -> "UploadTarget | None":
        current = pairing.current_target()
        if current is None:
            return None
        return cls(
            url=current.url.rstrip("/"),
            token=current.token,
            device_id=current.device_id,
            pairing=pairing,
        )

    @property
    def paired(self) -> bool:
        return self.pairing is not None or self.token is not None

    @property
    def key(self) -> str:
        """Stable checkpoint key; independent of the (rotating) token."""
        if self.paired:
            return f"device-{_short_hash(self.device_id or self.url.lower())}"
        return f"url-{_short_hash(self.url.lower())}"

    def headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def endpoint(self, name: str) -> str:
        return f"{self.url}/{name.lstrip('/')}"

    def invalidate_credentials(self) -> None:
        if self.pairing is not None:
            self.pairing.invalidate_token()


__all__ = [
    "PairedTarget",
    "PairingProvider",
    "StaticPairing",
    "UploadTarget",
    "normalize_device_url",
    "parse_launch_params",
]
