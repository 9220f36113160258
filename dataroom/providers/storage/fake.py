from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

from dataroom.core.errors import StorageUnavailable


class FakeObjectStore:
    """Deterministic capability URLs for local runs and tests.

    URLs carry an expiry and an HMAC signature the same way presigned S3 URLs
    do, so callers can check that a URL stays usable until its own TTL even
    after the viewer who obtained it is revoked.
    """

    def __init__(
        self,
        *,
        base_url: str = "https://storage.local",
        secret: str = "fake-object-store",
        time_source: Callable[[], float] | None = None,
        fail_times: int = 0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret = secret.encode("utf-8")
        self._time_source = time_source or time.time
        # Number of upcoming calls that fail, for retry tests.
        self.fail_times = fail_times
        self.calls: list[tuple[str, str]] = []

    def _maybe_fail(self) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise StorageUnavailable("Object store temporarily unavailable")

    def _sign(self, method: str, key: str, expires: int) -> str:
        message = f"{method}\n{key}\n{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _build(self, method: str, key: str, expires_in: int, extra: dict[str, str]) -> str:
        expires = int(self._time_source()) + int(expires_in)
        params = {"method": method, "expires": str(expires), **extra}
        params["signature"] = self._sign(method, key, expires)
        return f"{self._base_url}/{quote(key)}?{urlencode(params)}"

    async def presign_get(
        self,
        key: str,
        *,
        expires_in: int,
        filename: str | None = None,
        as_attachment: bool = False,
    ) -> str:
        self._maybe_fail()
        self.calls.append(("GET", key))
        extra: dict[str, str] = {}
        if as_attachment:
            extra["disposition"] = f'attachment; filename="{filename or key.rsplit("/", 1)[-1]}"'
        return self._build("GET", key, expires_in, extra)

    async def presign_put(
        self,
        key: str,
        *,
        content_type: str,
        expires_in: int,
        metadata: dict[str, str] | None = None,
    ) -> str:
        self._maybe_fail()
        self.calls.append(("PUT", key))
        return self._build("PUT", key, expires_in, {"content_type": content_type})

    def verify_url(self, url: str, *, now: float | None = None) -> bool:
        # Accept only untampered URLs whose embedded expiry has not passed.
        parts = urlsplit(url)
        params = {name: values[0] for name, values in parse_qs(parts.query).items()}
        try:
            expires = int(params["expires"])
            method = params["method"]
            signature = params["signature"]
        except (KeyError, ValueError):
            return False
        key = parts.path.lstrip("/")
        expected = self._sign(method, unquote(key), expires)
        if not hmac.compare_digest(expected, signature):
            return False
        current = self._time_source() if now is None else now
        return current < expires
