from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

from simkl_scrobbler.config import get_settings
from simkl_scrobbler.utils.circuit import Circuit
from simkl_scrobbler.utils.log import logger


def build_timeout(timeout_sec: float) -> httpx.Timeout:
    seconds = max(0.1, float(timeout_sec))
    return httpx.Timeout(seconds, connect=min(seconds, 5.0))


class ServiceClient:
    """
    Long-lived httpx client for one remote service, guarded by a circuit breaker.

    `_send` never raises for transport or HTTP errors: it returns the response
    (any status) or None when the call could not be made.
    """

    service = "remote"

    def __init__(
        self,
        *,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_sec: float | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        if timeout_sec is None:
            timeout_sec = float(get_settings().http_timeout_sec)
        self.base_url = str(base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=build_timeout(timeout_sec),
            headers={"Accept": "application/json", **dict(headers or {})},
            transport=transport,
        )

    @property
    def circuit(self) -> Circuit:
        return Circuit.get(self.service)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        credential: str | None = None,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        op: str = "",
    ) -> httpx.Response | None:
        headers = {"Authorization": f"Bearer {credential}"} if credential else None
        with self.circuit.attempt() as call:
            if not call.allowed:
                logger.warning("remote_circuit_open", service=self.service, op=op)
                return None
            try:
                resp = await self._client.request(method, path, params=params, json=json, headers=headers)
            except httpx.TimeoutException:
                call.failed()
                logger.warning("remote_timeout", service=self.service, op=op)
                return None
            except httpx.HTTPError as ex:
                call.failed()
                logger.warning("remote_request_failed", service=self.service, op=op, error=type(ex).__name__)
                return None
            if resp.status_code >= 500:
                call.failed()
            else:
                call.succeeded()

        if resp.is_error:
            logger.warning(
                "remote_http_error",
                service=self.service,
                op=op,
                status=int(resp.status_code),
                body=resp.text[:200],
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None
