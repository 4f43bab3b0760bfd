# Overview: HTTP client for pushing offline transactions to the remote endpoint.

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .errors import SyncFailure


@dataclass(frozen=True)
class PushResult:
    invoice_number: str
    status_code: int
    remote_id: Optional[str] = None
    duplicate: bool = False


class SyncClient:
    """
    Thin wrapper over httpx.Client.

    Every push carries `Idempotency-Key: <invoice_number>`; the remote side
    must treat a repeated key as the same sale. A 409 answer is read as
    "already have it" and counts as success.

    transport is injectable so tests can swap in httpx.MockTransport.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def push_transaction(self, invoice_number: str, payload: dict) -> PushResult:
        """POST one transaction. Raises SyncFailure on network errors, timeouts and non-2xx."""
        try:
            response = self.client.post(
                "/transactions",
                json=payload,
                headers={"Idempotency-Key": invoice_number},
            )
        except httpx.TimeoutException as exc:
            raise SyncFailure(
                "sync request timed out",
                details={"invoice_number": invoice_number, "error": str(exc) or exc.__class__.__name__},
            ) from exc
        except httpx.HTTPError as exc:
            raise SyncFailure(
                "sync request failed",
                details={"invoice_number": invoice_number, "error": str(exc) or exc.__class__.__name__},
            ) from exc

        if response.status_code == 409:
            return PushResult(invoice_number=invoice_number, status_code=409, duplicate=True)

        if response.is_success:
            remote_id = None
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("id") is not None:
                remote_id = str(body["id"])
            return PushResult(invoice_number=invoice_number, status_code=response.status_code, remote_id=remote_id)

        raise SyncFailure(
            f"remote rejected transaction (HTTP {response.status_code})",
            details={
                "invoice_number": invoice_number,
                "status_code": response.status_code,
                "body": response.text[:500],
            },
        )
