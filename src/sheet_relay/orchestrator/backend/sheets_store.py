"""Google Sheets values-API client implementing the tabular store protocol."""

from __future__ import annotations

import logging
import time
from urllib.parse import quote

import httpx

from sheet_relay.orchestrator.errors import StoreError

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class SheetsTabularStore:
    """Read ranges and write single cells through the Sheets REST API.

    Only the plain values endpoints are used; sheet-structure operations are
    out of reach on purpose.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        spreadsheet_id: str,
        access_token: str,
        sheet_name: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff_seconds: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not spreadsheet_id.strip():
            raise ValueError("spreadsheet_id must not be empty.")
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self._max_retries = max_retries
        self._retry_backoff_seconds = retry_backoff_seconds
        self._client = httpx.Client(
            base_url=f"{SHEETS_API_BASE}/{spreadsheet_id}",
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    def read(self, range_spec: str) -> list[list[str]]:
        response = self._request("GET", f"/values/{self._quoted_range(range_spec)}")
        payload = response.json()
        values = payload.get("values", []) if isinstance(payload, dict) else []
        return [[str(value) for value in row] for row in values if isinstance(row, list)]

    def write(self, cell_ref: str, value: str) -> None:
        qualified = self._qualified(cell_ref)
        self._request(
            "PUT",
            f"/values/{quote(qualified, safe='!:')}",
            params={"valueInputOption": "RAW"},
            json={"range": qualified, "majorDimension": "ROWS", "values": [[value]]},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SheetsTabularStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        last_error = "unknown error"
        for attempt in range(1, self._max_retries + 2):
            try:
                response = self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("Sheets %s %s timed out (attempt %d)", method, url, attempt)
            except httpx.HTTPError as exc:
                last_error = str(exc)
                logger.warning("Sheets %s %s failed: %s", method, url, exc)
            else:
                if response.is_success:
                    return response
                last_error = f"HTTP {response.status_code}"
                if response.status_code not in _RETRYABLE_STATUS_CODES:
                    raise StoreError(
                        f"Sheets {method} {url} failed: {last_error}",
                        transient=False,
                    )
                logger.warning("Sheets %s %s returned %s", method, url, response.status_code)
            if attempt <= self._max_retries:
                time.sleep(self._retry_backoff_seconds * attempt)
        raise StoreError(f"Sheets {method} {url} failed: {last_error}")

    def _qualified(self, range_spec: str) -> str:
        if "!" in range_spec or not self.sheet_name:
            return range_spec
        return f"'{self.sheet_name}'!{range_spec}"

    def _quoted_range(self, range_spec: str) -> str:
        return quote(self._qualified(range_spec), safe="!:")
