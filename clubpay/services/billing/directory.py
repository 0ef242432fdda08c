"""Lookup of units (clubs) and sub-units (teams) owned by the registry service.

Charges reference these by id only; the registry is asked whether an id exists
when a charge is created.
"""

import httpx

from clubpay.common.errors import DirectoryUnavailable
from clubpay.common.logging import logger


class UnitDirectory:
    """HTTP client for the member/club registry."""

    def __init__(self, base_url: str, timeout_seconds: float = 5.0, transport: httpx.BaseTransport | None = None):
        self._http = httpx.Client(base_url=base_url, timeout=timeout_seconds, transport=transport)

    def _get(self, path: str) -> dict | None:
        try:
            resp = self._http.get(path)
        except httpx.HTTPError as exc:
            logger.error("unit directory unreachable path=%s error=%s", path, exc)
            raise DirectoryUnavailable("unit directory unreachable") from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise DirectoryUnavailable(f"unit directory returned {resp.status_code}")
        return resp.json()

    def unit_exists(self, unit_id: int) -> bool:
        return self._get(f"/clubs/{unit_id}") is not None

    def subunit_parent(self, subunit_id: int) -> int | None:
        """Return the owning unit id of a sub-unit, or None when unknown."""

        data = self._get(f"/teams/{subunit_id}")
        if data is None:
            return None
        parent = data.get("club_id", data.get("unit_id"))
        return int(parent) if parent is not None else None

    def close(self) -> None:
        self._http.close()
