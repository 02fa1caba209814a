from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import requests

from logtiers.schemas.record import format_ts_millis
from logtiers.services.errors import TransientSourceError
from logtiers.services.settings import SourceSettings

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    def fetch(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Raw events whose source timestamp falls in [start, end]."""
        ...


class GraylogSource:
    """Polls the Graylog universal absolute search API."""

    def __init__(
        self,
        settings: SourceSettings,
        limit: int = 1000,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._settings = settings
        self._limit = limit
        self._timeout = timeout
        self._session = session or requests.Session()

    def _params(self, start: datetime, end: datetime) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "query": self._settings.query,
            "from": format_ts_millis(start),
            "to": format_ts_millis(end),
            "limit": self._limit,
            "fields": self._settings.fields,
        }
        if self._settings.stream_id:
            params["filter"] = f"streams:{self._settings.stream_id}"
        return params

    def _get_page(self, params: Dict[str, Any], auth) -> Dict[str, Any]:
        try:
            response = self._session.get(
                self._settings.url,
                params=params,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise TransientSourceError(f"Graylog fetch failed: {exc}") from exc
        except ValueError as exc:
            raise TransientSourceError(f"Graylog returned a non-JSON body: {exc}") from exc

        if not isinstance(body, dict):
            raise TransientSourceError("Graylog returned an unexpected body shape")
        if not isinstance(body.get("messages") or [], list):
            raise TransientSourceError("Graylog 'messages' is not a list")
        return body

    def fetch(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        """Every message in the window, paging with ``offset`` until total_results is reached.

        A window whose pages run dry before total_results raises
        TransientSourceError so the caller keeps its cursor and retries.
        """
        auth = None
        if self._settings.username:
            auth = (self._settings.username, self._settings.password or "")

        base = self._params(start, end)
        messages: List[Dict[str, Any]] = []
        while True:
            params = {**base, "offset": len(messages)}
            body = self._get_page(params, auth)
            page = body.get("messages") or []
            messages.extend(page)

            total = body.get("total_results")
            if not isinstance(total, int) or isinstance(total, bool):
                # No total reported: a short page is the last one.
                if len(page) < self._limit:
                    break
                continue
            if len(messages) >= total:
                break
            if not page:
                raise TransientSourceError(
                    f"Graylog stopped returning messages at offset {len(messages)} of {total}"
                )

        logger.debug(f"Fetched {len(messages)} events from Graylog")
        return messages
