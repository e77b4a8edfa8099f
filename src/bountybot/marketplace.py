from __future__ import annotations

import logging

import requests

from bountybot.config import MarketplaceConfig
from bountybot.models import BountyTask, MarketplaceRequest
from bountybot.observability import log_event


LOGGER = logging.getLogger("bountybot.marketplace")
_MAX_DETAIL_LEN = 500


class MarketplaceError(RuntimeError):
    """The marketplace refused or failed to prepare a bounty task."""


class MarketplaceClient:
    def __init__(
        self, config: MarketplaceConfig, *, session: requests.Session | None = None
    ) -> None:
        self._config = config
        self._session = session or requests.Session()

    def task_url(self, task_id: str) -> str:
        return self._config.task_url.format(task_id=task_id)

    def create_task(self, request: MarketplaceRequest) -> BountyTask:
        try:
            response = self._session.post(
                self._config.create_task_url,
                json=request.to_payload(),
                headers={"accept": "application/json"},
                timeout=self._config.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            log_event(
                LOGGER,
                "marketplace_request_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise MarketplaceError(f"Failed to reach bounty marketplace: {exc}") from exc

        if not response.ok:
            detail = _truncate(response.text.strip()) or "<empty>"
            log_event(
                LOGGER,
                "marketplace_task_rejected",
                status_code=response.status_code,
                detail=detail,
            )
            raise MarketplaceError(
                f"Failed to create bounty: {response.status_code} {response.reason}. "
                f"Details: {detail}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise MarketplaceError(
                f"Bounty marketplace returned invalid JSON: {_truncate(response.text)}"
            ) from exc

        task = _parse_task(payload)
        log_event(LOGGER, "marketplace_task_created", task_id=task.task_id)
        return task


def _parse_task(payload: object) -> BountyTask:
    if not isinstance(payload, dict):
        raise MarketplaceError("Bounty marketplace response must be a JSON object")
    task_id = payload.get("taskId")
    serialized = payload.get("serializedTransaction")
    if not isinstance(task_id, str | int) or isinstance(task_id, bool) or not str(task_id):
        raise MarketplaceError("Bounty marketplace response is missing taskId")
    if not isinstance(serialized, str) or not serialized:
        raise MarketplaceError("Bounty marketplace response is missing serializedTransaction")
    return BountyTask(task_id=str(task_id), serialized_transaction=serialized)


def _truncate(text: str) -> str:
    if len(text) <= _MAX_DETAIL_LEN:
        return text
    return f"{text[:_MAX_DETAIL_LEN]}..."
