from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import Protocol

from solders.keypair import Keypair

from bountybot.config import SolanaConfig
from bountybot.models import (
    BountyOutcomeStatus,
    BountyTask,
    ConfirmationErrorKind,
    ConfirmationResult,
    PipelineResult,
    SignatureStatus,
    TransactionAttempt,
)
from bountybot.observability import log_event, warn_event


LOGGER = logging.getLogger("bountybot.transaction_pipeline")
_CONFIRMED_STATUSES: frozenset[SignatureStatus] = frozenset({"confirmed", "finalized"})


class TransactionNetwork(Protocol):
    def sign(self, serialized_transaction: str, keypair: Keypair) -> bytes: ...

    def submit(self, signed_transaction: bytes, *, max_retries: int) -> str: ...

    def confirm(self, signature: str, *, timeout_seconds: float) -> ConfirmationResult: ...

    def get_signature_status(self, signature: str) -> SignatureStatus | None: ...


@dataclass(frozen=True)
class TransactionPolicy:
    max_send_retries: int = 5
    confirm_timeout_seconds: float = 60.0
    settle_delay_seconds: float = 5.0
    blockheight_retry_count: int = 3
    blockheight_retry_delay_seconds: float = 5.0

    @classmethod
    def from_config(cls, config: SolanaConfig) -> TransactionPolicy:
        return cls(
            max_send_retries=config.max_send_retries,
            confirm_timeout_seconds=config.confirm_timeout_seconds,
            settle_delay_seconds=config.settle_delay_seconds,
            blockheight_retry_count=config.blockheight_retry_count,
            blockheight_retry_delay_seconds=config.blockheight_retry_delay_seconds,
        )


class TransactionPipeline:
    """Sign, submit and confirm one marketplace transaction.

    States run ``signed -> submitted -> confirmation_pending`` and then end in
    ``confirmed`` or ``confirmation_ambiguous`` (or ``failed`` when the chain
    reports an error). ``execute`` never raises. Once a signature exists it is
    attached to every result, whatever happens afterwards.

    A confirmation error or timeout is not treated as a failed transaction: the
    signature status is queried after ``settle_delay_seconds``, and a
    ``blockheight_exceeded`` error gets ``blockheight_retry_count`` more delayed
    checks. One last status query runs before an ambiguous result is returned,
    including when the confirmation wait itself crashed. If none of them sees
    the transaction confirmed the outcome is ``ambiguous_success``.
    """

    def __init__(
        self,
        network: TransactionNetwork,
        keypair: Keypair,
        policy: TransactionPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._network = network
        self._keypair = keypair
        self._policy = policy or TransactionPolicy()
        self._sleep = sleep

    def execute(self, task: BountyTask) -> PipelineResult:
        try:
            signed = self._network.sign(task.serialized_transaction, self._keypair)
        except Exception as exc:  # noqa: BLE001
            return self._resolve_failure(task, None, f"Failed to sign transaction: {exc}")

        try:
            signature = self._network.submit(signed, max_retries=self._policy.max_send_retries)
        except Exception as exc:  # noqa: BLE001
            return self._resolve_failure(task, None, str(exc))

        log_event(
            LOGGER,
            "transaction_confirmation_pending",
            task_id=task.task_id,
            signature=signature,
        )
        try:
            return self._confirm(task, signature)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "transaction_confirmation_crashed",
                task_id=task.task_id,
                signature=signature,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._final_check(
                task,
                signature,
                checks=0,
                error=f"Confirmation could not be completed: {exc}",
            )

    def _confirm(self, task: BountyTask, signature: str) -> PipelineResult:
        result = self._network.confirm(
            signature, timeout_seconds=self._policy.confirm_timeout_seconds
        )
        if result.confirmed:
            return self._resolve(
                task,
                "success",
                TransactionAttempt(signature=signature, confirmation_state="confirmed"),
            )
        if result.status == "failed":
            return self._resolve_failure(
                task, signature, f"Transaction failed on-chain: {result.detail}"
            )

        warn_event(
            LOGGER,
            "transaction_confirmation_fallback",
            task_id=task.task_id,
            signature=signature,
            error_kind=result.error_kind,
            detail=result.detail,
        )
        return self._verify_status(task, signature, result)

    def _verify_status(
        self, task: BountyTask, signature: str, result: ConfirmationResult
    ) -> PipelineResult:
        delays = [self._policy.settle_delay_seconds]
        if result.error_kind == "blockheight_exceeded":
            delays.extend(
                [self._policy.blockheight_retry_delay_seconds]
                * self._policy.blockheight_retry_count
            )

        checks = 0
        for delay in delays:
            self._sleep(delay)
            checks += 1
            settled = self._settle(task, signature, self._check_status(signature), checks)
            if settled is not None:
                return settled

        return self._final_check(
            task,
            signature,
            checks=checks,
            error=result.detail or None,
            error_kind=result.error_kind,
        )

    def _final_check(
        self,
        task: BountyTask,
        signature: str,
        *,
        checks: int,
        error: str | None,
        error_kind: ConfirmationErrorKind | None = None,
    ) -> PipelineResult:
        # Last status query before an ambiguous outcome is handed to the reporter.
        checks += 1
        settled = self._settle(task, signature, self._check_status(signature), checks)
        if settled is not None:
            return settled

        log_event(
            LOGGER,
            "transaction_confirmation_ambiguous",
            task_id=task.task_id,
            signature=signature,
            status_checks=checks,
            error_kind=error_kind,
        )
        return self._resolve(
            task,
            "ambiguous_success",
            TransactionAttempt(
                signature=signature,
                confirmation_state="confirmation_ambiguous",
                retry_count=checks,
            ),
            error=error,
        )

    def _settle(
        self, task: BountyTask, signature: str, status: SignatureStatus | None, checks: int
    ) -> PipelineResult | None:
        if status in _CONFIRMED_STATUSES:
            return self._resolve(
                task,
                "success",
                TransactionAttempt(
                    signature=signature, confirmation_state="confirmed", retry_count=checks
                ),
            )
        if status == "failed":
            return self._resolve_failure(
                task,
                signature,
                "Transaction failed on-chain",
                retry_count=checks,
            )
        return None

    def _check_status(self, signature: str) -> SignatureStatus | None:
        try:
            return self._network.get_signature_status(signature)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "transaction_status_check_failed",
                signature=signature,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def _resolve_failure(
        self,
        task: BountyTask,
        signature: str | None,
        error: str,
        *,
        retry_count: int = 0,
    ) -> PipelineResult:
        return self._resolve(
            task,
            "failure",
            TransactionAttempt(
                signature=signature, confirmation_state="failed", retry_count=retry_count
            ),
            error=error,
        )

    def _resolve(
        self,
        task: BountyTask,
        outcome: BountyOutcomeStatus,
        attempt: TransactionAttempt,
        *,
        error: str | None = None,
    ) -> PipelineResult:
        log_event(
            LOGGER,
            "transaction_resolved",
            task_id=task.task_id,
            outcome=outcome,
            signature=attempt.signature,
            confirmation_state=attempt.confirmation_state,
            status_checks=attempt.retry_count,
        )
        return PipelineResult(outcome=outcome, attempt=attempt, error=error)
