from __future__ import annotations

import pytest
from solders.keypair import Keypair

from bountybot.config import SolanaConfig
from bountybot.models import BountyTask, ConfirmationResult, SignatureStatus
from bountybot.transaction_pipeline import TransactionPipeline, TransactionPolicy


TASK = BountyTask(task_id="task-1", serialized_transaction="AQID")
SIGNATURE = "5igSig"


class FakeNetwork:
    def __init__(
        self,
        *,
        confirm_result: ConfirmationResult | None = None,
        statuses: list[SignatureStatus | None | Exception] | None = None,
        sign_error: Exception | None = None,
        submit_error: Exception | None = None,
        confirm_error: Exception | None = None,
    ) -> None:
        self.confirm_result = confirm_result or ConfirmationResult(status="confirmed")
        self.statuses = list(statuses or [])
        self.sign_error = sign_error
        self.submit_error = submit_error
        self.confirm_error = confirm_error
        self.calls: list[tuple[str, object]] = []

    def sign(self, serialized_transaction: str, keypair: Keypair) -> bytes:
        _ = keypair
        self.calls.append(("sign", serialized_transaction))
        if self.sign_error is not None:
            raise self.sign_error
        return b"signed"

    def submit(self, signed_transaction: bytes, *, max_retries: int) -> str:
        self.calls.append(("submit", max_retries))
        if self.submit_error is not None:
            raise self.submit_error
        assert signed_transaction == b"signed"
        return SIGNATURE

    def confirm(self, signature: str, *, timeout_seconds: float) -> ConfirmationResult:
        self.calls.append(("confirm", timeout_seconds))
        assert signature == SIGNATURE
        if self.confirm_error is not None:
            raise self.confirm_error
        return self.confirm_result

    def get_signature_status(self, signature: str) -> SignatureStatus | None:
        self.calls.append(("status", signature))
        value = self.statuses.pop(0) if self.statuses else None
        if isinstance(value, Exception):
            raise value
        return value

    def count(self, name: str) -> int:
        return sum(1 for call_name, _ in self.calls if call_name == name)


def _pipeline(network: FakeNetwork, sleeps: list[float]) -> TransactionPipeline:
    return TransactionPipeline(
        network,
        Keypair(),
        TransactionPolicy(
            max_send_retries=5,
            confirm_timeout_seconds=60.0,
            settle_delay_seconds=5.0,
            blockheight_retry_count=3,
            blockheight_retry_delay_seconds=2.0,
        ),
        sleep=sleeps.append,
    )


def test_confirmed_transaction_is_success() -> None:
    network = FakeNetwork()
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "success"
    assert result.signature == SIGNATURE
    assert result.attempt.confirmation_state == "confirmed"
    assert result.attempt.retry_count == 0
    assert result.error is None
    assert sleeps == []
    assert ("submit", 5) in network.calls
    assert ("confirm", 60.0) in network.calls


def test_timeout_then_confirmed_status_is_success_with_same_signature() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="timeout", detail="slow"),
        statuses=["confirmed"],
    )
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "success"
    assert result.signature == SIGNATURE
    assert result.attempt.retry_count == 1
    assert sleeps == [5.0]


def test_finalized_status_counts_as_confirmed() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="rpc_error"),
        statuses=["finalized"],
    )

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "success"


def test_timeout_without_confirmation_is_ambiguous_success() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(
            status=None, error_kind="timeout", detail="Confirmation timeout after 60s"
        ),
        statuses=["processed"],
    )
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "ambiguous_success"
    assert result.signature == SIGNATURE
    assert result.attempt.confirmation_state == "confirmation_ambiguous"
    assert result.attempt.retry_count == 2
    assert result.error == "Confirmation timeout after 60s"
    assert network.count("status") == 2
    assert sleeps == [5.0]


def test_transaction_landing_after_first_status_check_is_success() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="timeout", detail="slow"),
        statuses=[None, "confirmed"],
    )
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "success"
    assert result.signature == SIGNATURE
    assert result.attempt.confirmation_state == "confirmed"
    assert result.attempt.retry_count == 2
    assert result.error is None
    assert network.count("status") == 2
    assert sleeps == [5.0]


def test_final_status_check_can_report_on_chain_failure() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="timeout"),
        statuses=["processed", "failed"],
    )

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "failure"
    assert result.signature == SIGNATURE
    assert result.error == "Transaction failed on-chain"
    assert result.attempt.retry_count == 2


def test_blockheight_exceeded_gets_extra_status_checks() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="blockheight_exceeded"),
        statuses=[None, None, "confirmed"],
    )
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "success"
    assert result.attempt.retry_count == 3
    assert sleeps == [5.0, 2.0, 2.0]


def test_blockheight_exceeded_exhausts_retries_as_ambiguous() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="blockheight_exceeded"),
    )
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "ambiguous_success"
    assert result.signature == SIGNATURE
    assert result.attempt.retry_count == 5
    assert result.error is None
    assert network.count("status") == 5
    assert sleeps == [5.0, 2.0, 2.0, 2.0]


def test_status_check_errors_are_treated_as_unknown() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="blockheight_exceeded"),
        statuses=[ConnectionError("rpc down"), "confirmed"],
    )

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "success"
    assert result.attempt.retry_count == 2


def test_sign_error_is_failure_without_signature() -> None:
    network = FakeNetwork(sign_error=ValueError("bad transaction"))

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "failure"
    assert result.signature is None
    assert result.attempt.confirmation_state == "failed"
    assert result.error == "Failed to sign transaction: bad transaction"
    assert network.count("submit") == 0


def test_submit_error_is_failure_without_signature() -> None:
    network = FakeNetwork(submit_error=RuntimeError("Transaction submission failed: rejected"))

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "failure"
    assert result.signature is None
    assert result.error == "Transaction submission failed: rejected"
    assert network.count("confirm") == 0


def test_on_chain_error_is_failure_with_signature() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status="failed", detail="InsufficientFunds"),
    )

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "failure"
    assert result.signature == SIGNATURE
    assert result.attempt.confirmation_state == "failed"
    assert result.error == "Transaction failed on-chain: InsufficientFunds"


def test_failed_status_during_fallback_is_failure_with_signature() -> None:
    network = FakeNetwork(
        confirm_result=ConfirmationResult(status=None, error_kind="timeout"),
        statuses=["failed"],
    )

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "failure"
    assert result.signature == SIGNATURE
    assert result.attempt.retry_count == 1


def test_unexpected_confirm_crash_keeps_signature() -> None:
    network = FakeNetwork(confirm_error=RuntimeError("executor shut down"))

    result = _pipeline(network, []).execute(TASK)

    assert result.outcome == "ambiguous_success"
    assert result.signature == SIGNATURE
    assert result.error == "Confirmation could not be completed: executor shut down"
    assert network.count("status") == 1


def test_confirm_crash_is_rescued_by_final_status_check() -> None:
    network = FakeNetwork(
        confirm_error=RuntimeError("executor shut down"),
        statuses=["finalized"],
    )
    sleeps: list[float] = []

    result = _pipeline(network, sleeps).execute(TASK)

    assert result.outcome == "success"
    assert result.signature == SIGNATURE
    assert result.attempt.retry_count == 1
    assert sleeps == []


@pytest.mark.parametrize("retry_count", [0, 1])
def test_policy_from_config(retry_count: int) -> None:
    policy = TransactionPolicy.from_config(
        SolanaConfig(
            max_send_retries=2,
            confirm_timeout_seconds=30.0,
            settle_delay_seconds=1.0,
            blockheight_retry_count=retry_count,
            blockheight_retry_delay_seconds=4.0,
        )
    )

    assert policy == TransactionPolicy(
        max_send_retries=2,
        confirm_timeout_seconds=30.0,
        settle_delay_seconds=1.0,
        blockheight_retry_count=retry_count,
        blockheight_retry_delay_seconds=4.0,
    )
