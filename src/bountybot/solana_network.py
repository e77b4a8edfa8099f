from __future__ import annotations

import base64
import binascii
import logging
import queue
from threading import Thread
from typing import Protocol

from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed, Processed
from solana.rpc.core import TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from bountybot.config import DEFAULT_EXPLORER_URL
from bountybot.models import ConfirmationResult, SignatureStatus
from bountybot.observability import log_event


LOGGER = logging.getLogger("bountybot.solana_network")
_CONFIRM_POLL_SECONDS = 0.5


class SignError(RuntimeError):
    """The marketplace transaction could not be decoded or signed by the wallet."""


class SubmitError(RuntimeError):
    """The RPC node rejected the signed transaction; no signature exists."""


class _StatusLike(Protocol):
    err: object
    confirmation_status: TransactionConfirmationStatus | None


class SolanaNetwork:
    """Thin wrapper around the Solana RPC client used by the transaction pipeline.

    ``confirm`` never raises: every failure is classified into a
    ``ConfirmationResult.error_kind`` so callers can branch on a typed value.
    """

    def __init__(
        self,
        client: Client,
        *,
        explorer_url: str = DEFAULT_EXPLORER_URL,
    ) -> None:
        self._client = client
        self._explorer_url = explorer_url

    def explorer_url(self, signature: str) -> str:
        return self._explorer_url.format(signature=signature)

    def sign(self, serialized_transaction: str, keypair: Keypair) -> bytes:
        try:
            raw = base64.b64decode(serialized_transaction, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SignError(f"Transaction is not valid base64: {exc}") from exc
        try:
            transaction = VersionedTransaction.from_bytes(raw)
        except Exception as exc:  # noqa: BLE001
            raise SignError(f"Transaction could not be deserialized: {exc}") from exc

        message = transaction.message
        required = message.header.num_required_signatures
        signer_keys = list(message.account_keys)[:required]
        wallet = keypair.pubkey()
        if wallet not in signer_keys:
            raise SignError(f"Wallet {wallet} is not a required signer of this transaction")

        # Other signers may have pre-signed; only the wallet's slot is replaced.
        signatures = list(transaction.signatures)
        while len(signatures) < required:
            signatures.append(Signature.default())
        signatures[signer_keys.index(wallet)] = keypair.sign_message(to_bytes_versioned(message))
        signed = VersionedTransaction.populate(message, signatures)
        log_event(LOGGER, "transaction_signed", signer=str(wallet), signer_count=required)
        return bytes(signed)

    def submit(self, signed_transaction: bytes, *, max_retries: int) -> str:
        try:
            response = self._client.send_raw_transaction(
                signed_transaction,
                opts=TxOpts(
                    skip_confirmation=True,
                    skip_preflight=False,
                    preflight_commitment=Processed,
                    max_retries=max_retries,
                ),
            )
        except Exception as exc:  # noqa: BLE001
            raise SubmitError(f"Transaction submission failed: {exc}") from exc
        signature = str(response.value)
        log_event(LOGGER, "transaction_submitted", signature=signature, max_retries=max_retries)
        return signature

    def confirm(self, signature: str, *, timeout_seconds: float) -> ConfirmationResult:
        """Wait for ``confirmed`` commitment, giving up after ``timeout_seconds``.

        Each call waits on its own daemon thread. Giving up does not cancel the
        in-flight RPC wait, and an abandoned wait never delays a later call.
        """
        results: queue.Queue[ConfirmationResult] = queue.Queue(maxsize=1)
        worker = Thread(
            target=lambda: results.put(self._confirm_blocking(signature)),
            name="solana-confirm",
            daemon=True,
        )
        worker.start()
        try:
            return results.get(timeout=timeout_seconds)
        except queue.Empty:
            return ConfirmationResult(
                status=None,
                error_kind="timeout",
                detail=f"Confirmation timeout after {timeout_seconds:g}s",
            )

    def get_signature_status(self, signature: str) -> SignatureStatus | None:
        response = self._client.get_signature_statuses(
            [Signature.from_string(signature)], search_transaction_history=True
        )
        values = response.value
        if not values or values[0] is None:
            return None
        return _status_from(values[0])

    def _confirm_blocking(self, signature: str) -> ConfirmationResult:
        try:
            latest = self._client.get_latest_blockhash(Confirmed).value
            response = self._client.confirm_transaction(
                Signature.from_string(signature),
                Confirmed,
                sleep_seconds=_CONFIRM_POLL_SECONDS,
                last_valid_block_height=latest.last_valid_block_height,
            )
        except TransactionExpiredBlockheightExceededError as exc:
            return ConfirmationResult(
                status=None, error_kind="blockheight_exceeded", detail=str(exc)
            )
        except UnconfirmedTxError as exc:
            return ConfirmationResult(status=None, error_kind="timeout", detail=str(exc))
        except Exception as exc:  # noqa: BLE001
            return ConfirmationResult(
                status=None, error_kind="rpc_error", detail=f"{type(exc).__name__}: {exc}"
            )

        values = response.value
        if not values or values[0] is None:
            return ConfirmationResult(
                status=None, error_kind="rpc_error", detail="Confirmation returned no status"
            )
        status = _status_from(values[0])
        detail = str(values[0].err) if status == "failed" else ""
        return ConfirmationResult(status=status, detail=detail)


def _status_from(status: _StatusLike) -> SignatureStatus:
    if status.err is not None:
        return "failed"
    if status.confirmation_status == TransactionConfirmationStatus.Finalized:
        return "finalized"
    if status.confirmation_status == TransactionConfirmationStatus.Confirmed:
        return "confirmed"
    return "processed"
