from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal


ConfirmationState = Literal[
    "signed",
    "submitted",
    "confirmation_pending",
    "confirmed",
    "confirmation_ambiguous",
    "failed",
]
ConfirmationErrorKind = Literal["timeout", "blockheight_exceeded", "rpc_error"]
SignatureStatus = Literal["processed", "confirmed", "finalized", "failed"]
BountyOutcomeStatus = Literal["success", "ambiguous_success", "failure"]


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    issue_url: str
    html_url: str
    created_at: datetime | None


@dataclass(frozen=True)
class IssueDetails:
    number: int
    title: str
    body: str
    html_url: str
    repository_url: str


@dataclass(frozen=True)
class RepositoryDetails:
    full_name: str
    language: str | None


@dataclass(frozen=True)
class BountyCommand:
    amount: Decimal
    token_address: str
    issue_url: str
    requester_login: str
    comment_id: int


@dataclass(frozen=True)
class MarketplaceRequest:
    token_mint: str
    amount: Decimal
    title: str
    content: str
    requirements: str
    tags: tuple[str, ...]
    payer: str
    is_hidden: bool = True

    def to_payload(self) -> dict[str, object]:
        return {
            "token": {
                "mintAddress": self.token_mint,
                "amount": _json_number(self.amount),
            },
            "title": self.title,
            "content": self.content,
            "requirements": self.requirements,
            "tags": list(self.tags),
            "payer": self.payer,
            "isHidden": self.is_hidden,
        }


@dataclass(frozen=True)
class BountyTask:
    task_id: str
    serialized_transaction: str


@dataclass(frozen=True)
class ConfirmationResult:
    status: SignatureStatus | None
    error_kind: ConfirmationErrorKind | None = None
    detail: str = ""

    @property
    def confirmed(self) -> bool:
        return self.status in {"confirmed", "finalized"}


@dataclass(frozen=True)
class TransactionAttempt:
    signature: str | None
    confirmation_state: ConfirmationState
    retry_count: int = 0


@dataclass(frozen=True)
class PipelineResult:
    outcome: BountyOutcomeStatus
    attempt: TransactionAttempt
    error: str | None = None

    @property
    def signature(self) -> str | None:
        return self.attempt.signature


@dataclass(frozen=True)
class BountyOutcome:
    command: BountyCommand
    outcome: BountyOutcomeStatus
    task_id: str | None = None
    signature: str | None = None
    error: str | None = None


def _json_number(value: Decimal) -> int | float:
    # The marketplace API expects a JSON number, not a string.
    if value == value.to_integral_value():
        return int(value)
    return float(value)
