from __future__ import annotations

from decimal import Decimal

from bountybot.models import BountyCommand, IssueDetails, MarketplaceRequest, RepositoryDetails


_EMPTY_CONTENT = "No description provided"
_UNKNOWN_LANGUAGE_TAG = "unknown"


class AmountPrecisionError(ValueError):
    """The amount would be rounded when sent as a JSON number."""


def build_marketplace_request(
    command: BountyCommand,
    issue: IssueDetails,
    repository: RepositoryDetails,
    *,
    payer: str,
    requirements: str,
) -> MarketplaceRequest:
    if not _fits_json_number(command.amount):
        raise AmountPrecisionError(
            f"Amount {command.amount} has more decimal places than the marketplace accepts"
        )
    return MarketplaceRequest(
        token_mint=command.token_address,
        amount=command.amount,
        title=issue.title,
        content=issue.body if issue.body.strip() else _EMPTY_CONTENT,
        requirements=requirements,
        tags=(repository.language or _UNKNOWN_LANGUAGE_TAG,),
        payer=payer,
        is_hidden=True,
    )


def _fits_json_number(amount: Decimal) -> bool:
    """True when the payload number carries exactly ``amount``.

    Integral amounts are sent as ints; anything else goes out as a double.
    """
    if amount == amount.to_integral_value():
        return True
    return Decimal(repr(float(amount))) == amount
