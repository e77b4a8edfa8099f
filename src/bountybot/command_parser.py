from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import re

from bountybot.config import AuthConfig
from bountybot.models import BountyCommand, IssueComment


_BOUNTY_COMMAND_RE = re.compile(
    r"/bounty\s+(?P<amount>\d+(?:\.\d+)?)\s+(?P<token>[A-Za-z0-9]{32,44})(?![A-Za-z0-9])",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class CommandMatch:
    amount: Decimal
    token_address: str


def match_bounty_command(body: str) -> CommandMatch | None:
    """Find the first ``/bounty <amount> <token>`` command in a comment body.

    Returns ``None`` for text that is not a command, including amounts that are
    zero or fail to parse. Authorization is not checked here.
    """
    match = _BOUNTY_COMMAND_RE.search(body)
    if match is None:
        return None
    try:
        amount = Decimal(match.group("amount"))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return CommandMatch(amount=amount, token_address=match.group("token"))


def parse_bounty_command(comment: IssueComment, auth: AuthConfig) -> BountyCommand | None:
    match = match_bounty_command(comment.body)
    if match is None or not auth.allows(comment.user_login):
        return None
    return BountyCommand(
        amount=match.amount,
        token_address=match.token_address,
        issue_url=comment.issue_url,
        requester_login=comment.user_login,
        comment_id=comment.comment_id,
    )


def is_unauthorized_command(comment: IssueComment, auth: AuthConfig) -> bool:
    """True when the comment holds a well-formed command from a login not on the allow-list."""
    return match_bounty_command(comment.body) is not None and not auth.allows(comment.user_login)
