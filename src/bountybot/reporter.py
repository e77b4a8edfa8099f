from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Protocol

from bountybot.github_gateway import issue_target_from_url
from bountybot.models import BountyCommand, BountyOutcome, IssueComment
from bountybot.observability import log_event, warn_event


LOGGER = logging.getLogger("bountybot.reporter")

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
_TOKEN_LABELS = {
    WRAPPED_SOL_MINT: "SOL",
    USDC_MINT: "USDC",
}


class CommentPoster(Protocol):
    def post_issue_comment(self, owner: str, repo: str, issue_number: int, body: str) -> None: ...


def token_label(token_address: str) -> str:
    return _TOKEN_LABELS.get(token_address, "tokens")


def format_amount(command: BountyCommand) -> str:
    return f"{command.amount} {token_label(command.token_address)}"


class OutcomeReporter:
    """Posts the single result comment for a processed bounty command.

    Posting is best-effort: failures are logged and swallowed, never retried.
    """

    def __init__(
        self,
        poster: CommentPoster,
        *,
        task_url: Callable[[str], str],
        explorer_url: Callable[[str], str],
    ) -> None:
        self._poster = poster
        self._task_url = task_url
        self._explorer_url = explorer_url

    def report(self, outcome: BountyOutcome) -> bool:
        return self._post(outcome.command.issue_url, self.render(outcome), kind=outcome.outcome)

    def report_unauthorized(self, comment: IssueComment) -> bool:
        body = (
            f"⚠️ @{comment.user_login} is not authorized to create bounties. "
            "Ask a maintainer to add you to the bounty allow-list."
        )
        return self._post(comment.issue_url, body, kind="unauthorized")

    def render(self, outcome: BountyOutcome) -> str:
        if outcome.outcome == "success":
            return self._render_success(outcome)
        if outcome.outcome == "ambiguous_success":
            return self._render_ambiguous(outcome)
        return self._render_failure(outcome)

    def _render_success(self, outcome: BountyOutcome) -> str:
        lines = ["✅ Bounty created successfully!", ""]
        if outcome.task_id:
            lines.append(f"Bounty ID: {outcome.task_id}")
        lines.extend(
            [
                f"Amount: {format_amount(outcome.command)}",
                "Transaction confirmed.",
                "",
                "🔗 Links:",
                *self._link_lines(outcome),
                "",
                "Thank you for contributing to the project!",
            ]
        )
        return "\n".join(lines)

    def _render_ambiguous(self, outcome: BountyOutcome) -> str:
        lines = ["✅ Bounty transaction submitted (confirmation pending)", ""]
        if outcome.task_id:
            lines.append(f"Bounty ID: {outcome.task_id}")
        lines.extend(
            [
                f"Amount: {format_amount(outcome.command)}",
                "Transaction submitted but confirmation is pending. "
                "You can check its status using the transaction link below.",
                "",
                "🔗 Links:",
                *self._link_lines(outcome),
                "",
                "Please verify the transaction status using the links above.",
            ]
        )
        return "\n".join(lines)

    def _render_failure(self, outcome: BountyOutcome) -> str:
        error = outcome.error or "Unknown error"
        lines = [
            f"❌ Issue with bounty creation: {error}",
            "",
            f"Amount: {format_amount(outcome.command)}",
        ]
        links = self._link_lines(outcome)
        if outcome.signature:
            lines.extend(
                [
                    "",
                    "Transaction was sent but did not succeed. "
                    "The bounty may still need manual reconciliation:",
                    *links,
                ]
            )
        elif links:
            lines.extend(
                [
                    "",
                    "The bounty task was prepared but no transaction was sent:",
                    *links,
                ]
            )
        return "\n".join(lines)

    def _link_lines(self, outcome: BountyOutcome) -> list[str]:
        lines: list[str] = []
        if outcome.task_id:
            lines.append(
                f"- Bounty: [View on Gib.work]({self._task_url(outcome.task_id)}) "
                "(Private bounty, only accessible via this link)"
            )
        if outcome.signature:
            lines.append(
                "- Transaction: "
                f"[View on Solana Explorer]({self._explorer_url(outcome.signature)})"
            )
        return lines

    def _post(self, issue_url: str, body: str, *, kind: str) -> bool:
        try:
            owner, repo, issue_number = issue_target_from_url(issue_url)
            self._poster.post_issue_comment(owner, repo, issue_number, body)
        except Exception as exc:  # noqa: BLE001
            warn_event(
                LOGGER,
                "report_post_failed",
                issue_url=issue_url,
                kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        log_event(LOGGER, "report_posted", issue_url=issue_url, kind=kind)
        return True
