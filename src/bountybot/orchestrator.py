from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import logging
import threading
import time
from typing import Protocol

from bountybot.bounty_request import build_marketplace_request
from bountybot.command_parser import is_unauthorized_command, parse_bounty_command
from bountybot.config import AppConfig, RepoConfig
from bountybot.models import (
    BountyCommand,
    BountyOutcome,
    BountyTask,
    IssueComment,
    IssueDetails,
    MarketplaceRequest,
    PipelineResult,
    RepositoryDetails,
)
from bountybot.observability import log_event, warn_event
from bountybot.registry import ProcessedCommentRegistry
from bountybot.reporter import OutcomeReporter


LOGGER = logging.getLogger("bountybot.orchestrator")


class CommentSource(Protocol):
    def list_recent_comments(self, owner: str, repo: str) -> list[IssueComment]: ...

    def get_issue(self, issue_url: str) -> IssueDetails: ...

    def get_repository(self, repo_url: str) -> RepositoryDetails: ...


class TaskMarketplace(Protocol):
    def create_task(self, request: MarketplaceRequest) -> BountyTask: ...


class BountyPipeline(Protocol):
    def execute(self, task: BountyTask) -> PipelineResult: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BountyOrchestrator:
    """Polls configured repositories and processes bounty commands one at a time.

    Only one poll tick runs at a time; a tick requested while another is in
    progress is skipped. Within a tick every command is resolved and reported
    before the next comment is looked at.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: CommentSource,
        marketplace: TaskMarketplace,
        pipeline: BountyPipeline,
        reporter: OutcomeReporter,
        registry: ProcessedCommentRegistry,
        payer: str,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._github = github
        self._marketplace = marketplace
        self._pipeline = pipeline
        self._reporter = reporter
        self._registry = registry
        self._payer = payer
        self._clock = clock
        self._sleep = sleep
        self._tick_lock = threading.Lock()
        self._retention = timedelta(seconds=config.runtime.processed_retention_seconds)
        # Registry entries outlive the created_at cutoff so a lagging local clock
        # cannot reopen a comment whose id was already purged.
        self._purge_after = self._retention + timedelta(
            seconds=config.runtime.clock_skew_margin_seconds
        )

    def run(self, *, once: bool) -> None:
        cleanup_interval = timedelta(seconds=self._config.runtime.cleanup_interval_seconds)
        last_purge_at = self._clock()
        log_event(
            LOGGER,
            "bot_started",
            once=once,
            repo_count=len(self._config.repos),
            allowed_user_count=len(self._config.auth.allowed_users),
        )
        while True:
            self.poll_once()
            if once:
                return

            now = self._clock()
            if now - last_purge_at >= cleanup_interval:
                self.purge_processed(now)
                last_purge_at = now
            self._sleep(self._config.runtime.poll_interval_seconds)

    def poll_once(self) -> bool:
        if not self._tick_lock.acquire(blocking=False):
            log_event(LOGGER, "poll_skipped", reason="previous_tick_running")
            return False
        try:
            log_event(LOGGER, "poll_started", repo_count=len(self._config.repos))
            for repo in self._config.repos:
                try:
                    self._poll_repo(repo)
                except Exception as exc:  # noqa: BLE001
                    warn_event(
                        LOGGER,
                        "repo_poll_failed",
                        repo_full_name=repo.full_name,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            log_event(LOGGER, "poll_completed", processed_comment_count=len(self._registry))
            return True
        finally:
            self._tick_lock.release()

    def purge_processed(self, now: datetime | None = None) -> int:
        return self._registry.purge_older_than(now or self._clock(), self._purge_after)

    def process_command(self, command: BountyCommand) -> BountyOutcome:
        log_event(
            LOGGER,
            "bounty_command_detected",
            comment_id=command.comment_id,
            requester=command.requester_login,
            amount=command.amount,
            token=command.token_address,
            issue_url=command.issue_url,
        )
        task: BountyTask | None = None
        try:
            issue = self._github.get_issue(command.issue_url)
            repository = self._github.get_repository(issue.repository_url)
            request = build_marketplace_request(
                command,
                issue,
                repository,
                payer=self._payer,
                requirements=self._config.marketplace.requirements,
            )
            task = self._marketplace.create_task(request)
            result = self._pipeline.execute(task)
            outcome = BountyOutcome(
                command=command,
                outcome=result.outcome,
                task_id=task.task_id,
                signature=result.signature,
                error=result.error,
            )
        except Exception as exc:  # noqa: BLE001
            outcome = BountyOutcome(
                command=command,
                outcome="failure",
                task_id=task.task_id if task is not None else None,
                error=str(exc) or type(exc).__name__,
            )

        log_event(
            LOGGER,
            "bounty_resolved",
            comment_id=command.comment_id,
            outcome=outcome.outcome,
            task_id=outcome.task_id,
            signature=outcome.signature,
            error=outcome.error,
        )
        self._reporter.report(outcome)
        return outcome

    def _poll_repo(self, repo: RepoConfig) -> None:
        comments = self._github.list_recent_comments(repo.owner, repo.name)
        log_event(
            LOGGER,
            "comments_fetched",
            repo_full_name=repo.full_name,
            comment_count=len(comments),
        )
        for comment in sorted(comments, key=lambda item: item.comment_id):
            self._handle_comment(comment)

    def _handle_comment(self, comment: IssueComment) -> None:
        now = self._clock()
        # Anything older than the retention window may already have been purged
        # from the registry, so it must not be treated as new.
        if comment.created_at is not None and comment.created_at < now - self._retention:
            return
        if not self._registry.claim(comment.comment_id, now):
            return

        command = parse_bounty_command(comment, self._config.auth)
        if command is not None:
            self.process_command(command)
            return
        if is_unauthorized_command(comment, self._config.auth):
            log_event(
                LOGGER,
                "bounty_command_unauthorized",
                comment_id=comment.comment_id,
                requester=comment.user_login,
                issue_url=comment.issue_url,
            )
            self._reporter.report_unauthorized(comment)
