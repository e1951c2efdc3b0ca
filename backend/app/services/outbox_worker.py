"""
Notification outbox worker

中文注释:
1. 工作流写入状态时，把 `status_changed` 事件放进同一文档的 outbox（同一次原子提交）。
2. 本 worker 由 cron 调用：逐稿件取出待投递事件 -> 交给各 StatusTransitionTrigger -> CAS 确认移除。
3. 投递语义为 at-least-once：确认失败会导致下一轮重复通知（可接受），但不会丢失。
4. 所有异常记录日志后吞掉：通知是“提示性”的，不能阻塞或回滚状态变更。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from app.core.config import WorkflowConfig
from app.models.manuscript import (
    ADMIN_DECISION_STATUSES,
    Manuscript,
    ManuscriptStatus,
    OutboxEvent,
    normalize_status,
)
from app.services.identity_service import IdentityService
from app.services.manuscript_repository import ConcurrencyConflictError, ManuscriptRepository
from app.services.notification_service import NotificationService

logger = logging.getLogger("reviewflow.outbox")


@dataclass(frozen=True)
class TriggerMessage:
    type: str
    title: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusTransitionTrigger:
    """
    只在“状态真的变化 且 新状态命中 watched”时触发；无关字段的编辑不会重复通知。
    """

    name: str
    watched: frozenset[ManuscriptStatus]
    recipients: Callable[[Manuscript], list[str]]
    build: Callable[[Manuscript, OutboxEvent], TriggerMessage]

    def matches(self, from_status: Optional[ManuscriptStatus], to_status: Optional[ManuscriptStatus]) -> bool:
        if to_status is None or from_status == to_status:
            return False
        return to_status in self.watched


def admin_review_trigger(identity: IdentityService, watched_status: str | ManuscriptStatus) -> StatusTransitionTrigger:
    """watched 状态（默认 Back to Admin）-> 当前全部管理员，高优先级"""
    watched = normalize_status(watched_status) or ManuscriptStatus.BACK_TO_ADMIN

    def _build(ms: Manuscript, event: OutboxEvent) -> TriggerMessage:
        return TriggerMessage(
            type="manuscript_status_update",
            title=f"Manuscript ready: {event.to_status.value}",
            message=f'"{ms.title}" moved from {event.from_status.value} to {event.to_status.value}.',
            metadata={
                "manuscript_id": ms.id,
                "from_status": event.from_status.value,
                "to_status": event.to_status.value,
                "event_id": event.id,
                "priority": "high",
            },
        )

    return StatusTransitionTrigger(
        name="admin_review",
        watched=frozenset({watched}),
        recipients=lambda _ms: identity.list_admin_ids(),
        build=_build,
    )


def author_decision_trigger() -> StatusTransitionTrigger:
    """管理员裁决（修回/录用/拒稿）-> 作者与共同作者"""

    def _build(ms: Manuscript, event: OutboxEvent) -> TriggerMessage:
        return TriggerMessage(
            type="manuscript_decision",
            title=f"Decision on your manuscript: {event.to_status.value}",
            message=f'An editorial decision was recorded for "{ms.title}": {event.to_status.value}.',
            metadata={
                "manuscript_id": ms.id,
                "to_status": event.to_status.value,
                "version_number": ms.version_number,
                "event_id": event.id,
            },
        )

    return StatusTransitionTrigger(
        name="author_decision",
        watched=frozenset(ADMIN_DECISION_STATUSES),
        recipients=lambda ms: list(dict.fromkeys([ms.submitter_id, *ms.co_author_ids])),
        build=_build,
    )


@dataclass
class DrainReport:
    manuscripts: int = 0
    delivered: int = 0
    failed: int = 0
    dropped: int = 0
    notifications_created: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "manuscripts": self.manuscripts,
            "delivered": self.delivered,
            "failed": self.failed,
            "dropped": self.dropped,
            "notifications_created": self.notifications_created,
        }


class NotificationOutboxWorker:
    def __init__(
        self,
        repo: ManuscriptRepository,
        notifications: NotificationService,
        triggers: Iterable[StatusTransitionTrigger],
        config: Optional[WorkflowConfig] = None,
    ) -> None:
        self.repo = repo
        self.notifications = notifications
        self.triggers = list(triggers)
        self.config = config or WorkflowConfig.from_env()

    @classmethod
    def with_default_triggers(
        cls,
        repo: ManuscriptRepository,
        notifications: NotificationService,
        identity: IdentityService,
        config: Optional[WorkflowConfig] = None,
    ) -> "NotificationOutboxWorker":
        cfg = config or WorkflowConfig.from_env()
        triggers = [admin_review_trigger(identity, cfg.watched_status), author_decision_trigger()]
        return cls(repo, notifications, triggers, cfg)

    def handle_transition(self, ms: Manuscript, event: OutboxEvent) -> int:
        """
        对单个事件执行全部匹配的 trigger；任一 trigger 失败则整体抛出，事件留待重试。
        """
        created = 0
        failures: list[str] = []
        for trigger in self.triggers:
            if not trigger.matches(event.from_status, event.to_status):
                continue
            try:
                recipients = trigger.recipients(ms)
                if not recipients:
                    logger.info("trigger %s: no recipients for manuscript %s", trigger.name, ms.id)
                    continue
                msg = trigger.build(ms, event)
                result = self.notifications.create_bulk(
                    recipient_ids=recipients,
                    type=msg.type,
                    title=msg.title,
                    message=msg.message,
                    metadata=msg.metadata,
                    created_at_client=event.occurred_at,
                )
                created += len(result.created)
            except Exception as e:
                logger.exception("trigger %s failed for event %s: %s", trigger.name, event.id, e)
                failures.append(trigger.name)
        if failures:
            raise RuntimeError(f"triggers failed: {failures}")
        return created

    def _ack(self, manuscript_id: str, delivered: set[str], failed: set[str]) -> list[str]:
        dropped: list[str] = []
        max_attempts = self.config.outbox_max_attempts

        def mutate(ms: Manuscript) -> None:
            dropped.clear()
            keep: list[OutboxEvent] = []
            for event in ms.outbox:
                if event.id in delivered:
                    continue
                if event.id in failed:
                    event.attempts += 1
                    if event.attempts >= max_attempts:
                        dropped.append(event.id)
                        continue
                keep.append(event)
            ms.outbox = keep

        self.repo.update_with_retry(manuscript_id, mutate, max_retries=self.config.max_cas_retries)
        return dropped

    def drain(self, *, limit: Optional[int] = None) -> DrainReport:
        report = DrainReport()
        batch = int(limit or self.config.outbox_batch_size)
        try:
            manuscripts = self.repo.list_with_pending_outbox(limit=batch)
        except Exception as e:
            logger.exception("outbox scan failed: %s", e)
            return report

        for ms in manuscripts:
            if not ms.outbox:
                continue
            report.manuscripts += 1
            delivered: set[str] = set()
            failed: set[str] = set()
            for event in ms.outbox:
                try:
                    report.notifications_created += self.handle_transition(ms, event)
                    delivered.add(event.id)
                except Exception:
                    failed.add(event.id)
            try:
                dropped = self._ack(ms.id, delivered, failed)
            except ConcurrencyConflictError as e:
                # 未确认的事件下一轮会重复投递（at-least-once）
                logger.warning("outbox ack conflict for manuscript %s: %s", ms.id, e)
                continue
            except Exception as e:
                logger.exception("outbox ack failed for manuscript %s: %s", ms.id, e)
                continue
            report.delivered += len(delivered)
            report.failed += len(failed) - len(dropped)
            report.dropped += len(dropped)
            for event_id in dropped:
                logger.error("outbox event %s on manuscript %s dropped after max attempts", event_id, ms.id)
        return report
