from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional

from app.lib.api_client import supabase_admin
from app.models.manuscript import Manuscript, ManuscriptStatus

logger = logging.getLogger("reviewflow.workflow")

MANUSCRIPTS_TABLE = "manuscripts"


@dataclass
class ManuscriptNotFoundError(Exception):
    manuscript_id: str

    def __str__(self) -> str:
        return f"Manuscript not found: {self.manuscript_id}"


@dataclass
class ConcurrencyConflictError(Exception):
    manuscript_id: str
    expected_revision: Optional[int] = None

    def __str__(self) -> str:
        return f"Concurrent update on manuscript {self.manuscript_id} (revision {self.expected_revision})"


def _extract_rows(resp: Any) -> list[dict[str, Any]]:
    data = getattr(resp, "data", None)
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)


class ManuscriptRepository:
    """
    manuscripts 表的单文档读写。

    中文注释:
    - 一篇稿件 = 一行（聚合根），审稿人名单/meta/决定/提交全部内嵌为 json 列。
    - 写入一律走 compare-and-set：`update ... where id = ? and revision = ?`，
      返回 0 行即视为并发冲突，由调用方重读并重算（不能直接重放旧 payload）。
    """

    def __init__(self, client: Any = None) -> None:
        self.client = client or supabase_admin

    def get(self, manuscript_id: str) -> Manuscript:
        resp = (
            self.client.table(MANUSCRIPTS_TABLE)
            .select("*")
            .eq("id", str(manuscript_id))
            .limit(1)
            .execute()
        )
        rows = _extract_rows(resp)
        if not rows:
            raise ManuscriptNotFoundError(str(manuscript_id))
        return Manuscript.from_row(rows[0])

    def list(
        self,
        *,
        statuses: Optional[Iterable[ManuscriptStatus]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Manuscript]:
        query = self.client.table(MANUSCRIPTS_TABLE).select("*")
        if statuses is not None:
            query = query.in_("status", [ManuscriptStatus(s).value for s in statuses])
        query = query.order("submitted_at", desc=True)
        if limit:
            query = query.range(int(offset), int(offset) + int(limit) - 1)
        return [Manuscript.from_row(row) for row in _extract_rows(query.execute())]

    def iter_pages(
        self,
        *,
        statuses: Optional[Iterable[ManuscriptStatus]] = None,
        page_size: int = 100,
    ) -> Iterator[list[Manuscript]]:
        """
        按 submitted_at 倒序分页读取，直到不足一页为止。

        中文注释:
        - 角色过滤（作者/审稿人）依赖内嵌 json 名单，放在读取之后做；
          调用方逐页过滤，凑够 limit 即停止，避免“先截断再过滤”丢数据。
        """
        size = max(1, int(page_size))
        wanted = list(statuses) if statuses is not None else None
        offset = 0
        while True:
            page = self.list(statuses=wanted, limit=size, offset=offset)
            if page:
                yield page
            if len(page) < size:
                return
            offset += size

    def list_with_pending_outbox(self, *, limit: int) -> list[Manuscript]:
        resp = (
            self.client.table(MANUSCRIPTS_TABLE)
            .select("*")
            .eq("outbox_pending", True)
            .order("updated_at")
            .limit(int(limit))
            .execute()
        )
        return [Manuscript.from_row(row) for row in _extract_rows(resp)]

    def create(self, manuscript: Manuscript) -> Manuscript:
        row = manuscript.to_row()
        resp = self.client.table(MANUSCRIPTS_TABLE).insert(row).execute()
        rows = _extract_rows(resp)
        return Manuscript.from_row(rows[0]) if rows else manuscript

    def compare_and_set(self, manuscript: Manuscript, *, expected_revision: int) -> Manuscript:
        payload = manuscript.to_row()
        payload.pop("id", None)
        payload["revision"] = int(expected_revision) + 1
        resp = (
            self.client.table(MANUSCRIPTS_TABLE)
            .update(payload)
            .eq("id", manuscript.id)
            .eq("revision", int(expected_revision))
            .execute()
        )
        rows = _extract_rows(resp)
        if not rows:
            raise ConcurrencyConflictError(manuscript.id, expected_revision)
        return Manuscript.from_row(rows[0])

    def update_with_retry(
        self,
        manuscript_id: str,
        mutate: Callable[[Manuscript], Any],
        *,
        max_retries: int,
    ) -> Manuscript:
        """
        读-改-写循环：每次冲突都重新读取最新文档并重新执行纯函数 mutate。

        中文注释:
        - “读当前名单”与“提交新状态”之间不能夹杂其他 I/O，mutate 必须是纯内存计算。
        - mutate 抛出的业务异常直接向上传播（不重试）。
        """
        attempts = max(1, int(max_retries))
        last_revision: Optional[int] = None
        for attempt in range(1, attempts + 1):
            current = self.get(manuscript_id)
            draft = current.model_copy(deep=True)
            mutate(draft)
            last_revision = current.revision
            try:
                return self.compare_and_set(draft, expected_revision=current.revision)
            except ConcurrencyConflictError:
                logger.info(
                    "cas conflict on manuscript %s (revision %s), attempt %s/%s",
                    manuscript_id,
                    current.revision,
                    attempt,
                    attempts,
                )
        raise ConcurrencyConflictError(str(manuscript_id), last_revision)
