"""
审稿意见汇总（两个独立的纯函数）

中文注释:
- aggregate_recommendation：给编辑看的“展示用”结论，取众数，平票时取输入中最先出现者；
  调用方必须先按 submitted_at 升序排序。
- evaluate_quorum：真正驱动稿件状态流转的规则，按优先级（全员接收 > 任一拒稿 > 任一修改）。
- 两者看起来相似但平票语义不同，不要合并。
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Optional

from app.models.manuscript import WorkflowEvent
from app.models.reviews import REVISION_RECOMMENDATIONS, Review

PENDING = "pending"


def _submitted(reviews: Iterable[Review]) -> list[Review]:
    return [r for r in reviews or [] if r.status == "submitted" and r.recommendation]


def aggregate_recommendation(reviews: Iterable[Review]) -> str:
    """
    众数推荐；没有已提交的审稿时返回 PENDING。

    >>> aggregate_recommendation([])
    'pending'
    """
    recs = [r.recommendation for r in _submitted(reviews)]
    if not recs:
        return PENDING
    counts = Counter(recs)
    best = max(counts.values())
    for rec in recs:
        if counts[rec] == best:
            return str(rec)
    return PENDING


def evaluate_quorum(reviews: Iterable[Review], *, quorum: int = 2) -> Optional[WorkflowEvent]:
    """
    成团判定：当前轮次已提交审稿数 >= quorum 时返回要触发的事件，否则返回 None。
    """
    recs = [r.recommendation for r in _submitted(reviews)]
    if len(recs) < max(1, int(quorum)):
        return None
    if all(rec == "accept" for rec in recs):
        return WorkflowEvent.QUORUM_ALL_ACCEPT
    if any(rec == "reject" for rec in recs):
        return WorkflowEvent.QUORUM_ANY_REJECT
    if any(rec in REVISION_RECOMMENDATIONS for rec in recs):
        return WorkflowEvent.QUORUM_ANY_REVISION
    return None


def summarize_reviews(reviews: Iterable[Review]) -> dict:
    """编辑端审稿汇总：展示结论 + 各推荐计数 + 平均分"""
    submitted = _submitted(reviews)
    counts = Counter(str(r.recommendation) for r in submitted)
    scores = [r.overall_score for r in submitted if r.overall_score is not None]
    return {
        "decision": aggregate_recommendation(submitted),
        "submitted_count": len(submitted),
        "recommendation_counts": dict(counts),
        "average_score": round(sum(scores) / len(scores), 2) if scores else None,
    }
