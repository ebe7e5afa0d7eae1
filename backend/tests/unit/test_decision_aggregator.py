from app.models.manuscript import WorkflowEvent
from app.models.reviews import Review, ReviewScores
from app.services.decision_aggregator import (
    PENDING,
    aggregate_recommendation,
    evaluate_quorum,
    summarize_reviews,
)


def _reviews(*recs: str, status: str = "submitted") -> list[Review]:
    return [
        Review(manuscript_id="ms-1", reviewer_id=f"r{i}", recommendation=rec, status=status)
        for i, rec in enumerate(recs)
    ]


def test_aggregate_empty_is_pending():
    assert aggregate_recommendation([]) == PENDING


def test_aggregate_ignores_in_progress_reviews():
    assert aggregate_recommendation(_reviews("reject", status="in_progress")) == PENDING


def test_aggregate_picks_mode():
    assert aggregate_recommendation(_reviews("accept", "accept", "reject")) == "accept"


def test_aggregate_tie_goes_to_first_seen():
    assert aggregate_recommendation(_reviews("minor_revisions", "reject")) == "minor_revisions"
    assert aggregate_recommendation(_reviews("reject", "minor_revisions")) == "reject"


def test_quorum_not_reached():
    assert evaluate_quorum(_reviews("reject")) is None
    assert evaluate_quorum(_reviews("reject", status="in_progress") * 3) is None
    assert evaluate_quorum(_reviews("accept", "accept"), quorum=3) is None


def test_quorum_priority_order():
    assert evaluate_quorum(_reviews("accept", "accept")) == WorkflowEvent.QUORUM_ALL_ACCEPT
    assert evaluate_quorum(_reviews("reject", "minor_revisions")) == WorkflowEvent.QUORUM_ANY_REJECT
    assert evaluate_quorum(_reviews("accept", "reject", "accept")) == WorkflowEvent.QUORUM_ANY_REJECT
    assert evaluate_quorum(_reviews("accept", "major_revisions")) == WorkflowEvent.QUORUM_ANY_REVISION


def test_mode_and_priority_disagree_on_mixed_feedback():
    reviews = _reviews("reject", "minor_revisions", "minor_revisions")
    assert aggregate_recommendation(reviews) == "minor_revisions"
    assert evaluate_quorum(reviews) == WorkflowEvent.QUORUM_ANY_REJECT


def test_summarize_reviews():
    reviews = _reviews("accept", "minor_revisions")
    reviews[0].set_scores(ReviewScores(originality=5, methodology=5, contribution=5, clarity=5, references=5))
    reviews[1].set_scores(ReviewScores(originality=3, methodology=3, contribution=3, clarity=3, references=3))

    summary = summarize_reviews(reviews + _reviews("reject", status="in_progress"))

    assert summary["decision"] == "accept"
    assert summary["submitted_count"] == 2
    assert summary["recommendation_counts"] == {"accept": 1, "minor_revisions": 1}
    assert summary["average_score"] == 4.0
