from datetime import datetime

import pytest

from scoring import (
    FAIL,
    NA,
    average_score,
    clamp_score,
    common_failures,
    member_ranking,
    member_report,
    month_trend,
    period_range,
    rank_areas,
    runs_in_range,
    score_answers,
    score_band,
    section_breakdown,
    validate_submission,
    worst_templates,
)


def question(qid, section_id=1, active=1, require_comment=0, require_photo=0, text=None):
    return {
        "id": qid,
        "section_id": section_id,
        "active": active,
        "require_comment": require_comment,
        "require_photo": require_photo,
        "text": text or f"Question {qid}",
        "tag": None,
        "classification": None,
    }


def answer(qid, result, comment=None, photo_path=None, run_id=1):
    return {
        "audit_run_id": run_id,
        "question_id": qid,
        "result": result,
        "comment": comment,
        "photo_path": photo_path,
    }


def test_no_answers_is_full_pass():
    questions = [question(i) for i in range(1, 6)]
    totals = score_answers(questions, [])
    assert totals["score"] == 100.0
    assert totals["pass"] == 5
    assert totals["fail"] == 0 and totals["na"] == 0


def test_one_fail_one_na_out_of_ten():
    questions = [question(i) for i in range(1, 11)]
    totals = score_answers(questions, [answer(1, FAIL), answer(2, NA)])
    assert totals["denom"] == 9
    assert totals["pass"] == 8
    assert totals["score"] == 88.89


def test_all_fail_scores_zero():
    questions = [question(i) for i in range(1, 6)]
    totals = score_answers(questions, [answer(i, FAIL) for i in range(1, 6)])
    assert totals["score"] == 0.0


def test_all_na_is_undefined():
    questions = [question(i) for i in range(1, 4)]
    totals = score_answers(questions, [answer(i, NA) for i in range(1, 4)])
    assert totals["denom"] == 0
    assert totals["score"] is None


def test_no_active_questions_is_undefined():
    assert score_answers([question(1, active=0)], [])["score"] is None


def test_answers_on_inactive_questions_are_ignored():
    questions = [question(1), question(2), question(3, active=0)]
    totals = score_answers(questions, [answer(3, FAIL)])
    assert totals["total"] == 2
    assert totals["fail"] == 0
    assert totals["score"] == 100.0


def test_scoring_is_deterministic():
    questions = [question(i) for i in range(1, 8)]
    answers = [answer(2, FAIL), answer(5, NA), answer(6, FAIL)]
    assert score_answers(questions, answers) == score_answers(questions, list(reversed(answers)))


def test_section_breakdown_includes_empty_sections():
    questions = [question(1, section_id=10), question(2, section_id=10), question(3, section_id=20)]
    result = section_breakdown(questions, [answer(1, FAIL), answer(3, NA)], section_ids=[10, 20, 30])
    assert result[10]["score"] == 50.0
    assert result[20]["score"] is None
    assert result[30]["total"] == 0
    assert result[30]["score"] is None


@pytest.mark.parametrize(
    "raw, expected",
    [(120, 100.0), (-3, 0.0), (55.5, 55.5), (None, None)],
)
def test_clamp_score(raw, expected):
    assert clamp_score(raw) == expected
    assert clamp_score(clamp_score(raw)) == clamp_score(raw)


def test_validate_submission_requires_photo_on_fail():
    questions = [question(1), question(2, require_photo=1, text="Floor is polished")]
    with pytest.raises(ValueError, match='Missing photo on: "Floor is polished"'):
        validate_submission(questions, [answer(2, FAIL)])


def test_validate_submission_treats_blank_comment_as_missing():
    questions = [question(1, require_comment=1, text="Lights are working")]
    with pytest.raises(ValueError, match="Missing comment"):
        validate_submission(questions, [answer(1, FAIL, comment="   ")])


def test_validate_submission_reports_first_question_in_order():
    questions = [
        question(1, require_comment=1, text="First"),
        question(2, require_photo=1, text="Second"),
    ]
    with pytest.raises(ValueError, match="First"):
        validate_submission(questions, [answer(2, FAIL), answer(1, FAIL)])


def test_validate_submission_ignores_na_and_complete_fails():
    questions = [question(1, require_photo=1), question(2, require_comment=1, require_photo=1)]
    validate_submission(
        questions,
        [answer(1, NA), answer(2, FAIL, comment="Broken bulb", photo_path="2_2.jpg")],
    )


def run(run_id, executed_at, score, area_id=1, template_id=1, member_id=None):
    return {
        "id": run_id,
        "executed_at": executed_at,
        "score": score,
        "area_id": area_id,
        "audit_template_id": template_id,
        "team_member_id": member_id,
    }


def test_average_score_filters_period_and_invalid_scores():
    runs = [
        run(1, "2026-03-02 10:00:00", 80),
        run(2, "2026-03-20 10:00:00", 90),
        run(3, "2026-02-10 10:00:00", 50),
        run(4, "2026-03-21 10:00:00", None),
        run(5, "2026-03-22 10:00:00", 150),
        run(6, "2025-03-22 10:00:00", 10),
    ]
    assert average_score(runs, 2026, month=3) == {"avg": 85.0, "count": 2}
    assert average_score(runs, 2026, quarter=1) == {"avg": 73.33, "count": 3}
    assert average_score(runs, 2024) == {"avg": None, "count": 0}


def test_average_score_by_template_and_area():
    runs = [
        run(1, "2026-03-02 10:00:00", 80, area_id=1, template_id=1),
        run(2, "2026-03-03 10:00:00", 60, area_id=2, template_id=2),
    ]
    assert average_score(runs, 2026, template_id=2)["avg"] == 60.0
    assert average_score(runs, 2026, area_id=1)["avg"] == 80.0


def test_month_trend_wraps_the_year():
    runs = [run(1, "2025-12-05 10:00:00", 70), run(2, "2026-01-05 10:00:00", 90)]
    points = month_trend(runs, 1, now=datetime(2026, 1, 20), months=3)
    assert [(p["year"], p["month"]) for p in points] == [(2025, 11), (2025, 12), (2026, 1)]
    assert [p["avg"] for p in points] == [None, 70.0, 90.0]


def test_period_range_defaults_to_this_month():
    now = datetime(2026, 5, 17, 12, 0)
    assert period_range(now, "bogus") == ("THIS_MONTH", datetime(2026, 5, 1), now)
    assert period_range(now, "LAST_3_MONTHS")[1] == datetime(2026, 3, 1)
    assert period_range(now, "THIS_YEAR")[1] == datetime(2026, 1, 1)


def test_runs_in_range():
    runs = [run(1, "2026-05-01 00:00:00", 1), run(2, "2026-04-30 23:59:59", 1)]
    selected = runs_in_range(runs, datetime(2026, 5, 1), datetime(2026, 5, 31))
    assert [r["id"] for r in selected] == [1]


def test_rank_areas_and_worst_templates():
    areas = [{"id": 1, "name": "Lobby"}, {"id": 2, "name": "Rooms"}, {"id": 3, "name": "Spa"}]
    templates = [{"id": 1, "name": "Daily"}, {"id": 2, "name": "Deep clean"}]
    runs = [
        run(1, "2026-03-02 10:00:00", 95, area_id=1, template_id=1),
        run(2, "2026-03-02 10:00:00", 40, area_id=2, template_id=2),
        run(3, "2026-03-02 10:00:00", 70, area_id=3, template_id=1),
    ]
    assert [a["name"] for a in rank_areas(runs, areas, limit=2)] == ["Lobby", "Spa"]
    assert [a["name"] for a in rank_areas(runs, areas, limit=1, worst=True)] == ["Rooms"]
    assert [t["name"] for t in worst_templates(runs, templates)] == ["Deep clean", "Daily"]


@pytest.mark.parametrize(
    "score, band",
    [(None, "muted"), (100, "success"), (80, "success"), (79.99, "warning"), (60, "warning"), (10, "danger")],
)
def test_score_band(score, band):
    assert score_band(score) == band


def test_member_ranking_counts_implicit_pass_as_answered():
    questions = {1: [question(i) for i in range(1, 5)]}
    runs = [
        run(10, "2026-03-01 10:00:00", 66.67, member_id=1),
        run(11, "2026-03-05 10:00:00", 100, member_id=1),
        run(12, "2026-03-06 10:00:00", None, member_id=2),
    ]
    answers_by_run = {
        10: [answer(1, FAIL, run_id=10), answer(2, NA, run_id=10)],
        12: [answer(i, NA, run_id=12) for i in range(1, 5)],
    }
    members = [{"id": 1, "full_name": "Ana"}, {"id": 2, "full_name": "Ben"}]
    rows = member_ranking(runs, questions, answers_by_run, members)

    assert [r["name"] for r in rows] == ["Ana", "Ben"]
    ana, ben = rows
    assert ana["audits_count"] == 2
    assert ana["answered"] == 7
    assert ana["fails"] == 1
    assert ana["fail_rate_pct"] == 14.29
    assert ana["last_audit_at"] == "2026-03-05 10:00:00"
    assert ben["answered"] == 0
    assert ben["fail_rate_pct"] is None


def test_common_failures_ranks_by_people_and_by_count():
    questions_by_id = {q["id"]: q for q in [question(1, text="Doors"), question(2, text="Floor")]}
    runs = [
        run(10, "2026-03-01 10:00:00", 50, member_id=1),
        run(11, "2026-03-02 10:00:00", 50, member_id=2),
        run(12, "2026-03-03 10:00:00", 50, member_id=1),
    ]
    answers_by_run = {
        10: [answer(1, FAIL, run_id=10), answer(2, FAIL, run_id=10)],
        11: [answer(1, FAIL, run_id=11), answer(2, NA, run_id=11)],
        12: [answer(2, FAIL, run_id=12)],
    }
    by_people, by_fails = common_failures(runs, answers_by_run, questions_by_id)

    assert [r["standard"] for r in by_people] == ["Doors"]
    assert by_people[0]["affected_members"] == 2
    assert [(r["standard"], r["fail_count"]) for r in by_fails] == [("Doors", 2), ("Floor", 2)]


def member_fixture():
    question_sets = {
        1: [question(i) for i in range(1, 5)],
        2: [question(5, section_id=2, text="Menu"), question(6, section_id=2)],
    }
    questions_by_id = {q["id"]: q for qs in question_sets.values() for q in qs}
    runs = [
        run(10, "2026-03-05 10:00:00", 66.67, template_id=1, member_id=1),
        run(11, "2026-03-01 10:00:00", 100, template_id=1, member_id=1),
        run(12, "2026-03-03 10:00:00", 50, template_id=2, member_id=1),
    ]
    answers_by_run = {
        10: [answer(1, FAIL, run_id=10), answer(2, NA, run_id=10)],
        12: [answer(5, FAIL, run_id=12)],
    }
    return runs, question_sets, answers_by_run, questions_by_id, {1: "Daily", 2: "Restaurant"}


def test_member_report_counts_implicit_pass():
    runs, question_sets, answers_by_run, questions_by_id, names = member_fixture()
    report = member_report(runs, question_sets, answers_by_run, questions_by_id, names)

    assert report["audits_count"] == 3
    # answered 3 + 4 + 2, fails 2
    assert report["overall_fail_pct"] == 22.22
    assert [p["run_id"] for p in report["trend"]] == [11, 12, 10]
    assert report["trend"][0]["answered"] == 4
    assert report["trend"][0]["fail_pct"] == 0
    assert [
        (t["template_name"], t["audits_count"], t["audits_pct"], t["fail_pct"])
        for t in report["by_template"]
    ] == [("Daily", 2, 66.67, 14.29), ("Restaurant", 1, 33.33, 50.0)]
    assert {s["standard"] for s in report["top_standards"]} == {"Question 1", "Menu"}


def test_member_report_template_filter():
    runs, question_sets, answers_by_run, questions_by_id, names = member_fixture()
    report = member_report(runs, question_sets, answers_by_run, questions_by_id, names, template_id=2)

    assert report["audits_count"] == 1
    assert report["overall_fail_pct"] == 50.0
    assert report["by_template"] == []
    assert [s["fail_count"] for s in report["top_standards"]] == [1]


def test_member_report_empty_selection():
    runs, question_sets, answers_by_run, questions_by_id, names = member_fixture()
    report = member_report(runs, question_sets, answers_by_run, questions_by_id, names, template_id=99)
    assert report["audits_count"] == 0
    assert report["overall_fail_pct"] is None
    assert report["trend"] == [] and report["top_standards"] == []
