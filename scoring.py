"""Audit score aggregation.

Answers are sparse: only FAIL and NA rows exist. Any active question without
an answer row is a PASS.
"""
from collections import defaultdict
from datetime import datetime

FAIL = "FAIL"
NA = "NA"
PASS = "PASS"
EXCEPTION_RESULTS = (FAIL, NA)

PERIODS = ("THIS_MONTH", "LAST_3_MONTHS", "THIS_YEAR")


def _is_active(question):
    return bool(question["active"])


def active_questions(questions):
    return [q for q in questions if _is_active(q)]


def answers_by_question(answers):
    mapping = {}
    for a in answers:
        if a["result"] in EXCEPTION_RESULTS:
            mapping[a["question_id"]] = a
    return mapping


def _totals(total, fail, na):
    denom = max(0, total - na)
    passed = max(0, denom - fail)
    score = None if denom == 0 else round((passed / denom) * 100, 2)
    return {
        "total": total,
        "fail": fail,
        "na": na,
        "denom": denom,
        "pass": passed,
        "score": score,
    }


def score_answers(questions, answers):
    active_ids = {q["id"] for q in active_questions(questions)}
    fail = 0
    na = 0
    for question_id, answer in answers_by_question(answers).items():
        if question_id not in active_ids:
            continue
        if answer["result"] == FAIL:
            fail += 1
        elif answer["result"] == NA:
            na += 1
    return _totals(len(active_ids), fail, na)


def section_breakdown(questions, answers, section_ids=None):
    grouped = defaultdict(list)
    for q in active_questions(questions):
        grouped[q["section_id"]].append(q)

    answer_map = answers_by_question(answers)
    keys = list(section_ids) if section_ids is not None else list(grouped)
    result = {}
    for section_id in keys:
        section_questions = grouped.get(section_id, [])
        section_answers = [
            answer_map[q["id"]] for q in section_questions if q["id"] in answer_map
        ]
        result[section_id] = score_answers(section_questions, section_answers)
    return result


def clamp_score(score, low=0.0, high=100.0):
    if score is None:
        return None
    return max(low, min(high, score))


def validate_submission(questions, answers):
    answer_map = answers_by_question(answers)
    for q in active_questions(questions):
        answer = answer_map.get(q["id"])
        if not answer or answer["result"] != FAIL:
            continue
        if q["require_comment"] and not (answer["comment"] or "").strip():
            raise ValueError(f'Missing comment on: "{q["text"]}"')
        if q["require_photo"] and not (answer["photo_path"] or "").strip():
            raise ValueError(f'Missing photo on: "{q["text"]}"')


# ---------------------------
# Time-based aggregation over submitted runs
# ---------------------------
def parse_ts(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    # Stored timestamps are "YYYY-MM-DD HH:MM:SS"; drop fractions and offsets.
    text = str(value).strip().replace("T", " ")[:19]
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def valid_score(value):
    if value is None:
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if n != n or n < 0 or n > 100:
        return None
    return n


def average_of(values):
    if not values:
        return {"avg": None, "count": 0}
    return {"avg": round(sum(values) / len(values), 2), "count": len(values)}


def average_score(runs, year, month=None, quarter=None, template_id=None, area_id=None):
    values = []
    for run in runs:
        executed = parse_ts(run["executed_at"])
        if executed is None or executed.year != year:
            continue
        if month is not None and executed.month != month:
            continue
        if quarter is not None and (executed.month - 1) // 3 + 1 != quarter:
            continue
        if template_id is not None and run["audit_template_id"] != template_id:
            continue
        if area_id is not None and run["area_id"] != area_id:
            continue
        score = valid_score(run["score"])
        if score is not None:
            values.append(score)
    return average_of(values)


def current_quarter(now=None):
    now = now or datetime.now()
    return (now.month - 1) // 3 + 1


def shift_month(year, month, delta):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_trend(runs, area_id, now=None, months=3):
    now = now or datetime.now()
    points = []
    for back in range(months - 1, -1, -1):
        year, month = shift_month(now.year, now.month, -back)
        agg = average_score(runs, year, month=month, area_id=area_id)
        points.append(
            {
                "key": datetime(year, month, 1).strftime("%b"),
                "year": year,
                "month": month,
                "avg": agg["avg"],
                "count": agg["count"],
            }
        )
    return points


def period_range(now, period):
    if period not in PERIODS:
        period = "THIS_MONTH"
    if period == "THIS_MONTH":
        start = datetime(now.year, now.month, 1)
    elif period == "LAST_3_MONTHS":
        year, month = shift_month(now.year, now.month, -2)
        start = datetime(year, month, 1)
    else:
        start = datetime(now.year, 1, 1)
    return period, start, now


def runs_in_range(runs, start, end):
    selected = []
    for run in runs:
        executed = parse_ts(run["executed_at"])
        if executed is not None and start <= executed <= end:
            selected.append(run)
    return selected


def _group_averages(runs, key):
    buckets = defaultdict(list)
    for run in runs:
        score = valid_score(run["score"])
        if score is not None:
            buckets[run[key]].append(score)
    return {k: average_of(v) for k, v in buckets.items()}


def rank_areas(runs, areas, limit=3, worst=False):
    averages = _group_averages(runs, "area_id")
    rows = []
    for area in areas:
        agg = averages.get(area["id"])
        if not agg:
            continue
        rows.append({"id": area["id"], "name": area["name"], "score": agg["avg"], "count": agg["count"]})
    rows.sort(key=lambda r: r["score"], reverse=not worst)
    return rows[:limit]


def worst_templates(runs, templates, limit=3):
    names = {t["id"]: t["name"] for t in templates}
    averages = _group_averages(runs, "audit_template_id")
    rows = [
        {"id": tid, "name": names.get(tid, "—"), "avg": agg["avg"], "count": agg["count"]}
        for tid, agg in averages.items()
    ]
    rows.sort(key=lambda r: r["avg"])
    return rows[:limit]


def score_band(score):
    if score is None:
        return "muted"
    if score >= 80:
        return "success"
    if score >= 60:
        return "warning"
    return "danger"


def pct(n, d):
    if not d:
        return 0
    return round((n / d) * 100, 2)


# ---------------------------
# Team member analytics
# ---------------------------
def member_ranking(runs, question_sets, answers_by_run, members):
    """Rank audited team members by fail rate.

    ``question_sets`` maps a template id to its questions and
    ``answers_by_run`` maps a run id to its exception rows. A question with no
    exception row counts as answered and passed.
    """
    agg = {}
    for run in runs:
        member_id = run["team_member_id"]
        if not member_id:
            continue
        totals = score_answers(
            question_sets.get(run["audit_template_id"], []),
            answers_by_run.get(run["id"], []),
        )
        cur = agg.setdefault(
            member_id, {"audits_count": 0, "answered": 0, "fails": 0, "last_audit_at": None}
        )
        cur["audits_count"] += 1
        cur["answered"] += totals["denom"]
        cur["fails"] += totals["fail"]
        executed = run["executed_at"]
        if executed and (cur["last_audit_at"] is None or parse_ts(executed) > parse_ts(cur["last_audit_at"])):
            cur["last_audit_at"] = executed

    names = {m["id"]: m["full_name"] for m in members}
    rows = []
    for member_id, v in agg.items():
        rows.append(
            {
                "team_member_id": member_id,
                "name": names.get(member_id, "—"),
                "audits_count": v["audits_count"],
                "answered": v["answered"],
                "fails": v["fails"],
                "fail_rate_pct": pct(v["fails"], v["answered"]) if v["answered"] else None,
                "last_audit_at": v["last_audit_at"],
            }
        )
    rows.sort(key=lambda r: (r["fail_rate_pct"] is not None, r["fail_rate_pct"] or 0), reverse=True)
    return rows


def member_report(runs, question_sets, answers_by_run, questions_by_id, template_names,
                  template_id=None, top_limit=20):
    """Drill-down for one team member over ``runs`` (already that member's).

    With ``template_id`` only runs of that template count and the per-template
    split is left empty.
    """
    selected = [r for r in runs if template_id is None or r["audit_template_id"] == template_id]
    selected.sort(key=lambda r: parse_ts(r["executed_at"]) or datetime.min)
    report = {
        "audits_count": len(selected),
        "overall_fail_pct": None,
        "by_template": [],
        "trend": [],
        "top_standards": [],
    }
    if not selected:
        return report

    answered = 0
    fails = 0
    per_template = {}
    fail_counts = defaultdict(int)
    for run in selected:
        run_answers = answers_by_run.get(run["id"], [])
        totals = score_answers(question_sets.get(run["audit_template_id"], []), run_answers)
        answered += totals["denom"]
        fails += totals["fail"]

        cur = per_template.setdefault(run["audit_template_id"], {"audits": 0, "answered": 0, "fails": 0})
        cur["audits"] += 1
        cur["answered"] += totals["denom"]
        cur["fails"] += totals["fail"]

        report["trend"].append(
            {
                "run_id": run["id"],
                "executed_at": run["executed_at"],
                "template_name": template_names.get(run["audit_template_id"], "—"),
                "answered": totals["denom"],
                "fails": totals["fail"],
                "fail_pct": pct(totals["fail"], totals["denom"]) if totals["denom"] else None,
            }
        )
        active_ids = {q["id"] for q in active_questions(question_sets.get(run["audit_template_id"], []))}
        for question_id, a in answers_by_question(run_answers).items():
            if a["result"] == FAIL and question_id in active_ids:
                fail_counts[question_id] += 1

    report["overall_fail_pct"] = pct(fails, answered) if answered else None

    if template_id is None:
        rows = [
            {
                "template_id": tid,
                "template_name": template_names.get(tid, "—"),
                "audits_count": v["audits"],
                "audits_pct": pct(v["audits"], len(selected)),
                "fail_pct": pct(v["fails"], v["answered"]) if v["answered"] else None,
            }
            for tid, v in per_template.items()
        ]
        rows.sort(key=lambda r: r["audits_count"], reverse=True)
        report["by_template"] = rows

    top = []
    for question_id, count in fail_counts.items():
        question = questions_by_id.get(question_id)
        top.append(
            {
                "question_id": question_id,
                "standard": question["text"] if question else "—",
                "tag": question["tag"] if question else None,
                "classification": question["classification"] if question else None,
                "fail_count": count,
            }
        )
    top.sort(key=lambda r: r["fail_count"], reverse=True)
    report["top_standards"] = top[:top_limit]
    return report


def common_failures(runs, answers_by_run, questions_by_id, limit=30):
    member_by_run = {r["id"]: r["team_member_id"] for r in runs if r["team_member_id"]}
    standards = {}
    for run_id, member_id in member_by_run.items():
        for answer in answers_by_run.get(run_id, []):
            if answer["result"] != FAIL:
                continue
            question = questions_by_id.get(answer["question_id"])
            if question is None:
                continue
            cur = standards.setdefault(question["id"], {"fail_count": 0, "members": set()})
            cur["fail_count"] += 1
            cur["members"].add(member_id)

    rows = []
    for question_id, v in standards.items():
        question = questions_by_id[question_id]
        rows.append(
            {
                "question_id": question_id,
                "standard": question["text"],
                "tag": question["tag"],
                "classification": question["classification"],
                "affected_members": len(v["members"]),
                "fail_count": v["fail_count"],
            }
        )
    by_people = sorted(
        (r for r in rows if r["affected_members"] > 1),
        key=lambda r: (r["affected_members"], r["fail_count"]),
        reverse=True,
    )[:limit]
    by_fails = sorted(rows, key=lambda r: (r["fail_count"], r["affected_members"]), reverse=True)[:limit]
    return by_people, by_fails
