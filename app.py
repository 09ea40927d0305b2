import io
import logging
import os
import sqlite3
from datetime import datetime, timedelta
from functools import wraps
from pathlib import Path

import pandas as pd
from flask import (
    Flask,
    flash,
    g,
    make_response,
    redirect,
    render_template,
    request,
    send_file,
    send_from_directory,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

from permissions import (
    AuditContext,
    ROLE_VALUES,
    Role,
    assignable_roles,
    can_delete_audits,
    can_manage_areas,
    can_manage_setup,
    can_manage_team,
    can_manage_users,
    can_run_audits,
    can_see_analytics,
    can_submit_audit,
    normalize_role,
    sees_all_areas,
)
from scoring import (
    EXCEPTION_RESULTS,
    FAIL,
    PASS,
    average_of,
    average_score,
    clamp_score,
    common_failures,
    current_quarter,
    member_ranking,
    member_report,
    month_trend,
    period_range,
    rank_areas,
    runs_in_range,
    score_answers,
    score_band,
    section_breakdown,
    valid_score,
    validate_submission,
    worst_templates,
)
from team_import import parse_team_upload

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
# Local persistent SQLite storage.
# If APP_DATA_DIR is set, it uses that fixed directory; otherwise it uses project folder.
DATA_DIR = os.getenv("APP_DATA_DIR", BASE_DIR)
DATABASE = os.path.join(DATA_DIR, "hotel_audit.db")
DEFAULT_SUPERADMIN_NAME = "Superadmin"
DEFAULT_SUPERADMIN_EMAIL = os.getenv("DEFAULT_SUPERADMIN_EMAIL", "admin@example.com")
DEFAULT_SUPERADMIN_PASSWORD = os.getenv("DEFAULT_SUPERADMIN_PASSWORD", "1234")
PHOTO_DIR_NAME = "photos"
PHOTO_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic"}
ANALYTICS_PERIODS = {"30": 30, "60": 60, "90": 90, "365": 365}

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "change-this-secret-key")
app.config["MAX_CONTENT_LENGTH"] = 10 * 1024 * 1024
app.config["DATA_DIR"] = DATA_DIR
app.config["DATABASE"] = DATABASE
app.config["DB_INITIALIZED"] = False


# ---------------------------
# Database helpers
# ---------------------------
def get_db():
    if "db" not in g:
        os.makedirs(app.config["DATA_DIR"], exist_ok=True)
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


@app.teardown_appcontext
def close_db(_error):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        CREATE TABLE IF NOT EXISTS hotels (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS profiles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            full_name TEXT NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('superadmin', 'admin', 'manager', 'auditor')),
            hotel_id INTEGER,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            FOREIGN KEY(hotel_id) REFERENCES hotels(id)
        );

        CREATE TABLE IF NOT EXISTS areas (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            hotel_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            type TEXT,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            FOREIGN KEY(hotel_id) REFERENCES hotels(id)
        );

        CREATE TABLE IF NOT EXISTS user_area_access (
            user_id INTEGER NOT NULL,
            area_id INTEGER NOT NULL,
            PRIMARY KEY(user_id, area_id),
            FOREIGN KEY(user_id) REFERENCES profiles(id),
            FOREIGN KEY(area_id) REFERENCES areas(id)
        );

        CREATE TABLE IF NOT EXISTS audit_templates (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            hotel_id INTEGER,
            name TEXT NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            FOREIGN KEY(hotel_id) REFERENCES hotels(id)
        );

        CREATE TABLE IF NOT EXISTS audit_sections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            audit_template_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            FOREIGN KEY(audit_template_id) REFERENCES audit_templates(id)
        );

        CREATE TABLE IF NOT EXISTS audit_questions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            audit_section_id INTEGER NOT NULL,
            text TEXT NOT NULL,
            weight REAL,
            require_comment INTEGER NOT NULL DEFAULT 0,
            require_photo INTEGER NOT NULL DEFAULT 0,
            require_signature INTEGER NOT NULL DEFAULT 0,
            tag TEXT,
            classification TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            sort_order INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY(audit_section_id) REFERENCES audit_sections(id)
        );

        CREATE TABLE IF NOT EXISTS team_members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            hotel_id INTEGER NOT NULL,
            full_name TEXT NOT NULL,
            position TEXT,
            employee_number TEXT,
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            FOREIGN KEY(hotel_id) REFERENCES hotels(id)
        );

        CREATE TABLE IF NOT EXISTS team_member_areas (
            team_member_id INTEGER NOT NULL,
            area_id INTEGER NOT NULL,
            PRIMARY KEY(team_member_id, area_id),
            FOREIGN KEY(team_member_id) REFERENCES team_members(id),
            FOREIGN KEY(area_id) REFERENCES areas(id)
        );

        CREATE TABLE IF NOT EXISTS audit_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            hotel_id INTEGER NOT NULL,
            area_id INTEGER NOT NULL,
            audit_template_id INTEGER NOT NULL,
            team_member_id INTEGER,
            status TEXT NOT NULL DEFAULT 'draft' CHECK(status IN ('draft', 'submitted')),
            score REAL,
            notes TEXT,
            executed_by INTEGER NOT NULL,
            executed_at TEXT NOT NULL,
            submitted_at TEXT,
            FOREIGN KEY(hotel_id) REFERENCES hotels(id),
            FOREIGN KEY(area_id) REFERENCES areas(id),
            FOREIGN KEY(audit_template_id) REFERENCES audit_templates(id),
            FOREIGN KEY(team_member_id) REFERENCES team_members(id),
            FOREIGN KEY(executed_by) REFERENCES profiles(id)
        );

        CREATE TABLE IF NOT EXISTS audit_answers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            audit_run_id INTEGER NOT NULL,
            question_id INTEGER NOT NULL,
            result TEXT NOT NULL CHECK(result IN ('FAIL', 'NA')),
            comment TEXT,
            photo_path TEXT,
            updated_at TEXT NOT NULL,
            UNIQUE(audit_run_id, question_id),
            FOREIGN KEY(audit_run_id) REFERENCES audit_runs(id),
            FOREIGN KEY(question_id) REFERENCES audit_questions(id)
        );
        """
    )

    # Seed one superadmin if none exists.
    superadmin = db.execute("SELECT id FROM profiles WHERE role = 'superadmin' LIMIT 1").fetchone()
    if not superadmin:
        db.execute(
            """
            INSERT OR IGNORE INTO profiles (email, full_name, password_hash, role, hotel_id, active, created_at)
            VALUES (?, ?, ?, 'superadmin', NULL, 1, ?)
            """,
            (
                DEFAULT_SUPERADMIN_EMAIL,
                DEFAULT_SUPERADMIN_NAME,
                generate_password_hash(DEFAULT_SUPERADMIN_PASSWORD),
                now_ts(),
            ),
        )
        app.logger.info("Seeded default superadmin %s", DEFAULT_SUPERADMIN_EMAIL)
    db.commit()
    app.logger.info("Database ready at %s", app.config["DATABASE"])


@app.before_request
def ensure_db_initialized():
    if not app.config["DB_INITIALIZED"]:
        init_db()
        app.config["DB_INITIALIZED"] = True


@app.before_request
def load_request_context():
    g.ctx = AuditContext.resolve(current_user(), session.get("hotel_id"))


# ---------------------------
# Auth and context helpers
# ---------------------------
def now_ts():
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def current_user():
    uid = session.get("user_id")
    if not uid:
        return None
    return get_db().execute(
        "SELECT * FROM profiles WHERE id = ? AND active = 1", (uid,)
    ).fetchone()


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return redirect(url_for("login"))
        ctx = g.ctx
        if ctx.user is None:
            session.clear()
            flash("Session expired. Please login again.", "danger")
            return redirect(url_for("login"))
        return func(*args, ctx=ctx, **kwargs)

    return wrapper


def permission_required(predicate):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, ctx, **kwargs):
            if not ctx.allows(predicate):
                flash("Access denied.", "danger")
                return redirect(url_for("dashboard"))
            return func(*args, ctx=ctx, **kwargs)

        return wrapper

    return decorator


def hotel_required(func):
    @wraps(func)
    def wrapper(*args, ctx, **kwargs):
        if ctx.hotel_id is None:
            if ctx.is_superadmin:
                flash("Select a hotel first.", "info")
                return redirect(url_for("select_hotel"))
            flash("Your profile has no hotel assigned.", "danger")
            return redirect(url_for("profile"))
        return func(*args, ctx=ctx, **kwargs)

    return wrapper


def form_flag(name):
    return 1 if request.form.get(name) in ("on", "1", "true") else 0


def parse_int(value):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def get_hotel(db, hotel_id):
    return db.execute("SELECT * FROM hotels WHERE id = ?", (hotel_id,)).fetchone()


def get_area(db, ctx, area_id):
    return db.execute(
        "SELECT * FROM areas WHERE id = ? AND hotel_id = ?", (area_id, ctx.hotel_id)
    ).fetchone()


def hotel_areas(db, ctx):
    return db.execute(
        "SELECT * FROM areas WHERE hotel_id = ? ORDER BY sort_order, name",
        (ctx.hotel_id,),
    ).fetchall()


def visible_areas(db, ctx):
    if sees_all_areas(ctx.role):
        return hotel_areas(db, ctx)
    return db.execute(
        """
        SELECT a.*
        FROM areas a
        JOIN user_area_access ua ON ua.area_id = a.id
        WHERE a.hotel_id = ? AND ua.user_id = ?
        ORDER BY a.sort_order, a.name
        """,
        (ctx.hotel_id, ctx.user_id),
    ).fetchall()


def get_visible_area(db, ctx, area_id):
    for area in visible_areas(db, ctx):
        if area["id"] == area_id:
            return area
    return None


def available_templates(db, ctx, active_only=True):
    sql = """
        SELECT t.*,
               (SELECT COUNT(*) FROM audit_sections s WHERE s.audit_template_id = t.id) AS sections_count,
               (SELECT COUNT(*)
                  FROM audit_questions q
                  JOIN audit_sections s ON s.id = q.audit_section_id
                 WHERE s.audit_template_id = t.id AND q.active = 1 AND s.active = 1) AS questions_count
        FROM audit_templates t
        WHERE (t.hotel_id = ? OR t.hotel_id IS NULL)
    """
    if active_only:
        sql += " AND t.active = 1"
    sql += " ORDER BY t.hotel_id IS NULL, t.name"
    return db.execute(sql, (ctx.hotel_id,)).fetchall()


def get_template(db, ctx, template_id):
    return db.execute(
        "SELECT * FROM audit_templates WHERE id = ? AND (hotel_id = ? OR hotel_id IS NULL)",
        (template_id, ctx.hotel_id),
    ).fetchone()


def can_edit_template(ctx, template):
    if template["hotel_id"] is None:
        return ctx.is_superadmin
    return template["hotel_id"] == ctx.hotel_id


def load_template_questions(db, template_ids):
    template_ids = [t for t in template_ids if t is not None]
    if not template_ids:
        return []
    placeholders = ",".join("?" for _ in template_ids)
    return db.execute(
        f"""
        SELECT
            q.id,
            q.audit_section_id AS section_id,
            s.audit_template_id AS template_id,
            q.text,
            q.weight,
            q.require_comment,
            q.require_photo,
            q.require_signature,
            q.tag,
            q.classification,
            q.sort_order,
            (q.active = 1 AND s.active = 1) AS active
        FROM audit_questions q
        JOIN audit_sections s ON s.id = q.audit_section_id
        WHERE s.audit_template_id IN ({placeholders})
        ORDER BY s.created_at, s.id, q.sort_order, q.created_at, q.id
        """,
        tuple(template_ids),
    ).fetchall()


def load_sections(db, template_id, active_only=False):
    sql = "SELECT * FROM audit_sections WHERE audit_template_id = ?"
    if active_only:
        sql += " AND active = 1"
    sql += " ORDER BY created_at, id"
    return db.execute(sql, (template_id,)).fetchall()


def load_run_answers(db, run_ids):
    if not isinstance(run_ids, (list, tuple, set)):
        run_ids = [run_ids]
    run_ids = list(run_ids)
    if not run_ids:
        return []
    placeholders = ",".join("?" for _ in run_ids)
    return db.execute(
        f"""
        SELECT id, audit_run_id, question_id, result, comment, photo_path
        FROM audit_answers
        WHERE audit_run_id IN ({placeholders})
        """,
        tuple(run_ids),
    ).fetchall()


def get_run(db, ctx, run_id):
    run = db.execute(
        """
        SELECT r.*,
               t.name AS template_name,
               a.name AS area_name,
               a.type AS area_type,
               tm.full_name AS member_name,
               p.full_name AS executed_by_name
        FROM audit_runs r
        JOIN audit_templates t ON t.id = r.audit_template_id
        JOIN areas a ON a.id = r.area_id
        LEFT JOIN team_members tm ON tm.id = r.team_member_id
        LEFT JOIN profiles p ON p.id = r.executed_by
        WHERE r.id = ? AND r.hotel_id = ?
        """,
        (run_id, ctx.hotel_id),
    ).fetchone()
    if run and not sees_all_areas(ctx.role) and not get_visible_area(db, ctx, run["area_id"]):
        return None
    return run


def get_draft_run(db, ctx, run_id):
    run = get_run(db, ctx, run_id)
    if not run:
        flash("Audit not found.", "danger")
        return None, redirect(url_for("areas"))
    if run["status"] == "submitted":
        flash("This audit was already submitted and cannot be changed.", "info")
        return None, redirect(url_for("audit_view", run_id=run_id))
    return run, None


def get_run_question(db, run, question_id):
    return db.execute(
        """
        SELECT q.*
        FROM audit_questions q
        JOIN audit_sections s ON s.id = q.audit_section_id
        WHERE q.id = ? AND s.audit_template_id = ?
        """,
        (question_id, run["audit_template_id"]),
    ).fetchone()


def get_answer(db, run_id, question_id):
    return db.execute(
        "SELECT * FROM audit_answers WHERE audit_run_id = ? AND question_id = ?",
        (run_id, question_id),
    ).fetchone()


def submitted_runs(db, ctx, area_ids=None):
    rows = db.execute(
        """
        SELECT id, area_id, audit_template_id, team_member_id, score, executed_at
        FROM audit_runs
        WHERE hotel_id = ? AND status = 'submitted'
        ORDER BY executed_at DESC
        """,
        (ctx.hotel_id,),
    ).fetchall()
    if area_ids is None:
        return rows
    return [r for r in rows if r["area_id"] in area_ids]


def photo_dir():
    path = os.path.join(app.config["DATA_DIR"], PHOTO_DIR_NAME)
    os.makedirs(path, exist_ok=True)
    return path


def save_answer_photo(file_storage, run_id, question_id):
    ext = Path(file_storage.filename or "").suffix.lower()
    if ext not in PHOTO_EXTENSIONS:
        raise ValueError("Photo must be an image (.jpg, .jpeg, .png, .webp, .heic).")
    fname = secure_filename(
        f"{run_id}_{question_id}_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}{ext}"
    )
    file_storage.save(os.path.join(photo_dir(), fname))
    return fname


def remove_answer_photo(photo_path):
    if not photo_path:
        return
    abs_path = os.path.join(photo_dir(), os.path.basename(photo_path))
    try:
        os.remove(abs_path)
    except FileNotFoundError:
        app.logger.warning("Photo %s was already missing from storage", photo_path)


def normalize_question_order(db, template_id):
    rows = db.execute(
        """
        SELECT q.id, q.audit_section_id, q.sort_order
        FROM audit_questions q
        JOIN audit_sections s ON s.id = q.audit_section_id
        WHERE s.audit_template_id = ?
        ORDER BY q.audit_section_id,
                 COALESCE(q.sort_order, 999999),
                 q.created_at,
                 q.id
        """,
        (template_id,),
    ).fetchall()
    updates = []
    position = {}
    for row in rows:
        position[row["audit_section_id"]] = position.get(row["audit_section_id"], 0) + 1
        expected = position[row["audit_section_id"]]
        if row["sort_order"] != expected:
            updates.append((expected, row["id"]))
    if updates:
        db.executemany("UPDATE audit_questions SET sort_order = ? WHERE id = ?", updates)
    return len(updates)


def next_question_order(db, section_id):
    row = db.execute(
        "SELECT COALESCE(MAX(sort_order), 0) AS m FROM audit_questions WHERE audit_section_id = ?",
        (section_id,),
    ).fetchone()
    return int(row["m"] or 0) + 1


# ---------------------------
# Template filters and globals
# ---------------------------
@app.template_filter("fmt_score")
def fmt_score(value):
    if value is None:
        return "—"
    return f"{float(value):.2f}%"


@app.template_filter("fmt_ts")
def fmt_ts(value):
    if not value:
        return "—"
    return str(value)[:16]


@app.template_filter("score_band")
def score_band_filter(value):
    return score_band(value)


@app.context_processor
def inject_context():
    ctx = getattr(g, "ctx", None)
    role = ctx.role if ctx else None
    hotel = None
    if ctx and ctx.hotel_id is not None:
        hotel = get_hotel(get_db(), ctx.hotel_id)
    return {
        "session_user": ctx.user if ctx else None,
        "current_role": role,
        "current_hotel": hotel,
        "Role": Role,
        "perm": {
            "run_audits": can_run_audits(role) if role else False,
            "submit_audit": can_submit_audit(role) if role else False,
            "manage_areas": can_manage_areas(role) if role else False,
            "manage_setup": can_manage_setup(role) if role else False,
            "manage_users": can_manage_users(role) if role else False,
            "manage_team": can_manage_team(role) if role else False,
            "see_analytics": can_see_analytics(role) if role else False,
            "delete_audits": can_delete_audits(role) if role else False,
        },
    }


# ---------------------------
# Auth routes
# ---------------------------
@app.route("/")
def index():
    if "user_id" in session:
        return redirect(url_for("dashboard"))
    return redirect(url_for("login"))


@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "").strip()

        db = get_db()
        user = db.execute("SELECT * FROM profiles WHERE lower(email) = ?", (email,)).fetchone()
        if not user or not check_password_hash(user["password_hash"], password):
            flash("Invalid email or password.", "danger")
            return render_template("login.html")
        if not user["active"]:
            flash("This user is deactivated.", "danger")
            return render_template("login.html")

        session.clear()
        session["user_id"] = user["id"]
        app.logger.info("User %s logged in", user["email"])
        return redirect(url_for("dashboard"))

    return render_template("login.html")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(url_for("login"))


@app.route("/select-hotel", methods=["GET", "POST"])
@login_required
def select_hotel(ctx):
    if not ctx.is_superadmin:
        return redirect(url_for("dashboard"))
    db = get_db()
    hotels = db.execute("SELECT * FROM hotels ORDER BY name").fetchall()
    if request.method == "POST":
        hotel_id = parse_int(request.form.get("hotel_id"))
        if hotel_id is None or not get_hotel(db, hotel_id):
            flash("Please select a valid hotel.", "danger")
        else:
            session["hotel_id"] = hotel_id
            return redirect(url_for("dashboard"))
    return render_template("select_hotel.html", hotels=hotels)


@app.route("/hotels", methods=["GET", "POST"])
@login_required
def hotels(ctx):
    if not ctx.is_superadmin:
        flash("Access denied.", "danger")
        return redirect(url_for("dashboard"))
    db = get_db()
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        if not name:
            flash("Hotel name is required.", "danger")
        else:
            try:
                db.execute("INSERT INTO hotels (name, created_at) VALUES (?, ?)", (name, now_ts()))
                db.commit()
                flash("Hotel created.", "success")
            except sqlite3.IntegrityError:
                flash("Hotel already exists.", "danger")
    rows = db.execute(
        """
        SELECT h.*,
               (SELECT COUNT(*) FROM areas a WHERE a.hotel_id = h.id) AS areas_count,
               (SELECT COUNT(*) FROM profiles p WHERE p.hotel_id = h.id) AS users_count
        FROM hotels h
        ORDER BY h.name
        """
    ).fetchall()
    return render_template("hotels.html", hotels=rows)


@app.route("/profile", methods=["GET", "POST"])
@login_required
def profile(ctx):
    db = get_db()
    if request.method == "POST":
        full_name = request.form.get("full_name", "").strip()
        password = request.form.get("password", "").strip()
        if not full_name:
            flash("Name is required.", "danger")
        else:
            db.execute("UPDATE profiles SET full_name = ? WHERE id = ?", (full_name, ctx.user_id))
            if password:
                db.execute(
                    "UPDATE profiles SET password_hash = ? WHERE id = ?",
                    (generate_password_hash(password), ctx.user_id),
                )
            db.commit()
            flash("Profile updated.", "success")
            return redirect(url_for("profile"))
    return render_template("profile.html", user=current_user())


# ---------------------------
# Users
# ---------------------------
@app.route("/users", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_users)
@hotel_required
def users(ctx):
    db = get_db()
    roles = assignable_roles(ctx.role)
    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        full_name = request.form.get("full_name", "").strip()
        password = request.form.get("password", "").strip()
        role_raw = request.form.get("role", "").strip().lower()
        role = normalize_role(role_raw)

        if not email or not full_name or not password or not role_raw:
            flash("All fields are required.", "danger")
        elif role_raw not in ROLE_VALUES:
            flash(f"Unknown role '{role_raw}'.", "danger")
        elif role not in roles:
            flash("You cannot assign that role.", "danger")
        else:
            hotel_id = None if role == Role.SUPERADMIN else ctx.hotel_id
            try:
                db.execute(
                    """
                    INSERT INTO profiles (email, full_name, password_hash, role, hotel_id, active, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    """,
                    (email, full_name, generate_password_hash(password), role.value, hotel_id, now_ts()),
                )
                db.commit()
                app.logger.info("User %s (%s) created by %s", email, role.value, ctx.user["email"])
                flash("User created.", "success")
            except sqlite3.IntegrityError:
                flash("Email already registered.", "danger")

    rows = db.execute(
        """
        SELECT p.id, p.email, p.full_name, p.role, p.active, p.created_at,
               (SELECT COUNT(*) FROM user_area_access ua WHERE ua.user_id = p.id) AS areas_count
        FROM profiles p
        WHERE p.hotel_id = ? OR (? = 1 AND p.role = 'superadmin')
        ORDER BY p.role, p.full_name
        """,
        (ctx.hotel_id, 1 if ctx.is_superadmin else 0),
    ).fetchall()
    return render_template("users.html", users=rows, roles=roles)


def get_managed_user(db, ctx, user_id):
    return db.execute(
        "SELECT * FROM profiles WHERE id = ? AND hotel_id = ?", (user_id, ctx.hotel_id)
    ).fetchone()


@app.route("/users/<int:user_id>/toggle-active", methods=["POST"])
@login_required
@permission_required(can_manage_users)
@hotel_required
def user_toggle_active(user_id, ctx):
    db = get_db()
    user = get_managed_user(db, ctx, user_id)
    if not user:
        flash("User not found.", "danger")
        return redirect(url_for("users"))
    if user["id"] == ctx.user_id:
        flash("You cannot deactivate yourself.", "danger")
        return redirect(url_for("users"))
    db.execute("UPDATE profiles SET active = ? WHERE id = ?", (0 if user["active"] else 1, user_id))
    db.commit()
    flash("User status updated.", "success")
    return redirect(url_for("users"))


@app.route("/users/<int:user_id>/delete", methods=["POST"])
@login_required
@permission_required(can_manage_users)
@hotel_required
def user_delete(user_id, ctx):
    db = get_db()
    user = get_managed_user(db, ctx, user_id)
    if not user:
        flash("User not found.", "danger")
        return redirect(url_for("users"))
    if user["id"] == ctx.user_id:
        flash("You cannot delete yourself.", "danger")
        return redirect(url_for("users"))
    runs = db.execute(
        "SELECT COUNT(*) AS n FROM audit_runs WHERE executed_by = ?", (user_id,)
    ).fetchone()["n"]
    if runs:
        flash(f"{user['full_name']} has {runs} audit(s) on record. Deactivate the user instead.", "danger")
        return redirect(url_for("users"))

    db.execute("DELETE FROM user_area_access WHERE user_id = ?", (user_id,))
    db.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
    db.commit()
    app.logger.info("User %s deleted by %s", user["email"], ctx.user["email"])
    flash("User deleted.", "success")
    return redirect(url_for("users"))


@app.route("/users/<int:user_id>/areas", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_users)
@hotel_required
def user_areas(user_id, ctx):
    db = get_db()
    user = get_managed_user(db, ctx, user_id)
    if not user:
        flash("User not found.", "danger")
        return redirect(url_for("users"))
    areas_list = hotel_areas(db, ctx)
    if request.method == "POST":
        valid_ids = {a["id"] for a in areas_list}
        selected = {parse_int(v) for v in request.form.getlist("area_ids")}
        if not selected <= valid_ids:
            flash("Some areas do not belong to the selected hotel.", "danger")
        else:
            db.execute("DELETE FROM user_area_access WHERE user_id = ?", (user_id,))
            db.executemany(
                "INSERT INTO user_area_access (user_id, area_id) VALUES (?, ?)",
                [(user_id, area_id) for area_id in sorted(selected)],
            )
            db.commit()
            flash("Area access updated.", "success")
            return redirect(url_for("users"))
    assigned = {
        r["area_id"]
        for r in db.execute("SELECT area_id FROM user_area_access WHERE user_id = ?", (user_id,))
    }
    return render_template("user_areas.html", user=user, areas=areas_list, assigned=assigned)


# ---------------------------
# Dashboard
# ---------------------------
@app.route("/dashboard")
@login_required
@hotel_required
def dashboard(ctx):
    db = get_db()
    now = datetime.now()
    areas_list = visible_areas(db, ctx)
    area_ids = None if sees_all_areas(ctx.role) else {a["id"] for a in areas_list}
    runs = submitted_runs(db, ctx, area_ids)
    templates = available_templates(db, ctx, active_only=False)

    quarter = current_quarter(now)
    scores = {
        "month": average_score(runs, now.year, month=now.month),
        "quarter": average_score(runs, now.year, quarter=quarter),
        "year": average_score(runs, now.year),
    }
    template_scores = []
    for t in templates:
        agg = average_score(runs, now.year, template_id=t["id"])
        if agg["count"]:
            template_scores.append(
                {
                    "name": t["name"],
                    "month": average_score(runs, now.year, month=now.month, template_id=t["id"]),
                    "year": agg,
                }
            )
    trends = [
        {"area": a, "points": month_trend(runs, a["id"], now=now, months=3)} for a in areas_list
    ]
    return render_template(
        "dashboard.html",
        scores=scores,
        quarter=quarter,
        template_scores=template_scores,
        trends=trends,
        best_areas=rank_areas(runs, areas_list, limit=3),
        worst_areas=rank_areas(runs, areas_list, limit=3, worst=True),
        worst_audits=worst_templates(runs, templates, limit=3),
        now=now,
    )


# ---------------------------
# Areas
# ---------------------------
@app.route("/areas")
@login_required
@hotel_required
def areas(ctx):
    db = get_db()
    rows = visible_areas(db, ctx)
    runs = submitted_runs(db, ctx)
    now = datetime.now()
    month_scores = {
        a["id"]: average_score(runs, now.year, month=now.month, area_id=a["id"]) for a in rows
    }
    return render_template("areas.html", areas=rows, month_scores=month_scores)


@app.route("/areas/new", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_areas)
@hotel_required
def area_new(ctx):
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        area_type = request.form.get("type", "").strip()
        if not name:
            flash("Area name is required.", "danger")
            return render_template("area_form.html", mode="create", area=None)
        db = get_db()
        row = db.execute(
            "SELECT COALESCE(MAX(sort_order), 0) AS m FROM areas WHERE hotel_id = ?",
            (ctx.hotel_id,),
        ).fetchone()
        db.execute(
            "INSERT INTO areas (hotel_id, name, type, sort_order, created_at) VALUES (?, ?, ?, ?, ?)",
            (ctx.hotel_id, name, area_type or None, int(row["m"] or 0) + 1, now_ts()),
        )
        db.commit()
        flash("Area created.", "success")
        return redirect(url_for("areas"))
    return render_template("area_form.html", mode="create", area=None)


@app.route("/areas/<int:area_id>/edit", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_areas)
@hotel_required
def area_edit(area_id, ctx):
    db = get_db()
    area = get_area(db, ctx, area_id)
    if not area:
        flash("Area not found.", "danger")
        return redirect(url_for("areas"))
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        area_type = request.form.get("type", "").strip()
        if not name:
            flash("Area name is required.", "danger")
        else:
            db.execute(
                "UPDATE areas SET name = ?, type = ? WHERE id = ?",
                (name, area_type or None, area_id),
            )
            db.commit()
            flash("Area updated.", "success")
            return redirect(url_for("area_detail", area_id=area_id))
    return render_template("area_form.html", mode="edit", area=area)


@app.route("/areas/<int:area_id>/delete", methods=["POST"])
@login_required
@permission_required(can_manage_areas)
@hotel_required
def area_delete(area_id, ctx):
    db = get_db()
    if not get_area(db, ctx, area_id):
        flash("Area not found.", "danger")
        return redirect(url_for("areas"))
    db.execute(
        "DELETE FROM audit_answers WHERE audit_run_id IN (SELECT id FROM audit_runs WHERE area_id = ?)",
        (area_id,),
    )
    db.execute("DELETE FROM audit_runs WHERE area_id = ?", (area_id,))
    db.execute("DELETE FROM team_member_areas WHERE area_id = ?", (area_id,))
    db.execute("DELETE FROM user_area_access WHERE area_id = ?", (area_id,))
    db.execute("DELETE FROM areas WHERE id = ?", (area_id,))
    db.commit()
    flash("Area deleted.", "success")
    return redirect(url_for("areas"))


@app.route("/areas/order", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_areas)
@hotel_required
def area_order(ctx):
    db = get_db()
    rows = hotel_areas(db, ctx)
    if request.method == "POST":
        area_id = parse_int(request.form.get("area_id"))
        direction = request.form.get("direction", "")
        ids = [r["id"] for r in rows]
        if area_id not in ids or direction not in ("up", "down"):
            flash("Invalid reorder request.", "danger")
        else:
            idx = ids.index(area_id)
            swap = idx - 1 if direction == "up" else idx + 1
            if 0 <= swap < len(ids):
                ids[idx], ids[swap] = ids[swap], ids[idx]
            db.executemany(
                "UPDATE areas SET sort_order = ? WHERE id = ?",
                [(pos, aid) for pos, aid in enumerate(ids, start=1)],
            )
            db.commit()
        return redirect(url_for("area_order"))
    return render_template("area_order.html", areas=rows)


def area_run_rows(db, area_id):
    return db.execute(
        """
        SELECT r.id, r.status, r.score, r.executed_at, r.submitted_at, r.audit_template_id,
               t.name AS template_name,
               tm.full_name AS member_name,
               p.full_name AS executed_by_name
        FROM audit_runs r
        JOIN audit_templates t ON t.id = r.audit_template_id
        LEFT JOIN team_members tm ON tm.id = r.team_member_id
        LEFT JOIN profiles p ON p.id = r.executed_by
        WHERE r.area_id = ?
        ORDER BY r.executed_at DESC, r.id DESC
        """,
        (area_id,),
    ).fetchall()


@app.route("/areas/<int:area_id>")
@login_required
@hotel_required
def area_detail(area_id, ctx):
    db = get_db()
    area = get_visible_area(db, ctx, area_id)
    if not area:
        flash("Area not found.", "danger")
        return redirect(url_for("areas"))

    now = datetime.now()
    period, start, end = period_range(now, request.args.get("period"))
    runs = area_run_rows(db, area_id)
    done = [r for r in runs if r["status"] == "submitted"]
    in_period = runs_in_range(done, start, end)
    period_score = average_of(
        [s for s in (valid_score(r["score"]) for r in in_period) if s is not None]
    )
    return render_template(
        "area_detail.html",
        area=area,
        period=period,
        period_score=period_score,
        templates=available_templates(db, ctx),
        runs=runs,
        trend=month_trend(done, None, now=now, months=6),
    )


@app.route("/areas/<int:area_id>/export")
@login_required
@hotel_required
def area_export(area_id, ctx):
    db = get_db()
    area = get_visible_area(db, ctx, area_id)
    if not area:
        flash("Area not found.", "danger")
        return redirect(url_for("areas"))

    rows = area_run_rows(db, area_id)
    df = pd.DataFrame(
        [
            {
                "template": r["template_name"],
                "status": r["status"],
                "score": r["score"],
                "executed_at": r["executed_at"],
                "submitted_at": r["submitted_at"],
                "team_member": r["member_name"],
                "auditor": r["executed_by_name"],
            }
            for r in rows
        ],
        columns=["template", "status", "score", "executed_at", "submitted_at", "team_member", "auditor"],
    )
    buffer = io.BytesIO()
    df.to_excel(buffer, index=False)
    buffer.seek(0)
    return send_file(
        buffer,
        as_attachment=True,
        download_name=f"area_{area_id}_audits.xlsx",
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


# ---------------------------
# Template builder
# ---------------------------
@app.route("/builder", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder(ctx):
    db = get_db()
    if request.method == "POST":
        name = request.form.get("name", "").strip()
        scope = request.form.get("scope", "hotel")
        if not name:
            flash("Template name is required.", "danger")
        elif scope == "global" and not ctx.is_superadmin:
            flash("Only superadmins can create global templates.", "danger")
        else:
            hotel_id = None if scope == "global" else ctx.hotel_id
            cur = db.execute(
                "INSERT INTO audit_templates (hotel_id, name, active, created_at) VALUES (?, ?, 1, ?)",
                (hotel_id, name, now_ts()),
            )
            db.commit()
            flash("Template created.", "success")
            return redirect(url_for("builder_template", template_id=cur.lastrowid))
    return render_template("builder.html", templates=available_templates(db, ctx, active_only=False))


def get_editable_template(db, ctx, template_id):
    template = get_template(db, ctx, template_id)
    if not template:
        flash("Template not found.", "danger")
        return None, redirect(url_for("builder"))
    if not can_edit_template(ctx, template):
        flash("Global templates can only be edited by superadmins.", "danger")
        return None, redirect(url_for("builder_template", template_id=template_id))
    return template, None


@app.route("/builder/<int:template_id>", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder_template(template_id, ctx):
    db = get_db()
    template = get_template(db, ctx, template_id)
    if not template:
        flash("Template not found.", "danger")
        return redirect(url_for("builder"))

    if request.method == "POST":
        template, denied = get_editable_template(db, ctx, template_id)
        if denied:
            return denied
        form_type = request.form.get("form_type", "").strip()
        if form_type == "add_section":
            name = request.form.get("name", "").strip()
            if not name:
                flash("Section name is required.", "danger")
            else:
                db.execute(
                    "INSERT INTO audit_sections (audit_template_id, name, active, created_at) VALUES (?, ?, 1, ?)",
                    (template_id, name, now_ts()),
                )
                db.commit()
                flash("Section added.", "success")
        elif form_type == "add_question":
            section_id = parse_int(request.form.get("section_id"))
            text = request.form.get("text", "").strip()
            section = db.execute(
                "SELECT id FROM audit_sections WHERE id = ? AND audit_template_id = ?",
                (section_id, template_id),
            ).fetchone()
            try:
                weight = parse_weight(request.form.get("weight"))
            except ValueError as ex:
                flash(str(ex), "danger")
            else:
                if not section or not text:
                    flash("Section and question text are required.", "danger")
                else:
                    db.execute(
                        """
                        INSERT INTO audit_questions (
                            audit_section_id, text, weight, require_comment, require_photo,
                            require_signature, tag, classification, active, sort_order, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                        """,
                        (
                            section_id,
                            text,
                            weight,
                            form_flag("require_comment"),
                            form_flag("require_photo"),
                            form_flag("require_signature"),
                            request.form.get("tag", "").strip() or None,
                            request.form.get("classification", "").strip() or None,
                            next_question_order(db, section_id),
                            now_ts(),
                        ),
                    )
                    db.commit()
                    flash("Question added.", "success")
        else:
            flash("Unknown form submission.", "danger")
        return redirect(url_for("builder_template", template_id=template_id))

    sections = load_sections(db, template_id)
    questions = db.execute(
        """
        SELECT q.*
        FROM audit_questions q
        JOIN audit_sections s ON s.id = q.audit_section_id
        WHERE s.audit_template_id = ?
        ORDER BY q.audit_section_id, COALESCE(q.sort_order, 999999), q.created_at, q.id
        """,
        (template_id,),
    ).fetchall()
    by_section = {}
    for q in questions:
        by_section.setdefault(q["audit_section_id"], []).append(q)
    return render_template(
        "builder_template.html",
        template=template,
        sections=sections,
        by_section=by_section,
        editable=can_edit_template(ctx, template),
    )


def parse_weight(raw):
    text = (raw or "").strip()
    if not text:
        return 1.0
    try:
        weight = float(text)
    except ValueError:
        raise ValueError(f"Weight '{text}' must be a number.") from None
    if weight < 0:
        raise ValueError("Weight cannot be negative.")
    return weight


@app.route("/builder/<int:template_id>/toggle", methods=["POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder_template_toggle(template_id, ctx):
    db = get_db()
    template, denied = get_editable_template(db, ctx, template_id)
    if denied:
        return denied
    db.execute(
        "UPDATE audit_templates SET active = ? WHERE id = ?",
        (0 if template["active"] else 1, template_id),
    )
    db.commit()
    flash("Template status updated.", "success")
    return redirect(url_for("builder_template", template_id=template_id))


@app.route("/builder/<int:template_id>/normalize-order", methods=["POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder_normalize_order(template_id, ctx):
    db = get_db()
    _template, denied = get_editable_template(db, ctx, template_id)
    if denied:
        return denied
    updated = normalize_question_order(db, template_id)
    db.commit()
    flash(f"Question order normalized ({updated} updated).", "success")
    return redirect(url_for("builder_template", template_id=template_id))


@app.route("/builder/sections/<int:section_id>/toggle", methods=["POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder_section_toggle(section_id, ctx):
    db = get_db()
    section = db.execute("SELECT * FROM audit_sections WHERE id = ?", (section_id,)).fetchone()
    if not section:
        flash("Section not found.", "danger")
        return redirect(url_for("builder"))
    _template, denied = get_editable_template(db, ctx, section["audit_template_id"])
    if denied:
        return denied
    db.execute(
        "UPDATE audit_sections SET active = ? WHERE id = ?",
        (0 if section["active"] else 1, section_id),
    )
    db.commit()
    flash("Section status updated.", "success")
    return redirect(url_for("builder_template", template_id=section["audit_template_id"]))


def get_question_with_template(db, question_id):
    return db.execute(
        """
        SELECT q.*, s.audit_template_id
        FROM audit_questions q
        JOIN audit_sections s ON s.id = q.audit_section_id
        WHERE q.id = ?
        """,
        (question_id,),
    ).fetchone()


@app.route("/builder/questions/<int:question_id>/edit", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder_question_edit(question_id, ctx):
    db = get_db()
    question = get_question_with_template(db, question_id)
    if not question:
        flash("Question not found.", "danger")
        return redirect(url_for("builder"))
    template, denied = get_editable_template(db, ctx, question["audit_template_id"])
    if denied:
        return denied

    if request.method == "POST":
        text = request.form.get("text", "").strip()
        sort_order = parse_int(request.form.get("sort_order"))
        try:
            weight = parse_weight(request.form.get("weight"))
        except ValueError as ex:
            flash(str(ex), "danger")
            return render_template("question_form.html", question=question, template=template)
        if not text:
            flash("Question text is required.", "danger")
            return render_template("question_form.html", question=question, template=template)
        db.execute(
            """
            UPDATE audit_questions
            SET text = ?, weight = ?, require_comment = ?, require_photo = ?, require_signature = ?,
                tag = ?, classification = ?, sort_order = ?
            WHERE id = ?
            """,
            (
                text,
                weight,
                form_flag("require_comment"),
                form_flag("require_photo"),
                form_flag("require_signature"),
                request.form.get("tag", "").strip() or None,
                request.form.get("classification", "").strip() or None,
                sort_order if sort_order is not None else question["sort_order"],
                question_id,
            ),
        )
        db.commit()
        flash("Question updated.", "success")
        return redirect(url_for("builder_template", template_id=template["id"]))
    return render_template("question_form.html", question=question, template=template)


@app.route("/builder/questions/<int:question_id>/toggle", methods=["POST"])
@login_required
@permission_required(can_manage_setup)
@hotel_required
def builder_question_toggle(question_id, ctx):
    db = get_db()
    question = get_question_with_template(db, question_id)
    if not question:
        flash("Question not found.", "danger")
        return redirect(url_for("builder"))
    _template, denied = get_editable_template(db, ctx, question["audit_template_id"])
    if denied:
        return denied
    db.execute(
        "UPDATE audit_questions SET active = ? WHERE id = ?",
        (0 if question["active"] else 1, question_id),
    )
    db.commit()
    flash("Question status updated.", "success")
    return redirect(url_for("builder_template", template_id=question["audit_template_id"]))


# ---------------------------
# Audit runs
# ---------------------------
@app.route("/audits/new", methods=["POST"])
@login_required
@permission_required(can_run_audits)
@hotel_required
def audit_new(ctx):
    db = get_db()
    area_id = parse_int(request.form.get("area_id"))
    template_id = parse_int(request.form.get("template_id"))
    area = get_visible_area(db, ctx, area_id)
    template = get_template(db, ctx, template_id)
    if not area or not template or not template["active"]:
        flash("Please select a valid area and template.", "danger")
        return redirect(url_for("areas"))

    cur = db.execute(
        """
        INSERT INTO audit_runs (hotel_id, area_id, audit_template_id, status, executed_by, executed_at)
        VALUES (?, ?, ?, 'draft', ?, ?)
        """,
        (ctx.hotel_id, area_id, template_id, ctx.user_id, now_ts()),
    )
    db.commit()
    app.logger.info(
        "Audit run %s started for area %s with template %s", cur.lastrowid, area_id, template_id
    )
    return redirect(url_for("audit_run", run_id=cur.lastrowid))


def area_team_members(db, run):
    members = db.execute(
        """
        SELECT tm.id, tm.full_name
        FROM team_members tm
        JOIN team_member_areas tma ON tma.team_member_id = tm.id
        WHERE tma.area_id = ? AND tm.hotel_id = ? AND tm.active = 1
        ORDER BY tm.full_name
        """,
        (run["area_id"], run["hotel_id"]),
    ).fetchall()
    result = [{"id": m["id"], "full_name": m["full_name"], "out_of_area": False} for m in members]
    if run["team_member_id"] and not any(m["id"] == run["team_member_id"] for m in result):
        current = db.execute(
            "SELECT id, full_name FROM team_members WHERE id = ?", (run["team_member_id"],)
        ).fetchone()
        if current:
            result.insert(0, {"id": current["id"], "full_name": current["full_name"], "out_of_area": True})
    return result


def run_sheet(db, run):
    sections = load_sections(db, run["audit_template_id"], active_only=True)
    questions = [q for q in load_template_questions(db, [run["audit_template_id"]]) if q["active"]]
    answers = load_run_answers(db, run["id"])
    answer_map = {a["question_id"]: a for a in answers}
    by_section = {}
    for q in questions:
        by_section.setdefault(q["section_id"], []).append(q)
    return sections, questions, answers, answer_map, by_section


@app.route("/audits/<int:run_id>")
@login_required
@hotel_required
def audit_run(run_id, ctx):
    db = get_db()
    run = get_run(db, ctx, run_id)
    if not run:
        flash("Audit not found.", "danger")
        return redirect(url_for("areas"))
    if run["status"] == "submitted":
        return redirect(url_for("audit_view", run_id=run_id))

    sections, questions, answers, answer_map, by_section = run_sheet(db, run)
    return render_template(
        "audit_run.html",
        run=run,
        sections=sections,
        by_section=by_section,
        answer_map=answer_map,
        totals=score_answers(questions, answers),
        members=area_team_members(db, run),
        PASS=PASS,
        FAIL=FAIL,
    )


@app.route("/audits/<int:run_id>/answer", methods=["POST"])
@login_required
@permission_required(can_run_audits)
@hotel_required
def audit_answer(run_id, ctx):
    db = get_db()
    run, denied = get_draft_run(db, ctx, run_id)
    if denied:
        return denied
    question_id = parse_int(request.form.get("question_id"))
    result = request.form.get("result", "").strip().upper()
    if result not in (PASS,) + EXCEPTION_RESULTS or not get_run_question(db, run, question_id):
        flash("Invalid answer.", "danger")
        return redirect(url_for("audit_run", run_id=run_id))

    current = get_answer(db, run_id, question_id)
    if result == PASS:
        # PASS is the absence of an exception row.
        if current:
            remove_answer_photo(current["photo_path"])
            db.execute("DELETE FROM audit_answers WHERE id = ?", (current["id"],))
    else:
        db.execute(
            """
            INSERT INTO audit_answers (audit_run_id, question_id, result, comment, photo_path, updated_at)
            VALUES (?, ?, ?, NULL, NULL, ?)
            ON CONFLICT(audit_run_id, question_id)
            DO UPDATE SET result = excluded.result, updated_at = excluded.updated_at
            """,
            (run_id, question_id, result, now_ts()),
        )
    db.commit()
    return redirect(url_for("audit_run", run_id=run_id, _anchor=f"q{question_id}"))


@app.route("/audits/<int:run_id>/comment", methods=["POST"])
@login_required
@permission_required(can_run_audits)
@hotel_required
def audit_comment(run_id, ctx):
    db = get_db()
    _run, denied = get_draft_run(db, ctx, run_id)
    if denied:
        return denied
    question_id = parse_int(request.form.get("question_id"))
    current = get_answer(db, run_id, question_id)
    if not current:
        flash("Mark the question as FAIL or NA before adding a comment.", "danger")
        return redirect(url_for("audit_run", run_id=run_id))
    comment = request.form.get("comment", "").strip()
    db.execute(
        "UPDATE audit_answers SET comment = ?, updated_at = ? WHERE id = ?",
        (comment or None, now_ts(), current["id"]),
    )
    db.commit()
    flash("Comment saved.", "success")
    return redirect(url_for("audit_run", run_id=run_id, _anchor=f"q{question_id}"))


@app.route("/audits/<int:run_id>/photo", methods=["POST"])
@login_required
@permission_required(can_run_audits)
@hotel_required
def audit_photo(run_id, ctx):
    db = get_db()
    _run, denied = get_draft_run(db, ctx, run_id)
    if denied:
        return denied
    question_id = parse_int(request.form.get("question_id"))
    current = get_answer(db, run_id, question_id)
    upload = request.files.get("photo")
    if not current or current["result"] != FAIL:
        flash("Mark the question as FAIL before uploading a photo.", "danger")
        return redirect(url_for("audit_run", run_id=run_id))
    if not upload or not upload.filename:
        flash("Choose a photo to upload.", "danger")
        return redirect(url_for("audit_run", run_id=run_id))
    try:
        photo_path = save_answer_photo(upload, run_id, question_id)
    except ValueError as ex:
        flash(str(ex), "danger")
        return redirect(url_for("audit_run", run_id=run_id))
    remove_answer_photo(current["photo_path"])
    db.execute(
        "UPDATE audit_answers SET photo_path = ?, updated_at = ? WHERE id = ?",
        (photo_path, now_ts(), current["id"]),
    )
    db.commit()
    flash("Photo uploaded.", "success")
    return redirect(url_for("audit_run", run_id=run_id, _anchor=f"q{question_id}"))


@app.route("/audits/<int:run_id>/photo/delete", methods=["POST"])
@login_required
@permission_required(can_run_audits)
@hotel_required
def audit_photo_delete(run_id, ctx):
    db = get_db()
    _run, denied = get_draft_run(db, ctx, run_id)
    if denied:
        return denied
    question_id = parse_int(request.form.get("question_id"))
    current = get_answer(db, run_id, question_id)
    if current and current["photo_path"]:
        remove_answer_photo(current["photo_path"])
        db.execute(
            "UPDATE audit_answers SET photo_path = NULL, updated_at = ? WHERE id = ?",
            (now_ts(), current["id"]),
        )
        db.commit()
        flash("Photo deleted.", "success")
    return redirect(url_for("audit_run", run_id=run_id))


@app.route("/audits/<int:run_id>/member", methods=["POST"])
@login_required
@permission_required(can_run_audits)
@hotel_required
def audit_member(run_id, ctx):
    db = get_db()
    run, denied = get_draft_run(db, ctx, run_id)
    if denied:
        return denied
    member_id = parse_int(request.form.get("team_member_id"))
    if member_id is not None:
        allowed = {m["id"] for m in area_team_members(db, run)}
        if member_id not in allowed:
            flash("That team member is not assigned to this area.", "danger")
            return redirect(url_for("audit_run", run_id=run_id))
    db.execute("UPDATE audit_runs SET team_member_id = ? WHERE id = ?", (member_id, run_id))
    db.commit()
    flash("Audited team member updated.", "success")
    return redirect(url_for("audit_run", run_id=run_id))


@app.route("/audits/<int:run_id>/submit", methods=["POST"])
@login_required
@permission_required(can_submit_audit)
@hotel_required
def audit_submit(run_id, ctx):
    db = get_db()
    run, denied = get_draft_run(db, ctx, run_id)
    if denied:
        return denied

    questions = load_template_questions(db, [run["audit_template_id"]])
    answers = load_run_answers(db, run_id)
    try:
        validate_submission(questions, answers)
    except ValueError as ex:
        app.logger.info("Audit run %s submission blocked: %s", run_id, ex)
        flash(str(ex), "danger")
        return redirect(url_for("audit_run", run_id=run_id))

    totals = score_answers(questions, answers)
    score = clamp_score(totals["score"])
    notes = request.form.get("notes", "").strip() or None
    try:
        db.execute(
            """
            UPDATE audit_runs
            SET status = 'submitted', score = ?, notes = COALESCE(?, notes), submitted_at = ?
            WHERE id = ? AND status = 'draft'
            """,
            (score, notes, now_ts(), run_id),
        )
        db.commit()
    except sqlite3.Error as ex:
        db.rollback()
        app.logger.error("Audit run %s could not be submitted: %s", run_id, ex)
        flash(str(ex), "danger")
        return redirect(url_for("audit_run", run_id=run_id))

    app.logger.info(
        "Audit run %s submitted by %s: score=%s fail=%s na=%s total=%s",
        run_id,
        ctx.user["email"],
        score,
        totals["fail"],
        totals["na"],
        totals["total"],
    )
    flash("Audit submitted.", "success")
    return redirect(url_for("audit_view", run_id=run_id))


@app.route("/audits/<int:run_id>/view")
@login_required
@hotel_required
def audit_view(run_id, ctx):
    db = get_db()
    run = get_run(db, ctx, run_id)
    if not run:
        flash("Audit not found.", "danger")
        return redirect(url_for("areas"))

    sections, questions, answers, answer_map, by_section = run_sheet(db, run)
    return render_template(
        "audit_view.html",
        run=run,
        sections=sections,
        by_section=by_section,
        answer_map=answer_map,
        totals=score_answers(questions, answers),
        breakdown=section_breakdown(questions, answers, [s["id"] for s in sections]),
    )


@app.route("/audits/<int:run_id>/delete", methods=["POST"])
@login_required
@permission_required(can_delete_audits)
@hotel_required
def audit_delete(run_id, ctx):
    db = get_db()
    run = get_run(db, ctx, run_id)
    if not run:
        flash("Audit not found.", "danger")
        return redirect(url_for("areas"))
    for answer in load_run_answers(db, run_id):
        remove_answer_photo(answer["photo_path"])
    db.execute("DELETE FROM audit_answers WHERE audit_run_id = ?", (run_id,))
    db.execute("DELETE FROM audit_runs WHERE id = ?", (run_id,))
    db.commit()
    app.logger.info("Audit run %s deleted by %s", run_id, ctx.user["email"])
    flash("Audit deleted.", "success")
    return redirect(url_for("area_detail", area_id=run["area_id"]))


@app.route("/photos/<path:filename>")
@login_required
def answer_photo(filename, ctx):
    db = get_db()
    row = db.execute(
        """
        SELECT audit_run_id
        FROM audit_answers
        WHERE photo_path = ?
        """,
        (filename,),
    ).fetchone()
    if not row or not get_run(db, ctx, row["audit_run_id"]):
        return "not found", 404
    return send_from_directory(photo_dir(), filename)


# ---------------------------
# Analytics
# ---------------------------
@app.route("/analytics")
@login_required
@permission_required(can_see_analytics)
@hotel_required
def analytics(ctx):
    db = get_db()
    areas_list = visible_areas(db, ctx)
    period = request.args.get("period", "30")
    if period not in ANALYTICS_PERIODS:
        period = "30"
    area_id = parse_int(request.args.get("area_id"))
    if area_id is None and areas_list:
        area_id = areas_list[0]["id"]
    area = next((a for a in areas_list if a["id"] == area_id), None)
    member_id = parse_int(request.args.get("member_id"))
    template_id = parse_int(request.args.get("template_id"))

    ranking = []
    by_people = []
    by_fails = []
    member_templates = []
    report = None
    if area:
        since = (datetime.now() - timedelta(days=ANALYTICS_PERIODS[period])).strftime("%Y-%m-%d %H:%M:%S")
        runs = db.execute(
            """
            SELECT id, area_id, audit_template_id, team_member_id, score, executed_at
            FROM audit_runs
            WHERE hotel_id = ? AND area_id = ? AND status = 'submitted'
              AND team_member_id IS NOT NULL AND executed_at >= ?
            ORDER BY executed_at DESC
            """,
            (ctx.hotel_id, area["id"], since),
        ).fetchall()
        template_ids = sorted({r["audit_template_id"] for r in runs})
        questions = load_template_questions(db, template_ids)
        question_sets = {}
        for q in questions:
            question_sets.setdefault(q["template_id"], []).append(q)
        answers_by_run = {}
        for a in load_run_answers(db, [r["id"] for r in runs]):
            answers_by_run.setdefault(a["audit_run_id"], []).append(a)
        members = db.execute(
            "SELECT id, full_name FROM team_members WHERE hotel_id = ?", (ctx.hotel_id,)
        ).fetchall()
        questions_by_id = {q["id"]: q for q in questions}
        ranking = member_ranking(runs, question_sets, answers_by_run, members)
        by_people, by_fails = common_failures(runs, answers_by_run, questions_by_id)

        if member_id is not None and any(r["team_member_id"] == member_id for r in ranking):
            template_names = {
                t["id"]: t["name"] for t in available_templates(db, ctx, active_only=False)
            }
            member_runs = [r for r in runs if r["team_member_id"] == member_id]
            member_templates = [
                {"id": tid, "name": template_names.get(tid, "—")}
                for tid in sorted({r["audit_template_id"] for r in member_runs})
            ]
            if template_id not in {t["id"] for t in member_templates}:
                template_id = None
            report = member_report(
                member_runs,
                question_sets,
                answers_by_run,
                questions_by_id,
                template_names,
                template_id=template_id,
            )
        else:
            member_id = None

    return render_template(
        "analytics.html",
        areas=areas_list,
        area=area,
        period=period,
        periods=list(ANALYTICS_PERIODS),
        ranking=ranking,
        by_people=by_people,
        by_fails=by_fails,
        member_id=member_id,
        member_templates=member_templates,
        template_id=template_id,
        report=report,
    )


# ---------------------------
# Team
# ---------------------------
def get_team_member(db, ctx, member_id):
    return db.execute(
        "SELECT * FROM team_members WHERE id = ? AND hotel_id = ?", (member_id, ctx.hotel_id)
    ).fetchone()


def set_member_areas(db, member_id, area_ids):
    db.execute("DELETE FROM team_member_areas WHERE team_member_id = ?", (member_id,))
    db.executemany(
        "INSERT OR IGNORE INTO team_member_areas (team_member_id, area_id) VALUES (?, ?)",
        [(member_id, area_id) for area_id in area_ids],
    )


@app.route("/team", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_team)
@hotel_required
def team(ctx):
    db = get_db()
    areas_list = hotel_areas(db, ctx)
    if request.method == "POST":
        full_name = request.form.get("full_name", "").strip()
        position = request.form.get("position", "").strip()
        employee_number = request.form.get("employee_number", "").strip()
        valid_ids = {a["id"] for a in areas_list}
        area_ids = [i for i in (parse_int(v) for v in request.form.getlist("area_ids")) if i in valid_ids]
        if not full_name or not position:
            flash("Name and position are required.", "danger")
        else:
            cur = db.execute(
                """
                INSERT INTO team_members (hotel_id, full_name, position, employee_number, active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (ctx.hotel_id, full_name, position, employee_number or None, now_ts()),
            )
            set_member_areas(db, cur.lastrowid, area_ids)
            db.commit()
            flash("Team member created.", "success")
            return redirect(url_for("team"))

    members = db.execute(
        "SELECT * FROM team_members WHERE hotel_id = ? ORDER BY active DESC, full_name",
        (ctx.hotel_id,),
    ).fetchall()
    links = db.execute(
        """
        SELECT tma.team_member_id, tma.area_id
        FROM team_member_areas tma
        JOIN team_members tm ON tm.id = tma.team_member_id
        WHERE tm.hotel_id = ?
        """,
        (ctx.hotel_id,),
    ).fetchall()
    member_areas = {}
    for link in links:
        member_areas.setdefault(link["team_member_id"], set()).add(link["area_id"])
    return render_template("team.html", members=members, areas=areas_list, member_areas=member_areas)


@app.route("/team/<int:member_id>/toggle-active", methods=["POST"])
@login_required
@permission_required(can_manage_team)
@hotel_required
def team_toggle_active(member_id, ctx):
    db = get_db()
    member = get_team_member(db, ctx, member_id)
    if not member:
        flash("Team member not found.", "danger")
        return redirect(url_for("team"))
    db.execute(
        "UPDATE team_members SET active = ? WHERE id = ?", (0 if member["active"] else 1, member_id)
    )
    db.commit()
    flash("Team member status updated.", "success")
    return redirect(url_for("team"))


@app.route("/team/<int:member_id>/areas", methods=["POST"])
@login_required
@permission_required(can_manage_team)
@hotel_required
def team_member_areas(member_id, ctx):
    db = get_db()
    if not get_team_member(db, ctx, member_id):
        flash("Team member not found.", "danger")
        return redirect(url_for("team"))
    valid_ids = {a["id"] for a in hotel_areas(db, ctx)}
    area_ids = [i for i in (parse_int(v) for v in request.form.getlist("area_ids")) if i in valid_ids]
    set_member_areas(db, member_id, area_ids)
    db.commit()
    flash("Team member areas updated.", "success")
    return redirect(url_for("team"))


@app.route("/team/import", methods=["GET", "POST"])
@login_required
@permission_required(can_manage_team)
@hotel_required
def team_import(ctx):
    db = get_db()
    preview = []
    if request.method == "POST":
        upload_file = request.files.get("team_file")
        if not upload_file or not upload_file.filename:
            flash("Choose a CSV or Excel file to import.", "danger")
            return render_template("team_import.html", preview=preview)
        try:
            preview = parse_team_upload(upload_file, hotel_areas(db, ctx))
        except ValueError as ex:
            flash(str(ex), "danger")
            return render_template("team_import.html", preview=preview)

        ok_rows = [r for r in preview if r["ok"]]
        if not ok_rows:
            flash("No valid rows to import.", "danger")
            return render_template("team_import.html", preview=preview)

        for row in ok_rows:
            cur = db.execute(
                """
                INSERT INTO team_members (hotel_id, full_name, position, employee_number, active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (ctx.hotel_id, row["full_name"], row["position"], row["employee_number"], now_ts()),
            )
            set_member_areas(db, cur.lastrowid, row["area_ids"])
        db.commit()
        skipped = len(preview) - len(ok_rows)
        app.logger.info(
            "Team import into hotel %s: %s imported, %s skipped", ctx.hotel_id, len(ok_rows), skipped
        )
        flash(f"Imported {len(ok_rows)} team member(s).", "success")
        if skipped:
            flash(f"Skipped {skipped} row(s) with errors.", "info")
    return render_template("team_import.html", preview=preview)


@app.route("/team/import/sample-csv")
@login_required
@permission_required(can_manage_team)
@hotel_required
def team_import_sample_csv(ctx):
    areas_list = hotel_areas(get_db(), ctx)
    sample_area = areas_list[0]["name"] if areas_list else "Housekeeping"
    content = (
        "full_name,position,employee_number,area_1,area_2\n"
        f"Jane Doe,Room Attendant,1001,{sample_area},\n"
    )
    response = make_response(content)
    response.headers["Content-Type"] = "text/csv; charset=utf-8"
    response.headers["Content-Disposition"] = "attachment; filename=team_import_sample.csv"
    return response


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    with app.app_context():
        init_db()
    app.run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 5000)),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
    )
