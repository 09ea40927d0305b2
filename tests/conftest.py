import sqlite3

import pytest
from werkzeug.security import generate_password_hash

import app as audit_app

PASSWORD = "secret"
TS = "2026-01-15 09:00:00"


@pytest.fixture
def app(tmp_path):
    flask_app = audit_app.app
    flask_app.config.update(
        TESTING=True,
        SECRET_KEY="test-secret",
        DATA_DIR=str(tmp_path),
        DATABASE=str(tmp_path / "audit_test.db"),
        DB_INITIALIZED=False,
    )
    with flask_app.app_context():
        audit_app.init_db()
    flask_app.config["DB_INITIALIZED"] = True
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db_conn(app):
    conn = sqlite3.connect(app.config["DATABASE"])
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


def _profile(conn, email, role, hotel_id):
    cur = conn.execute(
        """
        INSERT INTO profiles (email, full_name, password_hash, role, hotel_id, active, created_at)
        VALUES (?, ?, ?, ?, ?, 1, ?)
        """,
        (email, email.split("@")[0].title(), generate_password_hash(PASSWORD), role, hotel_id, TS),
    )
    return cur.lastrowid


def _question(conn, section_id, text, sort_order, require_comment=0, require_photo=0, active=1):
    cur = conn.execute(
        """
        INSERT INTO audit_questions (
            audit_section_id, text, weight, require_comment, require_photo, require_signature,
            tag, classification, active, sort_order, created_at
        ) VALUES (?, ?, 1, ?, ?, 0, NULL, NULL, ?, ?, ?)
        """,
        (section_id, text, require_comment, require_photo, active, sort_order, TS),
    )
    return cur.lastrowid


@pytest.fixture
def seeded(db_conn):
    conn = db_conn
    ids = {}
    ids["hotel"] = conn.execute(
        "INSERT INTO hotels (name, created_at) VALUES ('Grand Hotel', ?)", (TS,)
    ).lastrowid
    ids["other_hotel"] = conn.execute(
        "INSERT INTO hotels (name, created_at) VALUES ('Other Hotel', ?)", (TS,)
    ).lastrowid

    ids["lobby"] = conn.execute(
        "INSERT INTO areas (hotel_id, name, type, sort_order, created_at) VALUES (?, 'Lobby', 'Public', 1, ?)",
        (ids["hotel"], TS),
    ).lastrowid
    ids["rooms"] = conn.execute(
        "INSERT INTO areas (hotel_id, name, type, sort_order, created_at) VALUES (?, 'Rooms', 'Housekeeping', 2, ?)",
        (ids["hotel"], TS),
    ).lastrowid
    ids["other_area"] = conn.execute(
        "INSERT INTO areas (hotel_id, name, type, sort_order, created_at) VALUES (?, 'Spa', 'Wellness', 1, ?)",
        (ids["other_hotel"], TS),
    ).lastrowid

    ids["superadmin"] = _profile(conn, "super@test.io", "superadmin", None)
    ids["admin"] = _profile(conn, "admin@test.io", "admin", ids["hotel"])
    ids["manager"] = _profile(conn, "manager@test.io", "manager", ids["hotel"])
    ids["auditor"] = _profile(conn, "auditor@test.io", "auditor", ids["hotel"])
    conn.execute(
        "INSERT INTO user_area_access (user_id, area_id) VALUES (?, ?)", (ids["auditor"], ids["lobby"])
    )
    conn.execute(
        "INSERT INTO user_area_access (user_id, area_id) VALUES (?, ?)", (ids["manager"], ids["lobby"])
    )

    ids["template"] = conn.execute(
        "INSERT INTO audit_templates (hotel_id, name, active, created_at) VALUES (?, 'Lobby Standards', 1, ?)",
        (ids["hotel"], TS),
    ).lastrowid
    ids["section"] = conn.execute(
        "INSERT INTO audit_sections (audit_template_id, name, active, created_at) VALUES (?, 'Entrance', 1, ?)",
        (ids["template"], TS),
    ).lastrowid
    ids["q_doors"] = _question(conn, ids["section"], "Doors are clean", 1)
    ids["q_floor"] = _question(conn, ids["section"], "Floor is polished", 2, require_photo=1)
    ids["q_lights"] = _question(conn, ids["section"], "Lights are working", 3, require_comment=1)
    ids["q_retired"] = _question(conn, ids["section"], "Retired standard", 4, active=0)

    ids["member"] = conn.execute(
        """
        INSERT INTO team_members (hotel_id, full_name, position, employee_number, active, created_at)
        VALUES (?, 'Ana Lopez', 'Concierge', '1001', 1, ?)
        """,
        (ids["hotel"], TS),
    ).lastrowid
    conn.execute(
        "INSERT INTO team_member_areas (team_member_id, area_id) VALUES (?, ?)", (ids["member"], ids["lobby"])
    )
    conn.commit()
    return ids


@pytest.fixture
def login(client):
    def _login(email):
        return client.post("/login", data={"email": email, "password": PASSWORD})

    return _login
