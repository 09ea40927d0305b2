import difflib
import io
import re
from pathlib import Path

import pandas as pd

REQUIRED_COLUMNS = {"full_name", "position"}
ALLOWED_EXTENSIONS = {".csv", ".xls", ".xlsx"}
FUZZY_HEADER_RATIO = 0.86
AREA_LABEL_SEPARATOR = "·"

HEADER_ALIASES = {
    "full name": "full_name",
    "fullname": "full_name",
    "name": "full_name",
    "employee name": "full_name",
    "staff name": "full_name",
    "nombre": "full_name",
    "position": "position",
    "job title": "position",
    "title": "position",
    "role": "position",
    "puesto": "position",
    "cargo": "position",
    "employee number": "employee_number",
    "employee number optional": "employee_number",
    "employee no": "employee_number",
    "employee id": "employee_number",
    "emp no": "employee_number",
    "staff id": "employee_number",
}
AREA_HEADER_RE = re.compile(r"^(?:area|areas|zone|department)\s*(\d*)$")


def normalize_key(value):
    raw = str(value).strip().lower().replace("_", " ")
    return "".join(ch for ch in raw if ch.isalnum() or ch.isspace()).strip()


def norm_label(value):
    return re.sub(r"\s+", " ", str(value or "")).strip().lower()


def canonical_column_name(name):
    if name is None or (not isinstance(name, str) and pd.isna(name)):
        return None
    key = normalize_key(name)
    if not key:
        return None
    key = re.sub(r"\s+", " ", key)
    match = AREA_HEADER_RE.match(key)
    if match:
        return f"area_{match.group(1) or '1'}"
    if key in HEADER_ALIASES:
        return HEADER_ALIASES[key]
    return best_similar_header(key)


def best_similar_header(key):
    source = key.replace(" ", "")
    best_name = None
    best_score = 0.0
    for alias, canonical in HEADER_ALIASES.items():
        target = alias.replace(" ", "")
        score = difflib.SequenceMatcher(None, source, target).ratio()
        if score > best_score:
            best_score = score
            best_name = canonical
    if best_name and best_score >= FUZZY_HEADER_RATIO:
        return best_name
    return None


def decode_upload_bytes(raw_bytes):
    encodings = ["utf-8-sig", "utf-16", "cp1252", "latin-1"]
    for enc in encodings:
        try:
            return raw_bytes.decode(enc)
        except UnicodeDecodeError:
            continue
    raise ValueError(
        "Could not decode file. Save CSV as UTF-8 (or use Excel format .xlsx) and upload again."
    )


def load_upload_dataframe(file_storage, ext):
    raw_bytes = file_storage.read()
    if not raw_bytes:
        raise ValueError("Uploaded file is empty.")
    # Some users upload xlsx with .csv extension; detect ZIP signature.
    if ext != ".csv" or raw_bytes.startswith(b"PK\x03\x04"):
        try:
            return pd.read_excel(io.BytesIO(raw_bytes), header=None, dtype=str)
        except Exception as ex:
            raise ValueError(f"Could not parse Excel file: {ex}") from ex

    raw = decode_upload_bytes(raw_bytes)
    lines = [line for line in raw.splitlines() if line.strip()]
    if not lines:
        raise ValueError("Uploaded file is empty.")
    best_df = None
    best_cols = 0
    for sep in [",", ";", "\t", "|"]:
        # Title rows above the header are narrower than the data; size by the widest line.
        width = max(line.count(sep) for line in lines) + 1
        try:
            df = pd.read_csv(
                io.StringIO(raw),
                sep=sep,
                header=None,
                names=list(range(width)),
                dtype=str,
                skip_blank_lines=True,
                on_bad_lines="skip",
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError):
            continue
        cols = int(df.shape[1]) if not df.empty else 0
        if cols > best_cols:
            best_cols = cols
            best_df = df
    if best_df is None or best_cols < len(REQUIRED_COLUMNS):
        raise ValueError("Could not parse CSV delimiter. Save as comma-separated CSV or upload .xlsx.")
    return best_df


def detect_header_row(frame):
    best_idx = None
    best_score = -1
    best_labels = []
    max_scan = min(10, len(frame.index))
    for i in range(max_scan):
        labels = [canonical_column_name(v) for v in frame.iloc[i].tolist()]
        found = {l for l in labels if l}
        score = len(found & REQUIRED_COLUMNS)
        if score > best_score:
            best_score = score
            best_idx = i
            best_labels = labels
    return best_idx, best_labels, best_score


def cell_text(value):
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    return str(value).strip().strip('"').strip()


def build_area_index(areas):
    by_name = {}
    by_label = {}
    for area in areas:
        by_name.setdefault(norm_label(area["name"]), []).append(area)
        label = f"{area['name']} {AREA_LABEL_SEPARATOR} {area['type'] or ''}"
        by_label[norm_label(label)] = area
    return by_name, by_label


def resolve_area_id(cell, area_index):
    raw = (cell or "").strip()
    if not raw:
        return None, None
    by_name, by_label = area_index
    if AREA_LABEL_SEPARATOR in raw:
        found = by_label.get(norm_label(raw))
        if not found:
            return None, f'Area not found: "{raw}"'
        return found["id"], None

    matches = by_name.get(norm_label(raw), [])
    if not matches:
        return None, f'Area not found: "{raw}"'
    if len(matches) > 1:
        example = f"{matches[0]['name']} {AREA_LABEL_SEPARATOR} {matches[0]['type'] or '—'}"
        return None, f'Ambiguous area "{raw}". Use "Name {AREA_LABEL_SEPARATOR} Type" (e.g. "{example}").'
    return matches[0]["id"], None


def area_column_order(label):
    try:
        return int(label.split("_", 1)[1])
    except (IndexError, ValueError):
        return 0


def parse_team_upload(file_storage, areas):
    ext = Path(file_storage.filename or "").suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValueError("Upload must be CSV or Excel (.csv, .xls, .xlsx).")

    frame = load_upload_dataframe(file_storage, ext)
    frame = frame.dropna(how="all")
    if frame.empty:
        raise ValueError("No data rows found in uploaded file.")

    header_idx, header_labels, header_score = detect_header_row(frame)
    if header_idx is None or header_score <= 0:
        raise ValueError(
            "Could not detect header row. Use columns: full_name, position, employee_number, area_1, area_2..."
        )
    missing = sorted(REQUIRED_COLUMNS - {l for l in header_labels if l})
    if missing:
        raise ValueError(
            "Missing required columns: "
            + ", ".join(missing)
            + '. Required: full_name, position (optional: employee_number, area_1, area_2...)'
        )

    columns = {}
    area_columns = []
    for col_idx, label in enumerate(header_labels):
        if not label or label in columns:
            continue
        columns[label] = col_idx
        if label.startswith("area_"):
            area_columns.append(label)
    area_columns.sort(key=area_column_order)

    area_index = build_area_index(areas)
    data_rows = frame.iloc[header_idx + 1 :].values.tolist()
    if not data_rows:
        raise ValueError("No data rows found in uploaded file.")

    preview = []
    data_start_row = int(header_idx) + 2
    for row_index, values in enumerate(data_rows, start=data_start_row):

        def get(label):
            idx = columns.get(label)
            return cell_text(values[idx]) if idx is not None and idx < len(values) else ""

        full_name = get("full_name")
        position = get("position")
        employee_number = get("employee_number")
        area_names = [v for v in (get(label) for label in area_columns) if v]

        errors = []
        if not full_name:
            errors.append("missing full_name")
        if not position:
            errors.append("missing position")

        area_ids = []
        for name in area_names:
            area_id, err = resolve_area_id(name, area_index)
            if err:
                errors.append(err)
            elif area_id is not None and area_id not in area_ids:
                area_ids.append(area_id)

        preview.append(
            {
                "row_index": row_index,
                "full_name": full_name,
                "position": position,
                "employee_number": employee_number or None,
                "areas": area_names,
                "area_ids": area_ids,
                "ok": not errors,
                "error": " · ".join(errors) if errors else None,
            }
        )
    return preview
