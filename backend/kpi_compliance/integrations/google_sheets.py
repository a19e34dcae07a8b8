import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import gspread
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build as gapi_build
from googleapiclient.errors import HttpError

from kpi_compliance.core.config import Settings
from kpi_compliance.kpi.config_loader import METRIC_KEYS

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets.readonly",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
]

# Normalized header -> field. Accepts snake_case, spaced and camelCase headers.
HEADER_ALIASES = {
    "employeeid": "employee_id",
    "feid": "employee_id",
    "employeecode": "employee_code",
    "code": "employee_code",
    "email": "email",
    "employeeemail": "email",
    "period": "period",
    "month": "period",
    "tat": "tat",
    "majornegativity": "major_negativity",
    "quality": "quality",
    "neighborcheck": "neighbor_check",
    "negativity": "negativity",
    "appusage": "app_usage",
    "insufficiency": "insufficiency",
    "comments": "comments",
    "remarks": "comments",
}


@dataclass
class SheetsSettings:
    spreadsheet_id: str
    worksheet: str = "KPI"
    sa_file: str = ""
    sa_json: str = ""

    def is_configured(self) -> bool:
        return bool(self.spreadsheet_id and (self.sa_file or self.sa_json))


def get_config_from_env() -> SheetsSettings:
    return SheetsSettings(
        spreadsheet_id=Settings.KPI_SHEET_ID,
        worksheet=Settings.KPI_WORKSHEET,
        sa_file=Settings.GOOGLE_SERVICE_ACCOUNT_FILE,
        sa_json=Settings.GOOGLE_SERVICE_ACCOUNT_JSON,
    )


def _load_credentials(sa_file: str = "", sa_json: str = "") -> Credentials:
    if sa_json:
        try:
            info = json.loads(sa_json)
        except json.JSONDecodeError as e:
            raise ValueError("GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON") from e
        return Credentials.from_service_account_info(info, scopes=SCOPES)

    if sa_file:
        if not os.path.exists(sa_file):
            raise FileNotFoundError(f"Service account file not found: {sa_file}")
        return Credentials.from_service_account_file(sa_file, scopes=SCOPES)

    raise ValueError("Service account credentials not provided. Set GOOGLE_SERVICE_ACCOUNT_JSON or GOOGLE_SERVICE_ACCOUNT_FILE.")


def _fetched_at() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_spreadsheet_and_meta(settings: SheetsSettings) -> Tuple[gspread.Spreadsheet, Dict[str, Any]]:
    creds = _load_credentials(settings.sa_file, settings.sa_json)
    ss = gspread.authorize(creds).open_by_key(settings.spreadsheet_id)

    meta = {
        "spreadsheetId": settings.spreadsheet_id,
        "title": getattr(ss, "title", None),
        "fetchedAt": _fetched_at(),
    }

    drive = gapi_build("drive", "v3", credentials=creds, cache_discovery=False)
    try:
        f = drive.files().get(fileId=settings.spreadsheet_id, fields="id,name,modifiedTime,version").execute()
        meta.update({
            "name": f.get("name"),
            "modifiedTime": f.get("modifiedTime"),
            "version": f.get("version"),
        })
    except HttpError as e:
        # Metadata is informational; the rows are still usable without it.
        logger.warning("Drive metadata fetch failed: %s", e)

    return ss, meta


# --- Parsing ---

def _norm(s: Any) -> str:
    return str(s).strip().lower().replace(" ", "").replace("_", "").replace("-", "")


def _to_float(val: Any) -> Optional[float]:
    if val is None or val == "":
        return None
    text = str(val).strip().rstrip("%")
    try:
        return float(text)
    except ValueError:
        return None


def parse_kpi_rows(values: List[List[Any]]) -> Dict[str, Any]:
    """Turn raw sheet values (header row first) into KPI submission rows.

    Rows without an employee identifier or a period are skipped.
    """
    if not values:
        return {"count": 0, "skipped": 0, "items": []}

    columns = [HEADER_ALIASES.get(_norm(h)) for h in values[0]]
    items: List[Dict[str, Any]] = []
    skipped = 0

    for row in values[1:]:
        if not any(str(c).strip() for c in row):
            continue
        raw: Dict[str, Any] = {}
        for idx, field_name in enumerate(columns):
            if field_name is None or idx >= len(row):
                continue
            raw[field_name] = row[idx]

        ident = {k: str(raw[k]).strip() for k in ("employee_id", "email", "employee_code") if str(raw.get(k) or "").strip()}
        period = str(raw.get("period") or "").strip()
        if not ident or not period:
            skipped += 1
            continue

        item: Dict[str, Any] = dict(ident)
        item["period"] = period
        for key in METRIC_KEYS:
            item[key] = _to_float(raw.get(key))
        if str(raw.get("comments") or "").strip():
            item["comments"] = str(raw["comments"]).strip()
        items.append(item)

    return {"count": len(items), "skipped": skipped, "items": items}


def read_kpi_rows(settings: Optional[SheetsSettings] = None) -> Dict[str, Any]:
    _settings = settings or get_config_from_env()
    if not _settings.is_configured():
        raise ValueError("Google Sheets import not configured. Set KPI_SHEET_ID and service account credentials.")

    ss, meta = get_spreadsheet_and_meta(_settings)
    try:
        ws = ss.worksheet(_settings.worksheet)
    except gspread.WorksheetNotFound as e:
        raise ValueError(f"Worksheet not found: {_settings.worksheet}") from e

    parsed = parse_kpi_rows(ws.get_all_values())
    logger.info(
        "Sheets KPI read: rows=%s skipped=%s spreadsheet=%s version=%s",
        parsed["count"], parsed["skipped"], meta.get("title") or meta.get("name"), meta.get("version"),
    )
    return {"meta": meta, **parsed}
