import csv
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ACTIVITY_HEADER = ["timestamp", "audit_id", "action", "details"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ArtifactStore:
    """Rendered spreadsheets, addressed by file name inside `results_dir`."""

    def __init__(self, results_dir: Path) -> None:
        self.results_dir = Path(results_dir)
        os.makedirs(self.results_dir, exist_ok=True)

    def path(self, reference: str) -> Path:
        name = os.path.basename(reference or "")
        if not name or name != reference:
            raise ValidationError(f"invalid artifact reference {reference!r}")
        return self.results_dir / name

    def save(self, name: str, data: bytes) -> str:
        target = self.path(name)
        with open(target, "wb") as f:
            f.write(data)
        return target.name

    def exists(self, reference: str) -> bool:
        try:
            return self.path(reference).is_file()
        except ValidationError:
            return False

    def delete(self, reference: str) -> None:
        target = self.path(reference)
        if target.exists():
            target.unlink()


class FileAuditStore:
    """
    Audit records as one JSON document each, plus an append-only CSV activity log.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.records_dir = self.root / "records"
        self.activity_csv = self.root / "activity.csv"
        self._lock = threading.Lock()
        os.makedirs(self.records_dir, exist_ok=True)
        if not self.activity_csv.exists():
            with open(self.activity_csv, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(ACTIVITY_HEADER)

    def _record_path(self, audit_id: str) -> Path:
        if not audit_id or os.path.basename(audit_id) != audit_id:
            raise ValidationError(f"invalid audit id {audit_id!r}")
        return self.records_dir / f"{audit_id}.json"

    def _write(self, audit_id: str, record: Dict[str, Any]) -> None:
        with open(self._record_path(audit_id), "w", encoding="utf-8") as f:
            json.dump(record, f, ensure_ascii=False, indent=2)

    def create_record(self, data: Dict[str, Any], audit_id: Optional[str] = None) -> str:
        audit_id = audit_id or str(uuid.uuid4())
        record = dict(data)
        record.update({"id": audit_id, "status": record.get("status", "uploaded"),
                       "created_at": _now_iso(), "updated_at": _now_iso()})
        with self._lock:
            self._write(audit_id, record)
        return audit_id

    def get_record(self, audit_id: str) -> Dict[str, Any]:
        path = self._record_path(audit_id)
        if not path.exists():
            raise NotFoundError(f"audit {audit_id} not found")
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def update_record(self, audit_id: str, **fields: Any) -> Dict[str, Any]:
        with self._lock:
            record = self.get_record(audit_id)
            record.update(fields)
            record["updated_at"] = _now_iso()
            self._write(audit_id, record)
        return record

    def append_activity_log(self, audit_id: str, action: str, details: str = "") -> None:
        with self._lock:
            with open(self.activity_csv, "a", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow([_now_iso(), audit_id, action, details])
