from __future__ import annotations

import glob
import json
import logging
import shutil
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

log = logging.getLogger(__name__)

Row = Dict[str, Any]
Predicate = Callable[[Row], bool]

TABLES = (
    "invoices",
    "invoice_lines",
    "invoice_custom_taxes",
    "credit_notes",
    "credit_note_lines",
    "products",
    "stock_movements",
    "product_reservations",
    "payments",
    "clients",
    "client_account_movements",
)


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if isinstance(o, Path):
        return str(o)
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


class JsonRepository:
    """
    Une table = un fichier JSON (liste d'objets), clé primaire configurable.
    Les sauvegardes .bak.json sont optionnelles et tournantes ; une écriture
    identique au contenu actuel est ignorée. snapshot()/restore() servent
    aux transactions du DataStore.
    """

    def __init__(self, filepath: Union[str, Path], entity_name: str = "entity", key: str = "id", *,
                 backup_enabled: bool = False, backup_keep: int = 5) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))
        self._lock = threading.Lock()

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._write_raw([])

    # ---------------- Fichier ---------------- #

    def _read_raw(self) -> List[Row]:
        if not self.filepath.exists():
            return []
        text = self.filepath.read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            corrupt = self.filepath.with_suffix(".corrupt.json")
            log.warning("%s is corrupt, copied to %s", self.filepath, corrupt)
            shutil.copy2(self.filepath, corrupt)
            return []
        return data if isinstance(data, list) else []

    def _backup(self) -> None:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        shutil.copy2(self.filepath, self.filepath.with_suffix(f".{stamp}.bak.json"))
        if self.backup_keep <= 0:
            return
        backups = sorted(glob.glob(str(self.filepath.with_suffix(".*.bak.json"))))
        for stale in backups[:-self.backup_keep]:
            Path(stale).unlink(missing_ok=True)

    def _write_raw(self, data: Iterable[Mapping[str, Any]]) -> None:
        dump = json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)
        with self._lock:
            exists = self.filepath.exists()
            if exists and self.filepath.read_text(encoding="utf-8") == dump:
                return
            if exists and self.backup_enabled:
                self._backup()
            self.filepath.write_text(dump, encoding="utf-8")

    @staticmethod
    def _to_dict(item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        record = item.model_dump() if isinstance(item, BaseModel) else dict(item)
        # dates → str : lectures et filtres voient la même chose
        return json.loads(json.dumps(record, default=_json_default))

    def _index_of(self, data: List[Row], obj_id: Any) -> Optional[int]:
        for idx, row in enumerate(data):
            if str(row.get(self.key)) == str(obj_id):
                return idx
        return None

    # ---------------- CRUD ---------------- #

    def list_all(self) -> List[Row]:
        return self._read_raw()

    def get_by_id(self, obj_id: Any) -> Optional[Row]:
        data = self._read_raw()
        idx = self._index_of(data, obj_id)
        return None if idx is None else data[idx]

    def add(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        return self.add_many([item])[0]

    def add_many(self, items: Iterable[Union[BaseModel, Mapping[str, Any]]]) -> List[Row]:
        data = self._read_raw()
        seen = {str(row.get(self.key)) for row in data}
        new_rows: List[Row] = []
        for item in items:
            row = self._to_dict(item)
            row[self.key] = row.get(self.key) or uuid4().hex
            if str(row[self.key]) in seen:
                raise ValueError(f"duplicate {self.entity_name} {self.key}={row[self.key]}")
            seen.add(str(row[self.key]))
            new_rows.append(row)
        if new_rows:
            self._write_raw(data + new_rows)
        return new_rows

    def update(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        """Fusion partielle : les champs absents de `item` sont conservés."""
        patch = self._to_dict(item)
        obj_id = patch.get(self.key)
        if not obj_id:
            raise ValueError(f"{self.entity_name} update needs '{self.key}'")
        data = self._read_raw()
        idx = self._index_of(data, obj_id)
        if idx is None:
            raise KeyError(f"{self.entity_name} {self.key}={obj_id} not found")
        data[idx] = {**data[idx], **patch}
        self._write_raw(data)
        return data[idx]

    def upsert(self, item: Union[BaseModel, Mapping[str, Any]]) -> Row:
        try:
            return self.update(item)
        except KeyError:
            return self.add(item)

    def delete(self, obj_id: Any) -> bool:
        return self.delete_where(lambda row: str(row.get(self.key)) == str(obj_id)) > 0

    def delete_where(self, predicate: Predicate) -> int:
        data = self._read_raw()
        kept = [row for row in data if not predicate(row)]
        if len(kept) != len(data):
            self._write_raw(kept)
        return len(data) - len(kept)

    # ---------------- Recherches ---------------- #

    def find(self, predicate: Predicate) -> List[Row]:
        return [row for row in self._read_raw() if predicate(row)]

    def find_one(self, predicate: Predicate) -> Optional[Row]:
        return next((row for row in self._read_raw() if predicate(row)), None)

    # ---------------- Transactions ---------------- #

    def snapshot(self) -> List[Row]:
        return self._read_raw()

    def restore(self, rows: List[Row]) -> None:
        self._write_raw(rows)


class DataStore:
    """
    Service de persistance "tabulaire" : un JsonRepository par table.
    Les écritures multi-étapes passent par transaction() (tout ou rien).
    """

    def __init__(self, data_dir: Union[str, Path], *, backup_enabled: bool = False) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.backup_enabled = backup_enabled
        self._tables: Dict[str, JsonRepository] = {}
        self._tx_lock = threading.RLock()

    def table(self, name: str) -> JsonRepository:
        if name not in TABLES:
            raise KeyError(f"unknown table {name!r}")
        repo = self._tables.get(name)
        if repo is None:
            repo = JsonRepository(
                self.data_dir / f"{name}.json",
                entity_name=name.rstrip("s"),
                backup_enabled=self.backup_enabled,
            )
            self._tables[name] = repo
        return repo

    __getitem__ = table

    @contextmanager
    def transaction(self, *names: str) -> Iterator["DataStore"]:
        """Restaure toutes les tables touchées si une étape échoue."""
        with self._tx_lock:
            touched = names or TABLES
            snapshots = {n: self.table(n).snapshot() for n in touched}
            try:
                yield self
            except Exception:
                log.exception("transaction failed, rolling back %s", ", ".join(touched))
                for n, rows in snapshots.items():
                    self.table(n).restore(rows)
                raise
