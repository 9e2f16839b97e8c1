import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app_settings import MAX_ANNOTATION_ID_LENGTH, MAX_ANNOTATION_LENGTH
from pipeline_errors import CatalogCorrupted, PersistenceError, PersistenceInconsistent

logger = logging.getLogger(__name__)

# Guards every read-modify-write cycle on the two JSON files in this process
_RW_LOCK = threading.RLock()


class Point(BaseModel):
    # strict: JSON numbers only, no "1" -> 1.0 coercion and no booleans
    x: float = Field(..., strict=True, allow_inf_nan=False)
    y: float = Field(..., strict=True, allow_inf_nan=False)


class AnnotationRecord(BaseModel):
    id: str = Field(..., strict=True, min_length=1, max_length=MAX_ANNOTATION_ID_LENGTH)
    text: str = Field(..., strict=True, min_length=1, max_length=MAX_ANNOTATION_LENGTH)
    point: Point


class ImageRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    name: str
    path: str
    source: Literal["nasa", "url"]
    source_ref: str = Field(..., alias="sourceRef")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="createdAt")


_CATALOG_ADAPTER = TypeAdapter(List[ImageRecord])
_ANNOTATIONS_ADAPTER = TypeAdapter(Dict[str, List[AnnotationRecord]])


def _read_json_file(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise CatalogCorrupted(f"{path.name} is not valid JSON: {e}") from e


def _write_json_file(path: Path, data: Any) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(path)
    except BaseException:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise


class CatalogStore:
    """Content catalog (ordered image rows) and annotation store (id -> pins).

    Both live in flat JSON files. Every mutation reloads from disk, changes
    the snapshot and replaces the file atomically, so nothing is cached in
    memory between calls.
    """

    def __init__(self, catalog_path: Path, annotations_path: Path):
        self.catalog_path = Path(catalog_path)
        self.annotations_path = Path(annotations_path)

    # --- raw snapshots -------------------------------------------------------

    def read_catalog(self) -> List[ImageRecord]:
        raw = _read_json_file(self.catalog_path, [])
        if not isinstance(raw, list):
            raise CatalogCorrupted(f"{self.catalog_path.name} must hold a JSON array")
        try:
            return _CATALOG_ADAPTER.validate_python(raw)
        except ValidationError as e:
            raise CatalogCorrupted(f"{self.catalog_path.name} has malformed rows: {e}") from e

    def write_catalog(self, rows: List[ImageRecord]) -> None:
        payload = [row.model_dump(mode="json", by_alias=True) for row in rows]
        with _RW_LOCK:
            _write_json_file(self.catalog_path, payload)

    def read_annotations(self) -> Dict[str, List[AnnotationRecord]]:
        raw = _read_json_file(self.annotations_path, {})
        if not isinstance(raw, dict):
            raise CatalogCorrupted(f"{self.annotations_path.name} must hold a JSON object")
        try:
            return _ANNOTATIONS_ADAPTER.validate_python(raw)
        except ValidationError as e:
            raise CatalogCorrupted(f"{self.annotations_path.name} has malformed rows: {e}") from e

    def write_annotations(self, mapping: Dict[str, List[AnnotationRecord]]) -> None:
        payload = {
            image_id: [record.model_dump(mode="json") for record in records]
            for image_id, records in mapping.items()
        }
        with _RW_LOCK:
            _write_json_file(self.annotations_path, payload)

    def bootstrap(self) -> None:
        """Create empty files on first run; existing files are left alone."""
        with _RW_LOCK:
            self.catalog_path.parent.mkdir(parents=True, exist_ok=True)
            self.annotations_path.parent.mkdir(parents=True, exist_ok=True)
            if not self.catalog_path.exists():
                logger.info("Initializing %s", self.catalog_path)
                _write_json_file(self.catalog_path, [])
            if not self.annotations_path.exists():
                logger.info("Initializing %s", self.annotations_path)
                _write_json_file(self.annotations_path, {})

    # --- convenience operations ----------------------------------------------

    def get_image(self, image_id: str) -> ImageRecord | None:
        for row in self.read_catalog():
            if row.id == image_id:
                return row
        return None

    def list_annotations(self, image_id: str) -> List[AnnotationRecord]:
        return self.read_annotations().get(image_id, [])

    def append_annotation(self, image_id: str, record: AnnotationRecord) -> AnnotationRecord:
        with _RW_LOCK:
            mapping = self.read_annotations()
            mapping.setdefault(image_id, []).append(record)
            try:
                self.write_annotations(mapping)
            except OSError as e:
                raise PersistenceError(f"Failed to save annotation: {e}") from e
        logger.info("Saved annotation %s for image %s", record.id, image_id)
        return record

    def register_image(self, record: ImageRecord) -> bool:
        """Append the row if absent and make sure its annotation key exists.

        Returns True when a new catalog row was written.
        """
        with _RW_LOCK:
            rows = self.read_catalog()
            mapping = self.read_annotations()

            added = not any(row.id == record.id for row in rows)
            if added:
                rows.append(record)
            backfill = record.id not in mapping
            if backfill:
                mapping[record.id] = []

            if added:
                try:
                    self.write_catalog(rows)
                except OSError as e:
                    raise PersistenceError(f"Failed to write catalog: {e}") from e
            if backfill:
                try:
                    self.write_annotations(mapping)
                except OSError as e:
                    logger.critical(
                        "Catalog row %s was written but annotations were not; manual repair needed: %s",
                        record.id, e,
                    )
                    raise PersistenceInconsistent(
                        f"Catalog and annotation store diverged for {record.id}: {e}"
                    ) from e
        if added:
            logger.info("Registered image %s (%s)", record.id, record.name)
        return added

    def delete_image(self, image_id: str) -> Tuple[bool, bool]:
        """Drop the catalog row and annotation key for an id and persist both.

        Returns (row_removed, annotations_removed). Absence of either is not an error.
        """
        with _RW_LOCK:
            rows = self.read_catalog()
            mapping = self.read_annotations()

            remaining = [row for row in rows if row.id != image_id]
            row_removed = len(remaining) != len(rows)
            if not row_removed:
                logger.info("Image %s not found in catalog", image_id)
            annotations_removed = mapping.pop(image_id, None) is not None

            try:
                self.write_catalog(remaining)
            except OSError as e:
                raise PersistenceError(f"Failed to write catalog: {e}") from e
            try:
                self.write_annotations(mapping)
            except OSError as e:
                logger.critical(
                    "Catalog row %s was removed but annotations were not; manual repair needed: %s",
                    image_id, e,
                )
                raise PersistenceInconsistent(
                    f"Catalog and annotation store diverged for {image_id}: {e}"
                ) from e
        return row_removed, annotations_removed
