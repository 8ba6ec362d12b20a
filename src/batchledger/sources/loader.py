"""Source Loader: one-time, checksummed import of a tabular file into the catalog.

The file is read in wide form - one id column plus one text column per item
type - and each row fans out into one work item per non-blank text column.
A logical source is bound to the checksum of the bytes it was first loaded
from. Loading identical bytes again is a no-op; loading different bytes
under the same source name is refused.
"""

import csv
import io
import math
import zipfile
from typing import Any

import pandas as pd
from sqlalchemy.exc import IntegrityError

from batchledger.contracts.enums import SourceFormat
from batchledger.contracts.errors import ChecksumMismatchError, MalformedSourceError, SourceReadError
from batchledger.contracts.records import ItemKey, SourceBatch, WorkItem
from batchledger.contracts.results import LoadResult
from batchledger.core.canonical import bytes_checksum, file_checksum
from batchledger.core.clock import DEFAULT_CLOCK, Clock
from batchledger.core.config import SourceSettings
from batchledger.core.ledger._helpers import generate_id
from batchledger.core.ledger.catalog import WorkCatalog
from batchledger.core.ledger.database import LedgerDB
from batchledger.core.logging import get_logger

logger = get_logger(__name__)

# Duplicate keys logged individually before switching to a summary
_DUPLICATE_LOG_LIMIT = 10


def read_source_bytes(path: str) -> bytes:
    """Read the raw bytes of a source file.

    Raises:
        SourceReadError: If the file is missing or unreadable
    """
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise SourceReadError(f"Cannot read source file {path}: {e}") from e


def _cell(value: Any) -> Any:
    """Map spreadsheet cell values to plain Python; empty cells become None."""
    if value is None or value is pd.NaT or value is pd.NA:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else None
    return value


def _as_id(value: Any) -> str | None:
    value = _cell(value)
    if value is None:
        return None
    # Excel stores integer ids as floats
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip() or None


def _as_text(value: Any) -> str | None:
    value = _cell(value)
    if value is None:
        return None
    return str(value).strip() or None


class SourceLoader:
    """Load a configured source into the Work Catalog.

    Example:
        loader = SourceLoader(db)
        result = loader.load(settings.source)
        print(result.batch.batch_id, result.batch.item_count)
    """

    def __init__(self, db: LedgerDB, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._catalog = WorkCatalog(db)
        self._clock = clock

    def load(self, settings: SourceSettings) -> LoadResult:
        """Load the source, or return the batch already catalogued for it.

        Raises:
            SourceReadError: If the file cannot be read
            MalformedSourceError: If the file lacks configured columns or cannot be decoded
            ChecksumMismatchError: If the source name is bound to different bytes
        """
        raw = read_source_bytes(settings.path)
        checksum = bytes_checksum(raw)

        existing = self._catalog.find_batch_by_source(settings.name)
        if existing is not None:
            return self._existing(existing, checksum)

        rows = self._parse(raw, settings)
        batch_id = generate_id()
        items, skipped_blank, duplicates = self._fan_out(rows, settings, batch_id)
        batch = SourceBatch(
            batch_id=batch_id,
            source_name=settings.name,
            source_path=settings.path,
            checksum=checksum,
            item_count=len(items),
            duplicate_count=duplicates,
            loaded_at=self._clock.now(),
        )
        try:
            self._catalog.insert_batch(batch, items)
        except IntegrityError:
            # Another loader catalogued the same source name first
            concurrent = self._catalog.find_batch_by_source(settings.name)
            if concurrent is None:
                raise
            return self._existing(concurrent, checksum)

        logger.info(
            "source_loaded",
            source_name=settings.name,
            batch_id=batch_id,
            rows=len(rows),
            items=len(items),
            skipped_blank=skipped_blank,
            duplicates=duplicates,
            checksum=checksum[:12],
        )
        return LoadResult(
            batch=batch,
            already_loaded=False,
            rows_read=len(rows),
            skipped_blank=skipped_blank,
            duplicates_dropped=duplicates,
        )

    def _existing(self, batch: SourceBatch, checksum: str) -> LoadResult:
        if batch.checksum != checksum:
            raise ChecksumMismatchError(batch.source_name, batch.checksum, checksum)
        logger.info("source_already_loaded", source_name=batch.source_name, batch_id=batch.batch_id, items=batch.item_count)
        return LoadResult(batch=batch, already_loaded=True)

    def verify(self, batch: SourceBatch, path: str | None = None) -> None:
        """Re-hash the source file and compare with the checksum recorded at load.

        Raises:
            SourceReadError: If the file cannot be read
            ChecksumMismatchError: If the bytes changed
        """
        source_path = path or batch.source_path
        try:
            actual = file_checksum(source_path)
        except OSError as e:
            raise SourceReadError(f"Cannot read source file {source_path}: {e}") from e
        if actual != batch.checksum:
            raise ChecksumMismatchError(batch.source_name, batch.checksum, actual)

    def _parse(self, raw: bytes, settings: SourceSettings) -> list[dict[str, Any]]:
        """Parse raw bytes into header-keyed rows and check the configured columns exist."""
        if not raw.strip():
            return []
        if settings.format == SourceFormat.XLSX:
            header, rows = self._parse_xlsx(raw, settings)
        else:
            header, rows = self._parse_csv(raw, settings)

        required = [settings.id_column, *settings.text_columns.values(), *settings.attribute_columns]
        missing = [column for column in required if column not in header]
        if missing:
            raise MalformedSourceError(f"Source {settings.name} is missing configured columns {missing}; found {header}")
        return rows

    def _parse_csv(self, raw: bytes, settings: SourceSettings) -> tuple[list[str], list[dict[str, Any]]]:
        try:
            text = raw.decode(settings.encoding)
        except UnicodeDecodeError as e:
            raise MalformedSourceError(f"Source {settings.name} is not valid {settings.encoding}: {e}") from e

        reader = csv.reader(io.StringIO(text, newline=""), delimiter=settings.delimiter)
        try:
            header = [name.strip() for name in next(reader)]
        except StopIteration:
            return [], []
        except csv.Error as e:
            raise MalformedSourceError(f"Source {settings.name} header is not valid CSV: {e}") from e

        rows: list[dict[str, Any]] = []
        try:
            for values in reader:
                if not any(value.strip() for value in values):
                    continue
                rows.append(dict(zip(header, values, strict=False)))
        except csv.Error as e:
            raise MalformedSourceError(f"Source {settings.name} line {reader.line_num} is not valid CSV: {e}") from e
        return header, rows

    def _parse_xlsx(self, raw: bytes, settings: SourceSettings) -> tuple[list[str], list[dict[str, Any]]]:
        try:
            frame = pd.read_excel(io.BytesIO(raw), sheet_name=settings.sheet, dtype=object, engine="openpyxl")
        except (ValueError, KeyError, OSError, zipfile.BadZipFile) as e:
            raise MalformedSourceError(f"Source {settings.name} is not a readable workbook: {e}") from e
        frame.columns = [str(column).strip() for column in frame.columns]
        header = list(frame.columns)
        rows = [{column: _cell(value) for column, value in record.items()} for record in frame.to_dict(orient="records")]
        return header, rows

    def _fan_out(
        self,
        rows: list[dict[str, Any]],
        settings: SourceSettings,
        batch_id: str,
    ) -> tuple[list[WorkItem], int, int]:
        """Pivot wide rows into work items.

        Returns:
            (items in file order, items skipped as blank, duplicate keys dropped)
        """
        loaded_at = self._clock.now()
        seen: set[ItemKey] = set()
        items: list[WorkItem] = []
        skipped_blank = 0
        duplicates = 0

        for row_index, row in enumerate(rows):
            source_id = _as_id(row.get(settings.id_column))
            attributes = {column: _cell(row.get(column)) for column in settings.attribute_columns}
            for item_type, column in settings.text_columns.items():
                text = _as_text(row.get(column))
                if source_id is None or text is None:
                    skipped_blank += 1
                    continue
                key = ItemKey(source_id, item_type)
                if key in seen:
                    # First occurrence wins
                    duplicates += 1
                    if duplicates <= _DUPLICATE_LOG_LIMIT:
                        logger.warning("duplicate_item_dropped", source_name=settings.name, key=str(key), row_index=row_index)
                    continue
                seen.add(key)
                items.append(
                    WorkItem(
                        batch_id=batch_id,
                        source_id=source_id,
                        item_type=item_type,
                        text=text,
                        row_index=row_index,
                        loaded_at=loaded_at,
                        attributes=attributes,
                    )
                )

        if duplicates > _DUPLICATE_LOG_LIMIT:
            logger.warning("duplicate_items_dropped", source_name=settings.name, count=duplicates)
        return items, skipped_blank, duplicates
