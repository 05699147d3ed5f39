"""CSV file persistence for source files, target files and reports."""

import base64
import csv
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from dateutil import parser as date_parser

from .constants import (
    CSV_TARGET_FILE_PERSON_ACCOUNTS_SUFFIX,
    CSV_TARGET_FILE_SUFFIX,
    CSV_TARGET_SUB_DIRECTORY,
    ERRORS_FIELD_NAME,
    ID_FIELD_NAME,
    INTERNAL_ID_FIELD_NAME,
    IS_PROCESSED_FIELD_NAME,
    OLD_ID_FIELD_NAME,
    SOURCE_ID_FIELD_NAME,
)
from .errors import InitializationError
from .models.describe import (
    FieldDescribe,
    FieldType,
    INTEGER_FIELD_TYPES,
    NUMERIC_FIELD_TYPES,
    ObjectDescribe,
)
from .models.record import Record

logger = logging.getLogger(__name__)

_KEY_SALT = b"orgsync.csv"
_KEY_ITERATIONS = 100000


def derive_key(passphrase: str) -> bytes:
    """Derive a Fernet key from a passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KEY_SALT,
        iterations=_KEY_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def format_value(value: Any) -> str:
    """Render a record value as CSV text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def cast_value(value: Any, field: Optional[FieldDescribe]) -> Any:
    """
    Convert CSV text to the Python type of a field.

    Empty strings become None. Values that cannot be converted are kept as
    text.
    """
    if value is None:
        return None
    if isinstance(value, str) and value == "":
        return None
    if field is None or not isinstance(value, str):
        return value

    text = value.strip()
    try:
        if field.type == FieldType.BOOLEAN:
            return text.lower() in ("true", "1", "yes")
        if field.type in INTEGER_FIELD_TYPES:
            try:
                return int(text)
            except ValueError:
                return int(float(text))
        if field.type in NUMERIC_FIELD_TYPES:
            return float(text)
        if field.type == FieldType.DATE:
            return date_parser.parse(text).date().isoformat()
        if field.type == FieldType.DATETIME:
            # Validated only; the org expects its own offset format back
            date_parser.parse(text)
            return text
    except (ValueError, OverflowError):
        logger.debug(f"Cannot convert '{value}' of field {field.name} to {field.type.value}")
    return value


class CsvStore:
    """
    Reads and writes record CSV files under a base directory.

    Source files are ``<base>/<Object>.csv``. Target files, the CSV target
    media and the reports are written to ``<base>/target``. When a
    passphrase is set, every non-empty value is Fernet-encrypted on write
    and decrypted on read.
    """

    def __init__(
        self,
        base_path: Union[str, Path],
        passphrase: Optional[str] = None,
        encoding: str = "utf-8",
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the store.

        Args:
            base_path: Directory holding the source files
            passphrase: Passphrase of the value encryption, None for plain files
            encoding: File encoding
            logger: Logger to use instead of the module logger
        """
        self.base_path = Path(base_path)
        self.encoding = encoding
        self.logger = logger or logging.getLogger(__name__)
        self._fernet = Fernet(derive_key(passphrase)) if passphrase else None

    @property
    def target_path(self) -> Path:
        return self.base_path / CSV_TARGET_SUB_DIRECTORY

    def source_file_path(self, object_name: str) -> Path:
        return self.base_path / f"{object_name}.csv"

    def target_file_path(self, object_name: str) -> Path:
        """File used when the target org itself is a CSV file."""
        return self.target_path / f"{object_name}.csv"

    def operation_file_path(self, object_name: str, operation: str, person: bool = False) -> Path:
        """File listing the records sent to the target by one operation."""
        suffix = CSV_TARGET_FILE_PERSON_ACCOUNTS_SUFFIX if person else ""
        return self.target_path / f"{object_name}_{operation.lower()}{suffix}{CSV_TARGET_FILE_SUFFIX}.csv"

    def report_file_path(self, file_name: str) -> Path:
        return self.target_path / file_name

    # Reading

    def read_object(self, object_name: str, describe: Optional[ObjectDescribe] = None) -> List[Record]:
        """Read the source file of an object, returning no records when it is missing."""
        path = self.source_file_path(object_name)
        if not path.exists():
            self.logger.warning(f"{object_name}: source file {path} not found, no records to read")
            return []
        return self.read_records(path, describe)

    def read_records(self, file_path: Union[str, Path], describe: Optional[ObjectDescribe] = None) -> List[Record]:
        """
        Read records from a CSV file.

        Args:
            file_path: File to read
            describe: Object metadata used to cast values by field type

        Returns:
            List of records
        """
        path = Path(file_path)
        records = []
        try:
            with open(path, "r", encoding=self.encoding, newline="") as f:
                reader = csv.DictReader(f)
                for row in reader:
                    record = {}
                    for key, value in row.items():
                        if key is None:
                            continue
                        name = key.strip()
                        text = self.decrypt_value(value) if value else value
                        field = describe.get_field(name) if describe else None
                        record[name] = cast_value(text, field)
                    records.append(record)
        except OSError as e:
            raise InitializationError(f"Cannot read CSV file {path}: {e}") from e

        self.logger.debug(f"Read {len(records)} records from {path}")
        return records

    # Writing

    def write_records(
        self,
        file_path: Union[str, Path],
        records: List[Record],
        columns: Optional[List[str]] = None,
    ) -> int:
        """
        Write records to a CSV file, creating the directory when needed.

        Args:
            file_path: File to write
            records: Records to write
            columns: Column order, defaults to the keys of all records

        Returns:
            Number of records written
        """
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if columns is None:
            columns = []
            for record in records:
                for key in record.keys():
                    if key not in columns:
                        columns.append(key)

        with open(path, "w", encoding=self.encoding, newline="") as f:
            writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
            writer.writeheader()
            for record in records:
                writer.writerow({
                    column: self.encrypt_value(format_value(record.get(column)))
                    for column in columns
                })

        self.logger.debug(f"Wrote {len(records)} records to {path}")
        return len(records)

    def write_target_records(self, file_path: Union[str, Path], records: List[Record]) -> int:
        """Write records in the target file layout."""
        prepared = prepare_target_records(records)
        return self.write_records(file_path, prepared, target_columns(prepared))

    def write_report(self, file_name: str, rows: List[Dict[str, Any]], columns: List[str]) -> Optional[Path]:
        """Write a report file, or remove a stale one when there are no rows."""
        path = self.report_file_path(file_name)
        if not rows:
            if path.exists():
                path.unlink()
            return None
        self.write_records(path, rows, columns)
        self.logger.info(f"Report {file_name}: {len(rows)} rows")
        return path

    # Encryption

    def encrypt_value(self, text: str) -> str:
        if not self._fernet or not text:
            return text
        return self._fernet.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt_value(self, text: str) -> str:
        """Decrypt a value; values that are not encrypted tokens are returned unchanged."""
        if not self._fernet or not text:
            return text
        try:
            return self._fernet.decrypt(text.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeEncodeError):
            return text


def prepare_target_records(records: List[Record]) -> List[Record]:
    """
    Convert records to the target file layout.

    Internal bookkeeping fields are dropped, the source id echo is renamed
    to ``Old Id`` and an ``Errors`` column is always present.
    """
    prepared = []
    for record in records:
        output = {}
        for key, value in record.items():
            if key in (INTERNAL_ID_FIELD_NAME, IS_PROCESSED_FIELD_NAME):
                continue
            if key == SOURCE_ID_FIELD_NAME:
                output[OLD_ID_FIELD_NAME] = value
                continue
            output[key] = value
        output.setdefault(ERRORS_FIELD_NAME, None)
        prepared.append(output)
    return prepared


def target_columns(records: List[Record]) -> List[str]:
    """Column order of a target file: Id first, Errors last."""
    columns = []
    for record in records:
        for key in record.keys():
            if key not in columns:
                columns.append(key)
    if ERRORS_FIELD_NAME not in columns:
        columns.append(ERRORS_FIELD_NAME)
    ordered = [c for c in columns if c not in (ID_FIELD_NAME, ERRORS_FIELD_NAME)]
    if ID_FIELD_NAME in columns:
        ordered.insert(0, ID_FIELD_NAME)
    ordered.append(ERRORS_FIELD_NAME)
    return ordered
