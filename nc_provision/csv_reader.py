"""
CSV input handling for Nextcloud Provisioning.

The input format is plain comma separated values with a header
row and no quoting of embedded commas.
"""

import logging
from typing import Dict, Iterator, List

from nc_provision.config import ConfigError
from nc_provision.models import UserRecord

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ['FIRST_NAME', 'LAST_NAME', 'EMAIL_ADDRESS']
EXTERNAL_ID_FIELD = 'EXTERNAL_ID'


def normalize_column_name(name: str) -> str:
    """Strip quotes and whitespace, join words with underscores, upper-case."""
    cleaned = name.strip().strip('"').strip()
    return cleaned.replace(' ', '_').upper()


def _clean_value(value: str) -> str:
    return value.strip().strip('"').strip()


class CsvReader:
    """
    Reads user rows from a CSV file.

    The header is read and validated on construction. Iterating the reader
    re-opens the file, so it can be consumed more than once.
    """

    def __init__(self, path: str, require_external_id: bool = False, encoding: str = 'utf-8-sig'):
        self.path = path
        self.require_external_id = require_external_id
        self.encoding = encoding
        self.field_positions = self._read_header()
        self._check_encoding()

    @property
    def required_fields(self) -> List[str]:
        fields = list(REQUIRED_FIELDS)
        if self.require_external_id:
            fields.append(EXTERNAL_ID_FIELD)
        return fields

    def _read_header(self) -> Dict[str, int]:
        try:
            with open(self.path, 'r', encoding=self.encoding) as f:
                header_line = f.readline()
        except FileNotFoundError:
            raise ConfigError(f"CSV file does not exist: {self.path}")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read CSV file {self.path}: {e}")

        header_line = header_line.rstrip('\r\n')
        if not header_line.strip():
            raise ConfigError(f"CSV file has no header row: {self.path}")

        field_positions = {}
        for index, column in enumerate(header_line.split(',')):
            name = normalize_column_name(column)
            if name and name not in field_positions:
                field_positions[name] = index

        missing = [field for field in self.required_fields if field not in field_positions]
        if missing:
            raise ConfigError(f"Required field(s) not found in CSV: {', '.join(missing)}")

        logger.debug(f"CSV columns: {field_positions}")
        return field_positions

    def _check_encoding(self) -> None:
        """Decode the whole file so a bad byte fails the run before any remote call."""
        try:
            with open(self.path, 'r', encoding=self.encoding) as f:
                for _ in f:
                    pass
        except UnicodeDecodeError as e:
            raise ConfigError(f"CSV file {self.path} is not valid {self.encoding}, save it as UTF-8: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read CSV file {self.path}: {e}")

    def _field(self, fields: List[str], name: str) -> str:
        position = self.field_positions.get(name)
        if position is None or position >= len(fields):
            return ''
        return _clean_value(fields[position])

    def __iter__(self) -> Iterator[UserRecord]:
        with open(self.path, 'r', encoding=self.encoding) as f:
            f.readline()
            for line_number, line in enumerate(f, start=2):
                line = line.rstrip('\r\n')
                if not line:
                    continue

                fields = line.split(',')
                yield UserRecord(
                    first_name=self._field(fields, 'FIRST_NAME'),
                    last_name=self._field(fields, 'LAST_NAME'),
                    email=self._field(fields, 'EMAIL_ADDRESS'),
                    external_id=self._field(fields, EXTERNAL_ID_FIELD),
                    line_number=line_number
                )
