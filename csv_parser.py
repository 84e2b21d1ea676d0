import io
from typing import BinaryIO, Dict, Iterator, List, Optional, Union
from datetime import datetime

import chardet

from models.table_models import Record, new_id, utcnow
from utils.logging import get_logger, timing_decorator

DELIMITER = ","
FALLBACK_ENCODINGS = ['utf-8', 'cp1252', 'iso-8859-1', 'latin1']

logger = get_logger(__name__)


def split_line(line: str, delimiter: str = DELIMITER) -> List[str]:
    """Naive tokenizer: split on the delimiter and trim every field. Quotes are not interpreted."""
    return [field.strip() for field in line.split(delimiter)]


def zip_row(headers: List[str], values: List[str]) -> Dict[str, str]:
    """
    Pair headers with values positionally.

    The shorter side wins: values beyond the last header are dropped, and
    headers without a value produce no key. When a header name repeats, the
    right-most column's value is kept.
    """
    return dict(zip(headers, values))


def iter_rows(lines, delimiter: str = DELIMITER) -> Iterator[Dict[str, str]]:
    """
    Yield one column->value mapping per non-blank data line.

    The first line is the header. A blank header yields nothing.
    """
    lines = iter(lines)
    header_line = next(lines, None)
    if header_line is None or not header_line.strip():
        return
    headers = split_line(header_line.rstrip("\r\n"), delimiter)

    for line in lines:
        line = line.rstrip("\r\n")
        if not line.strip():
            continue
        yield zip_row(headers, split_line(line, delimiter))


class CsvRowParser:
    def __init__(self, delimiter: str = DELIMITER):
        self.delimiter = delimiter
        self.logger = get_logger(__name__)

    # chardet picks the encoding, as for every uploaded file
    @timing_decorator
    def detect_encoding(self, raw_data: bytes) -> str:
        """Detect the encoding of an uploaded payload using chardet."""
        result = chardet.detect(raw_data)
        encoding = result['encoding']
        confidence = result['confidence'] or 0.0

        # If confidence is low, try common encodings
        if encoding is None or confidence < 0.7:
            for enc in FALLBACK_ENCODINGS:
                try:
                    raw_data.decode(enc)
                    return enc
                except UnicodeDecodeError:
                    continue

        return encoding or 'utf-8'

    def decode(self, raw_data: bytes) -> str:
        encoding = self.detect_encoding(raw_data)
        try:
            text = raw_data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            self.logger.warning(f"Decoding as {encoding} failed, falling back to latin1")
            text = raw_data.decode('latin1')
        return text.lstrip('\ufeff')

    def parse(self,
              source: Union[bytes, BinaryIO],
              job_id: str,
              file_name: Optional[str],
              imported_at: Optional[datetime] = None) -> Iterator[Record]:
        """
        Turn raw CSV bytes into unsaved Record objects, one per data line.

        The source is consumed once; the returned iterator is not restartable.

        Args:
            source: Raw bytes or a binary stream
            job_id: Owning job id stamped on every record
            file_name: Source file name stamped on every record
            imported_at: Import timestamp (defaults to now, UTC)
        """
        raw_data = source if isinstance(source, (bytes, bytearray)) else source.read()
        text = self.decode(bytes(raw_data))
        stamp = imported_at or utcnow()

        for row in iter_rows(io.StringIO(text, newline=None), self.delimiter):
            yield Record(
                id=new_id(),
                job_id=job_id,
                file_name=file_name,
                data=row,
                imported_at=stamp,
                is_deleted=False,
            )
