# buda_agent/runtime/parsers.py
from __future__ import annotations

import csv
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from buda_common.models import DataSection

logger = logging.getLogger("buda_agent.runtime.parsers")


class RecordParser(ABC):
    """
    Incremental bytes -> records parser for one connection. Chunks may split
    records anywhere; `feed` returns the records completed so far and `end`
    returns whatever the stream left pending.
    """

    @abstractmethod
    def feed(self, chunk: bytes) -> List[Any]:
        ...

    @abstractmethod
    def end(self) -> List[Any]:
        ...


class LineParser(RecordParser):
    """One record per non-empty line. `\\r\\n` and `\\n` both end a line."""

    encoding = "utf-8"

    def __init__(self, conf: Optional[DataSection] = None) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> List[Any]:
        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return self._records(complete)

    def end(self) -> List[Any]:
        rest, self._pending = self._pending, b""
        return self._records([rest]) if rest else []

    def _records(self, raw_lines: List[bytes]) -> List[Any]:
        out: List[Any] = []
        for raw in raw_lines:
            line = raw.decode(self.encoding, errors="replace").rstrip("\r")
            if line.strip():
                out.extend(self.on_line(line))
        return out

    def on_line(self, line: str) -> List[Any]:
        return [line]


class CsvParser(LineParser):
    """
    First line of each stream is the header; every following line becomes
    a dict keyed by it. The separator comes from `data.separator`.
    """

    def __init__(self, conf: Optional[DataSection] = None) -> None:
        super().__init__(conf)
        separator = conf.option("separator", ",") if conf is not None else ","
        self.separator = separator or ","
        self.header: Optional[List[str]] = None

    def on_line(self, line: str) -> List[Any]:
        try:
            row = next(csv.reader([line], delimiter=self.separator))
        except csv.Error as e:
            logger.warning("Dropping unparseable CSV line (%s): %.200s", e, line)
            return []
        if self.header is None:
            self.header = [h.strip() for h in row]
            return []
        if len(row) != len(self.header):
            logger.debug("CSV row has %d fields, header has %d", len(row), len(self.header))
        return [dict(zip(self.header, row))]


# ---------- transforms ---------- #

def line_transform(line: str) -> Any:
    return {"line": line}


def jsonl_transform(line: str) -> Any:
    try:
        return json.loads(line)
    except ValueError:
        logger.warning("Dropping malformed JSON line: %.200s", line)
        return None


def identity_transform(record: Any) -> Any:
    return record


# ---------- registry ---------- #

@dataclass(frozen=True)
class FormatPlugin:
    parser_factory: Callable[[Optional[DataSection]], RecordParser]
    transform: Callable[[Any], Any]


FORMATS: Dict[str, FormatPlugin] = {
    "line": FormatPlugin(LineParser, line_transform),
    "jsonl": FormatPlugin(LineParser, jsonl_transform),
    "csv": FormatPlugin(CsvParser, identity_transform),
}


def plugin_for(fmt: str) -> FormatPlugin:
    try:
        return FORMATS[fmt]
    except KeyError:
        raise ValueError(f"Unsupported data format: {fmt!r} (known: {', '.join(sorted(FORMATS))})") from None
