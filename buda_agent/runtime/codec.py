# buda_agent/runtime/codec.py
from __future__ import annotations

import zlib

_GZIP_WBITS = 16 + zlib.MAX_WBITS


class GzipStreamDecoder:
    """
    Incremental gunzip for one connection. Concatenated gzip members (as
    produced by `cat a.gz b.gz` or by producers that compress per flush)
    decode as one continuous stream.
    """

    def __init__(self) -> None:
        self._d = zlib.decompressobj(_GZIP_WBITS)

    def feed(self, chunk: bytes) -> bytes:
        out = []
        while chunk:
            out.append(self._d.decompress(chunk))
            if not self._d.eof:
                break
            chunk = self._d.unused_data
            self._d = zlib.decompressobj(_GZIP_WBITS)
        return b"".join(out)

    def flush(self) -> bytes:
        return self._d.flush()
